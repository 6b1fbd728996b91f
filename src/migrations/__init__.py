"""Entity migrations. Import a module to register its entity type."""
