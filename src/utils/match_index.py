"""Lookup index over a target-system snapshot.

The index is built once per run. A key can resolve to nothing, exactly one
row, or several rows; several rows must never be resolved by picking one.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from src.utils.normalization import lookup_key

type Row = Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class NoMatch:
    pass


@dataclass(frozen=True, slots=True)
class SingleMatch:
    row: Row


@dataclass(frozen=True, slots=True)
class AmbiguousMatch:
    rows: tuple[Row, ...]


type MatchOutcome = NoMatch | SingleMatch | AmbiguousMatch


class LookupIndex:
    """Multi-map from normalized key to snapshot rows."""

    def __init__(self, rows: Iterable[Row], key: str | Callable[[Row], Any]) -> None:
        extract = (lambda row: row[key]) if isinstance(key, str) else key
        self._index: dict[str, list[Row]] = defaultdict(list)
        for row in rows:
            normalized = lookup_key(extract(row))
            if normalized is not None:
                self._index[normalized].append(row)

    def __len__(self) -> int:
        return len(self._index)

    def resolve(self, value: Any) -> MatchOutcome:
        normalized = lookup_key(value)
        if normalized is None:
            return NoMatch()
        matches = self._index.get(normalized, [])
        if not matches:
            return NoMatch()
        if len(matches) == 1:
            return SingleMatch(matches[0])
        return AmbiguousMatch(tuple(matches))
