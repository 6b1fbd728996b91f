#!/usr/bin/env python3
"""Setup script for the Jira to Redmine migration tool.
"""

from setuptools import find_packages, setup

# Read requirements from requirements.txt file
with open("requirements.txt") as f:
    requirements = f.read().splitlines()

# Remove any comments or blank lines from requirements
requirements = [line for line in requirements if line and not line.startswith("#")]

setup(
    name="jira-to-redmine",
    version="0.1.0",
    description="Jira to Redmine migration tool",
    packages=find_packages(include=["src", "src.*", "config", "config.*"]),
    package_data={"config": ["config.yaml"]},
    include_package_data=True,
    python_requires=">=3.12,<4.0",
    install_requires=requirements,
    license="MIT",  # SPDX license identifier
    entry_points={
        "console_scripts": [
            "j2r=src.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
    ],
)
