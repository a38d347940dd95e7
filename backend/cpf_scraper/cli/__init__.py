"""Command-line entry points (declared in pyproject.toml)."""
