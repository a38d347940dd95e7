"""Database engine, sessions and maintenance helpers."""
