from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule rejected the write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaNotReady(RuntimeError):
    """The database is reachable but the coursegate tables are missing."""

    def __init__(self, missing_tables: Iterable[str]):
        self.missing_tables = sorted(missing_tables)
        super().__init__(
            "Missing required Postgres tables: {}. Apply sql/001_init.sql first.".format(
                ", ".join(self.missing_tables)
            )
        )


__all__ = ["ConstraintViolation", "SchemaNotReady"]
