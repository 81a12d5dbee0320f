"""SQLite persistence: ORM tables, engine policy and schema migrations."""

from content_factory.storage.database import Database

__all__ = ["Database"]
