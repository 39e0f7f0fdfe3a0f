"""
Dialect-specific statement builders.

INSERT ... ON CONFLICT is dialect-specific in SQLAlchemy. Production runs on
PostgreSQL; the integration suite runs the same statements on SQLite.
"""

from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession


def insert_for(session: AsyncSession, model: Any) -> Any:
    """Return an INSERT supporting on_conflict_* for the session's database."""
    bind = session.get_bind()
    if getattr(bind.dialect, "name", None) == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)
