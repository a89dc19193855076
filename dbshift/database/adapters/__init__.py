"""
Database adapters for relational and document backends.
"""

import logging
from typing import Any, Optional

from .base import BackendFamily, DatabaseAdapter, DatabaseType, resolve_database_type


def create_adapter(database_url: str, logger: Optional[logging.Logger] = None, **kwargs: Any) -> DatabaseAdapter:
    """
    Create an adapter for a database URL.

    ``mongodb://`` and ``mongodb+srv://`` URLs get a MongoAdapter, anything
    else is handed to SQLAlchemy.
    """
    if database_url.startswith("mongodb"):
        from .document import MongoAdapter

        return MongoAdapter(database_url, logger=logger, **kwargs)

    from .sql import SQLAlchemyAdapter

    return SQLAlchemyAdapter(database_url, logger=logger, **kwargs)


__all__ = [
    "BackendFamily",
    "DatabaseAdapter",
    "DatabaseType",
    "create_adapter",
    "resolve_database_type",
]
