"""
SQLAlchemy 2.0 async DeclarativeBase for CardSync.

All models inherit from this Base.
"""

import uuid

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

# JSONB on Postgres, plain JSON elsewhere (aiosqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def new_uuid() -> str:
    """Python-side UUID4 text key, portable across dialects."""
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all CardSync database models."""
    pass
