from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base for the membership tables; Alembic reads ``Base.metadata``."""

    metadata = MetaData(naming_convention={"ix": "ix_%(column_0_label)s"})
