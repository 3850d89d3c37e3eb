from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

__all__ = [
    "Base",
    "Boolean",
    "Column",
    "DateTime",
    "Index",
    "Integer",
    "String",
    "Text",
    "UniqueConstraint",
]
