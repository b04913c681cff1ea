"""Declarative base shared by every docbuild table."""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase


class DocbuildBase(DeclarativeBase):
    """Shared declarative base for every docbuild table.

    ``type_annotation_map`` lets Mapped columns use plain Python types:

    * ``str``   → ``Text``
    * ``int``   → ``Integer``
    * ``bool``  → ``Boolean``
    * ``datetime.datetime`` → ``DateTime`` (naive UTC, see ``utcnow``)
    * ``dict``  → ``JSON``
    """

    type_annotation_map = {
        str: Text,
        int: Integer,
        bool: Boolean,
        datetime.datetime: DateTime,
        dict: JSON,
    }


def utcnow() -> datetime.datetime:
    """Current UTC time as a naive datetime.

    SQLite drops tzinfo on the way back, so every timestamp is stored and
    compared as naive UTC.
    """
    return datetime.datetime.now(datetime.UTC).replace(tzinfo=None)
