"""
Data models for fsd rows and API payloads.

Defines Pydantic models for the four tables and the proc submission body.
"""

import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from fsd.db import parse_timestamp


class Row(BaseModel):
    """Base for models loaded from database rows."""

    @field_validator("created_at", "modified_at", mode="before", check_fields=False)
    @classmethod
    def parse_db_timestamp(cls, v):
        """Stored timestamps are naive UTC text."""
        if isinstance(v, str):
            try:
                return parse_timestamp(v)
            except ValueError:
                return v
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @classmethod
    def from_row(cls, row: sqlite3.Row):
        return cls(**dict(row))

    @classmethod
    def from_rows(cls, rows: List[sqlite3.Row]) -> list:
        return [cls.from_row(row) for row in rows]


class MetadataRecord(Row):
    """One snapshot of a path's metadata."""

    id: int
    full_path: str
    size_bytes: int
    file_mode: int = Field(..., description="Permission bits only")
    is_directory: int
    created_at: datetime = Field(..., description="When the row was inserted")
    modified_at: datetime = Field(..., description="Filesystem mtime")


class DiskStats(Row):
    """Usage of the filesystem containing the watch root."""

    id: int
    free: int
    available: int
    size: int
    used: int
    used_pct: float
    created_at: datetime


class Proc(Row):
    """A queued external command."""

    id: int
    command: str
    args: str = Field(..., description="Space-joined argv tail")
    is_executed: int = 0
    created_at: datetime


class ProcResult(Row):
    """Captured output of an executed proc."""

    id: int = Field(..., description="Matches proc.id")
    stdout: str
    stderr: str
    created_at: datetime


class ProcSubmitRequest(BaseModel):
    """Body of POST /proc."""

    command: str = ""
    args: Dict[str, List[str]] = Field(default_factory=dict)


class ApiResponse(BaseModel):
    """Envelope for wrapped API responses."""

    data: Optional[Any] = None
    code: int
    message: str
