"""Contestant and judge tables."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContestantRow(SQLModel, table=True):
    __tablename__ = "contestants"

    id: str = Field(primary_key=True)
    number: str = Field(index=True)
    name: str
    character: str = Field(default="")
    image_url: str = Field(default="")

    created_at: datetime = Field(default_factory=utc_now, index=True)


class JudgeRow(SQLModel, table=True):
    __tablename__ = "judges"

    # equal to the identity provider's id for the account
    id: str = Field(primary_key=True)
    name: str = Field(default="")
    email: str = Field(default="", index=True)
    role: Optional[str] = Field(default=None, index=True)

    created_at: datetime = Field(default_factory=utc_now, index=True)
