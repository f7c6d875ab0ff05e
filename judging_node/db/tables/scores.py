"""Score submissions and the aggregated result snapshot."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _jsonb() -> JSON:
    return JSON().with_variant(JSONB(), "postgresql")


class ScoreRow(SQLModel, table=True):
    __tablename__ = "scores"

    # composite key: one score per (judge, contestant), inserts never overwrite
    judge_id: str = Field(primary_key=True)
    contestant_id: str = Field(primary_key=True, index=True)

    judge_name: str = Field(default="")
    contestant_name: str = Field(default="")

    categories_jsonb: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(_jsonb()),
    )
    total_score: int = Field(default=0)
    decision: str

    submitted_at: datetime = Field(default_factory=utc_now, index=True)


class ResultSnapshotRow(SQLModel, table=True):
    __tablename__ = "result_snapshots"

    id: str = Field(primary_key=True)

    entries_jsonb: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(_jsonb()),
    )
    meta_jsonb: dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(_jsonb()),
    )

    generated_at: datetime = Field(default_factory=utc_now, index=True)
