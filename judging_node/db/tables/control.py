"""Live presentation control record."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ControlStateRow(SQLModel, table=True):
    __tablename__ = "control_state"

    id: str = Field(primary_key=True)
    version: int = Field(default=0)

    current_contestant_id: Optional[str] = Field(default=None)
    is_judging_open: bool = Field(default=False)
    show_summary_screen: bool = Field(default=False)
    video_url: str = Field(default="")
    video_playing: bool = Field(default=False)

    is_counting_down: bool = Field(default=False)
    countdown_value: int = Field(default=0)
    transition_id: Optional[str] = Field(default=None)
    next_contestant_id_after_countdown: Optional[str] = Field(default=None)
    is_judging_open_change: bool = Field(default=False)
    show_summary_screen_change: bool = Field(default=False)

    updated_at: datetime = Field(default_factory=utc_now)
