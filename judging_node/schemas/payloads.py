from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ScoreSubmissionBody(BaseModel):
    """Judge submission. Range and completeness are checked by the score store."""

    contestant_id: str = Field(min_length=1)
    scores: dict[str, Any] = Field(default_factory=dict)
    decision: str | None = None


class TransitionBody(BaseModel):
    action: Literal["next", "previous", "goto", "toggle_judging", "toggle_summary"]
    contestant_id: str | None = None
    seconds: int | None = Field(default=None, ge=1, le=600)


class VideoBody(BaseModel):
    video_url: str | None = None
    playing: bool | None = None


class ContestantBody(BaseModel):
    number: str
    name: str
    character: str
    image_url: str = ""

    model_config = ConfigDict(extra="ignore")


class JudgeBody(BaseModel):
    id: str
    name: str = ""
    email: str
    role: Literal["admin", "judge"] = "judge"
