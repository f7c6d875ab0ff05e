from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum


class Decision(StrEnum):
    KEEP = "keep"
    ELIMINATE = "eliminate"


@dataclass
class ScoreRecord:
    """One judge's write-once scoring of one contestant."""
    judge_id: str
    contestant_id: str
    categories: dict[str, int]
    decision: Decision
    judge_name: str = ""
    contestant_name: str = ""
    submitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_score(self) -> int:
        return sum(self.categories.values())
