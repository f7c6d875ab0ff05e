from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

SUMMARY_ID = "summary"


@dataclass
class ContestantResult:
    """Aggregated statistics for one contestant across all judges."""
    contestant_id: str
    number: str
    name: str
    character: str = ""
    image_url: str = ""
    category_sums: dict[str, int] = field(default_factory=dict)
    category_averages: dict[str, float] = field(default_factory=dict)
    total_score_sum: int = 0
    average_score: float = 0.0
    submitted_judges_count: int = 0
    judge_scores: dict[str, dict[str, Any]] = field(default_factory=dict)
    keep_count: int = 0
    eliminate_count: int = 0
    rank: int = 0

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.contestant_id,
            "number": self.number,
            "name": self.name,
            "character": self.character,
            "imageUrl": self.image_url,
            "categorySums": dict(self.category_sums),
            "categoryScores": dict(self.category_averages),
            "totalScoreSum": self.total_score_sum,
            "averageScore": self.average_score,
            "submittedJudgesCount": self.submitted_judges_count,
            "judgeScores": {name: dict(s) for name, s in self.judge_scores.items()},
            "keepCount": self.keep_count,
            "eliminateCount": self.eliminate_count,
            "rank": self.rank,
        }


@dataclass
class ResultSnapshot:
    """The single cached aggregate consumed by audience and summary views."""
    entries: list[dict[str, Any]] = field(default_factory=list)
    meta: dict[str, Any] = field(default_factory=dict)
    id: str = SUMMARY_ID
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "entries": list(self.entries),
            "meta": dict(self.meta),
            "generatedAt": self.generated_at.isoformat(),
        }
