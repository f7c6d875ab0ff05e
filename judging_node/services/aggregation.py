"""Aggregation: reduce every judge's scores into one ranked result snapshot."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Iterable

from judging_node.db.pg_notify import RESULTS_CHANNEL
from judging_node.db.repositories import (
    DBContestantRepository, DBJudgeRepository, DBResultSnapshotRepository, DBScoreRepository,
)
from judging_node.entities.results import ContestantResult, ResultSnapshot
from judging_node.entities.roster import Contestant, Judge, Role, parse_number
from judging_node.entities.score import Decision, ScoreRecord
from judging_node.errors import store_errors
from judging_node.services.live_view import ChangeFeed


def _average(total: int, count: int) -> float:
    # zero judges -> 0.0, never a division
    if count <= 0:
        return 0.0
    return round(total / count, 2)


def _judge_keys(judges: Iterable[Judge]) -> dict[str, str]:
    """Map judge id to a unique display name for the per-judge breakdown."""
    keys: dict[str, str] = {}
    taken: set[str] = set()
    for judge in judges:
        key = judge.display_name
        if key in taken:
            key = f"{key} ({judge.id})"
        taken.add(key)
        keys[judge.id] = key
    return keys


def aggregate_results(
    contestants: Iterable[Contestant],
    judges: Iterable[Judge],
    scores: Iterable[ScoreRecord],
    categories: Iterable[str],
) -> list[ContestantResult]:
    """Pure reduction of scores into ranked per-contestant results.

    Only judges whose role is `judge` count. Ranking is by average total
    descending, then contestant number ascending, then contestant id.
    """
    categories = tuple(categories)
    judges = [j for j in judges if j.role == Role.JUDGE]
    judge_keys = _judge_keys(judges)

    results: dict[str, ContestantResult] = {}
    for contestant in contestants:
        results[contestant.id] = ContestantResult(
            contestant_id=contestant.id,
            number=contestant.number,
            name=contestant.name,
            character=contestant.character,
            image_url=contestant.image_url,
            category_sums={c: 0 for c in categories},
        )

    for score in sorted(scores, key=lambda s: (s.judge_id, s.contestant_id)):
        result = results.get(score.contestant_id)
        judge_key = judge_keys.get(score.judge_id)
        if result is None or judge_key is None:
            continue

        for category in categories:
            result.category_sums[category] += score.categories.get(category, 0)
        result.total_score_sum += score.total_score
        result.submitted_judges_count += 1
        result.judge_scores[judge_key] = {
            "total": score.total_score,
            **{c: score.categories.get(c, 0) for c in categories},
            "keepStatus": score.decision.value,
        }
        if score.decision == Decision.KEEP:
            result.keep_count += 1
        elif score.decision == Decision.ELIMINATE:
            result.eliminate_count += 1

    for result in results.values():
        count = result.submitted_judges_count
        result.category_averages = {
            c: _average(result.category_sums[c], count) for c in categories
        }
        result.average_score = _average(result.total_score_sum, count)

    ranked = sorted(
        results.values(),
        key=lambda r: (-r.average_score, parse_number(r.number), r.contestant_id),
    )
    for idx, result in enumerate(ranked, start=1):
        result.rank = idx
    return ranked


class AggregationService:
    def __init__(
        self,
        contestant_repository: DBContestantRepository,
        judge_repository: DBJudgeRepository,
        score_repository: DBScoreRepository,
        snapshot_repository: DBResultSnapshotRepository,
        categories: Iterable[str],
        feed: ChangeFeed | None = None,
    ):
        self.contestant_repository = contestant_repository
        self.judge_repository = judge_repository
        self.score_repository = score_repository
        self.snapshot_repository = snapshot_repository
        self.categories = tuple(categories)
        self.feed = feed
        self.logger = logging.getLogger(__name__)

    def compute(self) -> list[ContestantResult]:
        with store_errors(self.contestant_repository, self.judge_repository,
                          self.score_repository, operation="aggregation read"):
            contestants = self.contestant_repository.fetch_all()
            judges = self.judge_repository.fetch_all(role=Role.JUDGE)
            scores: list[ScoreRecord] = []
            for judge in judges:
                scores.extend(self.score_repository.find(judge_id=judge.id))
        return aggregate_results(contestants, judges, scores, self.categories)

    def run(self) -> ResultSnapshot:
        """Recompute and overwrite the published snapshot."""
        ranked = self.compute()
        now = datetime.now(timezone.utc)
        snapshot = ResultSnapshot(
            entries=[r.to_document() for r in ranked],
            meta={
                "contestant_count": len(ranked),
                "scored_contestant_count": sum(1 for r in ranked if r.submitted_judges_count),
                "categories": list(self.categories),
            },
            generated_at=now,
        )
        with store_errors(self.snapshot_repository, operation="snapshot write"):
            self.snapshot_repository.save(snapshot)

        if self.feed is not None:
            self.feed.publish(RESULTS_CHANNEL, snapshot.to_document())

        self.logger.info(
            "aggregated %d contestants (%d scored)",
            len(ranked), snapshot.meta["scored_contestant_count"],
        )
        return snapshot

    def latest(self) -> ResultSnapshot | None:
        with store_errors(self.snapshot_repository, operation="snapshot read"):
            return self.snapshot_repository.get()
