"""Score store: write-once judge submissions and cascade deletes."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError

from judging_node.config.runtime import ScoringSettings
from judging_node.db.control_state import DBControlStateRepository
from judging_node.db.repositories import DBContestantRepository, DBJudgeRepository, DBScoreRepository
from judging_node.entities.roster import Role
from judging_node.entities.score import Decision, ScoreRecord
from judging_node.errors import (
    AlreadySubmitted, AuthorizationDenied, ContestantNotFound, IncompleteInput,
    JudgingClosed, PartialCascadeFailure, StoreUnavailable, store_errors,
)


class ScoreService:
    def __init__(
        self,
        score_repository: DBScoreRepository,
        judge_repository: DBJudgeRepository,
        contestant_repository: DBContestantRepository,
        control_repository: DBControlStateRepository | None = None,
        scoring: ScoringSettings | None = None,
    ):
        self.score_repository = score_repository
        self.judge_repository = judge_repository
        self.contestant_repository = contestant_repository
        # when set, submissions are only accepted for the contestant on stage
        # while judging is open
        self.control_repository = control_repository
        self.scoring = scoring or ScoringSettings()
        self.logger = logging.getLogger(__name__)

    def validate(self, category_scores: Mapping[str, Any] | None, decision: Any) -> tuple[dict[str, int], Decision]:
        """Check that every category is scored in range and a decision is chosen."""
        category_scores = category_scores or {}
        missing = [c for c in self.scoring.categories if category_scores.get(c) is None]
        if missing:
            raise IncompleteInput(f"unscored categories: {', '.join(missing)}", missing=missing)

        unknown = sorted(set(category_scores) - set(self.scoring.categories))
        if unknown:
            raise IncompleteInput(f"unknown categories: {', '.join(unknown)}", unknown=unknown)

        scores: dict[str, int] = {}
        for category in self.scoring.categories:
            value = category_scores[category]
            if isinstance(value, bool) or not isinstance(value, int):
                raise IncompleteInput(f"{category} must be an integer", category=category)
            if not self.scoring.min_score <= value <= self.scoring.max_score:
                raise IncompleteInput(
                    f"{category} must be between {self.scoring.min_score} and {self.scoring.max_score}",
                    category=category,
                )
            scores[category] = value

        if not decision:
            raise IncompleteInput("choose keep or eliminate")
        try:
            chosen = Decision(decision)
        except ValueError:
            raise IncompleteInput(f"unknown decision: {decision!r}") from None
        return scores, chosen

    def submit_score(
        self,
        judge_id: str,
        contestant_id: str,
        category_scores: Mapping[str, Any] | None,
        decision: Any,
    ) -> ScoreRecord:
        scores, chosen = self.validate(category_scores, decision)

        with store_errors(self.judge_repository, self.contestant_repository,
                          self.score_repository, operation="score submission"):
            judge = self.judge_repository.fetch(judge_id)
            if judge is None or judge.role != Role.JUDGE:
                raise AuthorizationDenied("only judges may submit scores")

            contestant = self.contestant_repository.fetch(contestant_id)
            if contestant is None:
                raise ContestantNotFound(f"contestant {contestant_id} not found")

            if self.control_repository is not None:
                state = self.control_repository.get()
                if not state.is_judging_open:
                    raise JudgingClosed("judging is not open")
                if state.current_contestant_id != contestant_id:
                    raise JudgingClosed("contestant is not on stage")

            record = ScoreRecord(
                judge_id=judge_id,
                contestant_id=contestant_id,
                categories=scores,
                decision=chosen,
                judge_name=judge.display_name,
                contestant_name=contestant.name,
                submitted_at=datetime.now(timezone.utc),
            )
            if not self.score_repository.insert(record):
                raise AlreadySubmitted(
                    f"judge {judge_id} already scored contestant {contestant_id}",
                )

        self.logger.info(
            "score submitted judge=%s contestant=%s total=%d decision=%s",
            judge_id, contestant_id, record.total_score, chosen.value,
        )
        return record

    def get_score(self, judge_id: str, contestant_id: str) -> ScoreRecord | None:
        with store_errors(self.score_repository, operation="score read"):
            return self.score_repository.get(judge_id, contestant_id)

    def list_scores(self, judge_id: str | None = None) -> list[ScoreRecord]:
        with store_errors(self.score_repository, operation="score read"):
            return self.score_repository.find(judge_id=judge_id)

    def delete_scores_for_contestant(self, contestant_id: str) -> int:
        with store_errors(self.score_repository, operation="score lookup"):
            records = self.score_repository.find(contestant_id=contestant_id)
        return self._cascade(records, f"contestant {contestant_id}")

    def delete_scores_for_judge(self, judge_id: str) -> int:
        with store_errors(self.score_repository, operation="score lookup"):
            records = self.score_repository.find(judge_id=judge_id)
        return self._cascade(records, f"judge {judge_id}")

    def _cascade(self, records: list[ScoreRecord], owner: str) -> int:
        deleted = 0
        failed: list[str] = []
        for record in records:
            try:
                if self.score_repository.delete(record.judge_id, record.contestant_id):
                    deleted += 1
            except SQLAlchemyError as exc:
                self.logger.warning(
                    "failed to delete score judge=%s contestant=%s: %s",
                    record.judge_id, record.contestant_id, exc,
                )
                self.score_repository.rollback()
                failed.append(f"{record.judge_id}/{record.contestant_id}")

        if failed and deleted == 0:
            raise StoreUnavailable(f"could not delete any score of {owner}", failed=failed)
        if failed:
            raise PartialCascadeFailure(
                f"deleted {deleted} scores of {owner}, {len(failed)} failed; re-run to finish",
                deleted=deleted, failed=failed,
            )
        self.logger.info("deleted %d scores of %s", deleted, owner)
        return deleted
