"""Admin roster operations: contestants and judges, with score cascades."""
from __future__ import annotations

import logging
import uuid

from judging_node.db.repositories import DBContestantRepository, DBJudgeRepository
from judging_node.entities.roster import Contestant, Judge, Role
from judging_node.errors import ContestantNotFound, IncompleteInput, JudgeNotFound, store_errors
from judging_node.services.control import ControlService
from judging_node.services.scores import ScoreService


class RosterService:
    def __init__(
        self,
        contestant_repository: DBContestantRepository,
        judge_repository: DBJudgeRepository,
        score_service: ScoreService,
        control: ControlService | None = None,
    ):
        self.contestant_repository = contestant_repository
        self.judge_repository = judge_repository
        self.score_service = score_service
        # when set, a deleted contestant is taken off stage and out of a pending countdown
        self.control = control
        self.logger = logging.getLogger(__name__)

    def list_contestants(self) -> list[Contestant]:
        with store_errors(self.contestant_repository, operation="contestant read"):
            return self.contestant_repository.fetch_all()

    def add_contestant(
        self, number: str, name: str, character: str, image_url: str = "",
    ) -> Contestant:
        if not (number or "").strip() or not (name or "").strip() or not (character or "").strip():
            raise IncompleteInput("number, name and character are required")
        contestant = Contestant(
            id=uuid.uuid4().hex,
            number=number.strip(),
            name=name.strip(),
            character=character.strip(),
            image_url=(image_url or "").strip(),
        )
        with store_errors(self.contestant_repository, operation="contestant write"):
            self.contestant_repository.save(contestant)
        self.logger.info("added contestant %s (#%s)", contestant.id, contestant.number)
        return contestant

    def delete_contestant(self, contestant_id: str) -> int:
        """Delete the contestant's scores, then the contestant.

        A partial cascade raises before the contestant is removed, so the
        same call can be repeated to finish the job. The control record is
        released before the contestant row goes, so it never points at a
        missing contestant.
        """
        with store_errors(self.contestant_repository, operation="contestant read"):
            exists = self.contestant_repository.fetch(contestant_id) is not None
        deleted = self.score_service.delete_scores_for_contestant(contestant_id)
        if self.control is not None:
            self.control.release_contestant(contestant_id)
        if not exists:
            if deleted:
                self.logger.info("removed %d orphan scores of contestant %s", deleted, contestant_id)
                return deleted
            raise ContestantNotFound(f"contestant {contestant_id} not found")
        with store_errors(self.contestant_repository, operation="contestant delete"):
            self.contestant_repository.delete(contestant_id)
        self.logger.info("deleted contestant %s and %d scores", contestant_id, deleted)
        return deleted

    def list_judges(self) -> list[Judge]:
        with store_errors(self.judge_repository, operation="judge read"):
            return self.judge_repository.fetch_all()

    def add_judge(self, judge_id: str, name: str, email: str, role: str) -> Judge:
        if not (judge_id or "").strip() or not (email or "").strip():
            raise IncompleteInput("identity id and email are required")
        if role not in (Role.ADMIN, Role.JUDGE):
            raise IncompleteInput("role must be admin or judge")
        judge = Judge(id=judge_id.strip(), name=(name or "").strip(), email=email.strip(), role=Role(role))
        with store_errors(self.judge_repository, operation="judge write"):
            self.judge_repository.save(judge)
        self.logger.info("saved %s %s", judge.role.value, judge.id)
        return judge

    def delete_judge(self, judge_id: str) -> int:
        with store_errors(self.judge_repository, operation="judge read"):
            exists = self.judge_repository.fetch(judge_id) is not None
        deleted = self.score_service.delete_scores_for_judge(judge_id)
        if not exists:
            if deleted:
                self.logger.info("removed %d orphan scores of judge %s", deleted, judge_id)
                return deleted
            raise JudgeNotFound(f"judge {judge_id} not found")
        with store_errors(self.judge_repository, operation="judge delete"):
            self.judge_repository.delete(judge_id)
        self.logger.info("deleted judge %s and %d scores", judge_id, deleted)
        return deleted
