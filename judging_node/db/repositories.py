from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from judging_node.entities.results import SUMMARY_ID, ResultSnapshot
from judging_node.entities.roster import Contestant, Judge, Role, order_contestants
from judging_node.entities.score import Decision, ScoreRecord
from judging_node.db.tables import ContestantRow, JudgeRow, ResultSnapshotRow, ScoreRow


class DBContestantRepository:
    def __init__(self, session: Session):
        self._session = session

    def rollback(self) -> None:
        self._session.rollback()

    def fetch_all(self) -> list[Contestant]:
        rows = self._session.exec(select(ContestantRow)).all()
        return order_contestants([self._row_to_domain(row) for row in rows])

    def fetch(self, contestant_id: str) -> Contestant | None:
        row = self._session.get(ContestantRow, contestant_id)
        return self._row_to_domain(row) if row else None

    def save(self, contestant: Contestant) -> None:
        existing = self._session.get(ContestantRow, contestant.id)
        if existing is None:
            self._session.add(ContestantRow(
                id=contestant.id,
                number=contestant.number,
                name=contestant.name,
                character=contestant.character,
                image_url=contestant.image_url,
                created_at=contestant.created_at,
            ))
        else:
            existing.number = contestant.number
            existing.name = contestant.name
            existing.character = contestant.character
            existing.image_url = contestant.image_url
        self._session.commit()

    def delete(self, contestant_id: str) -> bool:
        row = self._session.get(ContestantRow, contestant_id)
        if row is None:
            return False
        self._session.delete(row)
        self._session.commit()
        return True

    @staticmethod
    def _row_to_domain(row: ContestantRow) -> Contestant:
        return Contestant(
            id=row.id,
            number=row.number,
            name=row.name,
            character=row.character or "",
            image_url=row.image_url or "",
            created_at=row.created_at,
        )


class DBJudgeRepository:
    def __init__(self, session: Session):
        self._session = session

    def rollback(self) -> None:
        self._session.rollback()

    def fetch_all(self, *, role: Role | None = None) -> list[Judge]:
        stmt = select(JudgeRow).order_by(JudgeRow.created_at.asc(), JudgeRow.id.asc())
        if role is not None:
            stmt = stmt.where(JudgeRow.role == role.value)
        return [self._row_to_domain(row) for row in self._session.exec(stmt).all()]

    def fetch(self, judge_id: str) -> Judge | None:
        row = self._session.get(JudgeRow, judge_id)
        return self._row_to_domain(row) if row else None

    def save(self, judge: Judge) -> None:
        existing = self._session.get(JudgeRow, judge.id)
        role = judge.role.value if judge.role != Role.AUDIENCE else None
        if existing is None:
            self._session.add(JudgeRow(
                id=judge.id, name=judge.name, email=judge.email,
                role=role, created_at=judge.created_at,
            ))
        else:
            existing.name = judge.name
            existing.email = judge.email
            existing.role = role
        self._session.commit()

    def delete(self, judge_id: str) -> bool:
        row = self._session.get(JudgeRow, judge_id)
        if row is None:
            return False
        self._session.delete(row)
        self._session.commit()
        return True

    @staticmethod
    def _row_to_domain(row: JudgeRow) -> Judge:
        try:
            role = Role(row.role) if row.role else Role.AUDIENCE
        except ValueError:
            role = Role.AUDIENCE
        return Judge(
            id=row.id, name=row.name or "", email=row.email or "",
            role=role, created_at=row.created_at,
        )


class DBScoreRepository:
    def __init__(self, session: Session):
        self._session = session

    def rollback(self) -> None:
        self._session.rollback()

    def insert(self, record: ScoreRecord) -> bool:
        """Create the score; returns False when one already exists for the pair."""
        if self._session.get(ScoreRow, (record.judge_id, record.contestant_id)) is not None:
            return False
        self._session.add(ScoreRow(
            judge_id=record.judge_id,
            contestant_id=record.contestant_id,
            judge_name=record.judge_name,
            contestant_name=record.contestant_name,
            categories_jsonb=dict(record.categories),
            total_score=record.total_score,
            decision=record.decision.value,
            submitted_at=record.submitted_at,
        ))
        try:
            self._session.commit()
        except IntegrityError:
            # lost the race against a concurrent insert for the same key
            self._session.rollback()
            return False
        return True

    def get(self, judge_id: str, contestant_id: str) -> ScoreRecord | None:
        row = self._session.get(ScoreRow, (judge_id, contestant_id))
        return self._row_to_domain(row) if row else None

    def find(
        self, *, judge_id: str | None = None, contestant_id: str | None = None,
    ) -> list[ScoreRecord]:
        stmt = select(ScoreRow).order_by(ScoreRow.submitted_at.asc())
        if judge_id is not None:
            stmt = stmt.where(ScoreRow.judge_id == judge_id)
        if contestant_id is not None:
            stmt = stmt.where(ScoreRow.contestant_id == contestant_id)
        return [self._row_to_domain(row) for row in self._session.exec(stmt).all()]

    def delete(self, judge_id: str, contestant_id: str) -> bool:
        row = self._session.get(ScoreRow, (judge_id, contestant_id))
        if row is None:
            return False
        self._session.delete(row)
        self._session.commit()
        return True

    @staticmethod
    def _row_to_domain(row: ScoreRow) -> ScoreRecord:
        return ScoreRecord(
            judge_id=row.judge_id,
            contestant_id=row.contestant_id,
            categories={k: int(v) for k, v in (row.categories_jsonb or {}).items()},
            decision=Decision(row.decision),
            judge_name=row.judge_name or "",
            contestant_name=row.contestant_name or "",
            submitted_at=row.submitted_at,
        )


class DBResultSnapshotRepository:
    def __init__(self, session: Session):
        self._session = session

    def rollback(self) -> None:
        self._session.rollback()

    def save(self, snapshot: ResultSnapshot) -> None:
        """Overwrite the previous snapshot; no history is kept."""
        existing = self._session.get(ResultSnapshotRow, snapshot.id)
        if existing is None:
            self._session.add(ResultSnapshotRow(
                id=snapshot.id,
                entries_jsonb=snapshot.entries,
                meta_jsonb=snapshot.meta,
                generated_at=snapshot.generated_at,
            ))
        else:
            existing.entries_jsonb = snapshot.entries
            existing.meta_jsonb = snapshot.meta
            existing.generated_at = snapshot.generated_at
        self._session.commit()

    def get(self, snapshot_id: str = SUMMARY_ID) -> ResultSnapshot | None:
        row = self._session.get(ResultSnapshotRow, snapshot_id)
        if row is None:
            return None
        return ResultSnapshot(
            id=row.id,
            entries=list(row.entries_jsonb or []),
            meta=dict(row.meta_jsonb or {}),
            generated_at=_ensure_utc(row.generated_at),
        )


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
