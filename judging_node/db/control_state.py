"""Repository for the single live control record.

Every write is a compare-and-set on `version`: the whole record is replaced in
one UPDATE guarded by the version the caller read, so a multi-field commit is
either fully applied or not at all and two writers can never both win.
"""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from judging_node.db.tables.control import ControlStateRow
from judging_node.entities.control import CONTROL_ID, ControlState, CountingDown, Idle
from judging_node.errors import StaleControlState


class DBControlStateRepository:
    def __init__(self, session: Session, control_id: str = CONTROL_ID):
        self._session = session
        self._control_id = control_id

    def rollback(self) -> None:
        self._session.rollback()

    def get(self) -> ControlState:
        """Read the record, creating it with defaults on first access."""
        row = self._fetch_row()
        if row is None:
            self._session.add(ControlStateRow(id=self._control_id))
            try:
                self._session.commit()
            except IntegrityError:
                # another process created it first
                self._session.rollback()
            row = self._fetch_row()
        return self._row_to_domain(row)

    def save(self, state: ControlState) -> ControlState:
        """Write `state` if the stored version still equals `state.version`.

        Returns the stored state with its new version. Raises
        `StaleControlState` when someone else wrote in between.
        """
        now = datetime.now(timezone.utc)
        pending = state.countdown
        values = {
            "version": state.version + 1,
            "current_contestant_id": state.current_contestant_id,
            "is_judging_open": state.is_judging_open,
            "show_summary_screen": state.show_summary_screen,
            "video_url": state.video_url,
            "video_playing": state.video_playing,
            "is_counting_down": pending is not None,
            "countdown_value": pending.remaining if pending else 0,
            "transition_id": pending.transition_id if pending else None,
            "next_contestant_id_after_countdown": pending.target_contestant_id if pending else None,
            "is_judging_open_change": pending.judging_open if pending else False,
            "show_summary_screen_change": pending.summary_visible if pending else False,
            "updated_at": now,
        }
        stmt = (
            update(ControlStateRow)
            .where(ControlStateRow.id == self._control_id)
            .where(ControlStateRow.version == state.version)
            .values(**values)
        )
        result = self._session.execute(stmt)
        if result.rowcount != 1:
            self._session.rollback()
            raise StaleControlState(
                f"control state changed since version {state.version}",
                expected_version=state.version,
            )
        self._session.commit()
        # the UPDATE bypassed the ORM identity map
        self._session.expire_all()
        return replace(state, version=state.version + 1, updated_at=now)

    def _fetch_row(self) -> ControlStateRow | None:
        self._session.expire_all()
        return self._session.get(ControlStateRow, self._control_id)

    @staticmethod
    def _row_to_domain(row: ControlStateRow) -> ControlState:
        phase: Idle | CountingDown = Idle()
        if row.is_counting_down and row.transition_id:
            phase = CountingDown(
                transition_id=row.transition_id,
                target_contestant_id=row.next_contestant_id_after_countdown,
                judging_open=bool(row.is_judging_open_change),
                summary_visible=bool(row.show_summary_screen_change),
                remaining=max(0, int(row.countdown_value or 0)),
            )
        updated_at = row.updated_at
        if updated_at.tzinfo is None:
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return ControlState(
            current_contestant_id=row.current_contestant_id,
            is_judging_open=bool(row.is_judging_open),
            show_summary_screen=bool(row.show_summary_screen),
            video_url=row.video_url or "",
            video_playing=bool(row.video_playing),
            phase=phase,
            version=int(row.version or 0),
            updated_at=updated_at,
        )
