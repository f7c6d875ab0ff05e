"""Countdown orchestrator: timed, server-driven transitions of the control record.

A transition is requested by an admin, written as a pending change-set, ticked
down once per interval by a task owned by this process and committed in one
write when it reaches zero. Only one countdown can be pending at a time; a
tick that loses the compare-and-set to another ticker of the same transition
stops, so a transition is never driven twice.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Callable

from judging_node.db.repositories import DBContestantRepository
from judging_node.entities.control import ControlState, CountingDown
from judging_node.entities.roster import Contestant
from judging_node.errors import (
    ContestantNotFound, IncompleteInput, NoActiveTransition, StaleControlState,
    TransitionInProgress, store_errors,
)
from judging_node.services.control import ControlService

# (target contestant id, judging open, summary visible) computed from committed state
Plan = Callable[[ControlState], tuple[str | None, bool, bool]]


class CountdownOrchestrator:
    def __init__(
        self,
        control: ControlService,
        contestant_repository: DBContestantRepository,
        countdown_seconds: int = 10,
        tick_interval_seconds: float = 1.0,
    ):
        self.control = control
        self.contestant_repository = contestant_repository
        self.countdown_seconds = countdown_seconds
        self.tick_interval_seconds = tick_interval_seconds
        self.logger = logging.getLogger(__name__)
        self._tasks: dict[str, asyncio.Task] = {}

    # ── pending change-set ──

    def begin(
        self,
        target_contestant_id: str | None,
        judging_open: bool,
        summary_visible: bool,
        seconds: int | None = None,
    ) -> ControlState:
        return self._begin(lambda _s: (target_contestant_id, judging_open, summary_visible), seconds)

    def _begin(self, plan: Plan, seconds: int | None = None) -> ControlState:
        seconds = self.countdown_seconds if seconds is None else seconds
        if seconds < 1:
            raise IncompleteInput("countdown must last at least one second")
        transition_id = uuid.uuid4().hex

        def start(state: ControlState) -> ControlState:
            if state.is_counting_down:
                raise TransitionInProgress(
                    "a countdown is already running",
                    transition_id=state.countdown.transition_id,
                )
            target, judging_open, summary_visible = plan(state)
            return state.begin(CountingDown(
                transition_id=transition_id,
                target_contestant_id=target,
                judging_open=judging_open,
                summary_visible=summary_visible,
                remaining=seconds,
            ))

        state = self.control.update(start)
        pending = state.countdown
        self.logger.info(
            "countdown %s started: %ds to contestant=%s judging_open=%s summary=%s",
            transition_id, seconds, pending.target_contestant_id,
            pending.judging_open, pending.summary_visible,
        )
        return state

    def tick(self, transition_id: str, expected_remaining: int | None = None) -> ControlState | None:
        """Advance `transition_id` by one step; commit it when it reaches zero.

        Returns None when that transition is no longer the pending one, or when
        `expected_remaining` is given and someone else has ticked it since.
        """
        state = self.control.get()
        pending = state.countdown
        if pending is None or pending.transition_id != transition_id:
            return None
        if expected_remaining is not None and pending.remaining != expected_remaining:
            self.logger.warning(
                "countdown %s is driven by another orchestrator, ticking stopped", transition_id,
            )
            return None
        remaining = pending.remaining - 1
        if remaining <= 0:
            committed = self.control.save(state.committed())
            self.logger.info(
                "countdown %s committed: contestant=%s judging_open=%s summary=%s",
                transition_id, committed.current_contestant_id,
                committed.is_judging_open, committed.show_summary_screen,
            )
            return committed
        return self.control.save(state.ticked(remaining))

    def cancel(self) -> ControlState:
        """Discard the pending transition; committed values stay untouched."""
        cancelled: list[str] = []

        def stop(state: ControlState) -> ControlState:
            if not state.is_counting_down:
                raise NoActiveTransition("no countdown to cancel")
            cancelled.append(state.countdown.transition_id)
            return state.cancelled()

        state = self.control.update(stop)
        for transition_id in cancelled:
            self._stop_task(transition_id)
        self.logger.info("countdown %s cancelled", cancelled[-1] if cancelled else None)
        return state

    # ── admin requests ──

    async def request_transition(
        self,
        target_contestant_id: str | None,
        judging_open: bool,
        summary_visible: bool,
        seconds: int | None = None,
    ) -> ControlState:
        state = self.begin(target_contestant_id, judging_open, summary_visible, seconds)
        self._spawn(state.countdown)
        return state

    async def next_contestant(self, seconds: int | None = None) -> ControlState:
        return await self._navigate(1, seconds)

    async def previous_contestant(self, seconds: int | None = None) -> ControlState:
        return await self._navigate(-1, seconds)

    async def go_to_contestant(self, contestant_id: str, seconds: int | None = None) -> ControlState:
        with store_errors(self.contestant_repository, operation="contestant read"):
            contestant = self.contestant_repository.fetch(contestant_id)
        if contestant is None:
            raise ContestantNotFound(f"contestant {contestant_id} not found")
        return await self._start(
            lambda s: (contestant.id, s.is_judging_open, s.show_summary_screen), seconds,
        )

    async def toggle_judging(self, seconds: int | None = None) -> ControlState:
        return await self._start(
            lambda s: (s.current_contestant_id, not s.is_judging_open, s.show_summary_screen), seconds,
        )

    async def toggle_summary(self, seconds: int | None = None) -> ControlState:
        return await self._start(
            lambda s: (s.current_contestant_id, s.is_judging_open, not s.show_summary_screen), seconds,
        )

    async def _navigate(self, step: int, seconds: int | None) -> ControlState:
        with store_errors(self.contestant_repository, operation="contestant read"):
            contestants = self.contestant_repository.fetch_all()
        if not contestants:
            raise ContestantNotFound("no contestants to switch to")
        return await self._start(
            lambda s: (
                neighbour(contestants, s.current_contestant_id, step),
                s.is_judging_open,
                s.show_summary_screen,
            ),
            seconds,
        )

    async def _start(self, plan: Plan, seconds: int | None) -> ControlState:
        state = self._begin(plan, seconds)
        self._spawn(state.countdown)
        return state

    # ── ticking tasks ──

    async def resume(self) -> None:
        """Adopt a countdown persisted before this process started."""
        state = self.control.get()
        pending = state.countdown
        if pending is None or self.is_driving(pending.transition_id):
            return
        self.logger.info(
            "resuming countdown %s at %ds", pending.transition_id, pending.remaining,
        )
        self._spawn(pending)

    def is_driving(self, transition_id: str) -> bool:
        task = self._tasks.get(transition_id)
        return task is not None and not task.done()

    def _spawn(self, pending: CountingDown) -> None:
        transition_id = pending.transition_id
        if self.is_driving(transition_id):
            return
        task = asyncio.get_running_loop().create_task(self._drive(transition_id, pending.remaining))
        self._tasks[transition_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(transition_id, None))

    def _stop_task(self, transition_id: str) -> None:
        task = self._tasks.pop(transition_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _drive(self, transition_id: str, remaining: int) -> None:
        last_remaining = remaining
        try:
            while True:
                await asyncio.sleep(self.tick_interval_seconds)
                try:
                    state = self.tick(transition_id, expected_remaining=last_remaining)
                except StaleControlState:
                    if not self._still_owned(transition_id, last_remaining):
                        return
                    continue
                if state is None:
                    self.logger.info("countdown %s superseded, ticking stopped", transition_id)
                    return
                pending = state.countdown
                if pending is None:
                    return
                last_remaining = pending.remaining
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.exception("countdown %s tick failed: %s", transition_id, exc)
            self._reset_after_failure(transition_id)

    def _still_owned(self, transition_id: str, last_remaining: int) -> bool:
        """After a lost write: keep ticking only if nobody else ticked this transition."""
        pending = self.control.get().countdown
        if pending is None or pending.transition_id != transition_id:
            self.logger.info("countdown %s ended elsewhere, ticking stopped", transition_id)
            return False
        if pending.remaining != last_remaining:
            self.logger.warning(
                "countdown %s is driven by another orchestrator, ticking stopped", transition_id,
            )
            return False
        return True

    def _reset_after_failure(self, transition_id: str) -> None:
        try:
            state = self.control.get()
            pending = state.countdown
            if pending is not None and pending.transition_id == transition_id:
                self.control.save(state.cancelled())
                self.logger.warning("countdown %s reset to idle after failure", transition_id)
        except Exception as exc:
            self.logger.error(
                "countdown %s could not be reset (%s); an admin must cancel it manually",
                transition_id, exc,
            )

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


def neighbour(contestants: list[Contestant], current_id: str | None, step: int) -> str:
    """Contestant `step` places away from `current_id`, wrapping around.

    With no (or an unknown) current contestant, forward starts at the first
    and backward at the last.
    """
    ids = [c.id for c in contestants]
    if current_id not in ids:
        return ids[0] if step > 0 else ids[-1]
    return ids[(ids.index(current_id) + step) % len(ids)]
