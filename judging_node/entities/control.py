from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Union

CONTROL_ID = "control"


@dataclass(frozen=True)
class Idle:
    """No transition pending; committed values are authoritative."""


@dataclass(frozen=True)
class CountingDown:
    """A pending transition. Committed when `remaining` reaches zero."""
    transition_id: str
    target_contestant_id: str | None
    judging_open: bool
    summary_visible: bool
    remaining: int


Phase = Union[Idle, CountingDown]


@dataclass(frozen=True)
class ControlState:
    current_contestant_id: str | None = None
    is_judging_open: bool = False
    show_summary_screen: bool = False
    video_url: str = ""
    video_playing: bool = False
    phase: Phase = field(default_factory=Idle)
    version: int = 0
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_counting_down(self) -> bool:
        return isinstance(self.phase, CountingDown)

    @property
    def countdown(self) -> CountingDown | None:
        return self.phase if isinstance(self.phase, CountingDown) else None

    def begin(self, pending: CountingDown) -> "ControlState":
        return replace(self, phase=pending)

    def ticked(self, remaining: int) -> "ControlState":
        pending = self.countdown
        if pending is None:
            return self
        return replace(self, phase=replace(pending, remaining=remaining))

    def committed(self) -> "ControlState":
        """Apply the pending change-set and return to Idle."""
        pending = self.countdown
        if pending is None:
            return self
        return replace(
            self,
            current_contestant_id=pending.target_contestant_id,
            is_judging_open=pending.judging_open,
            show_summary_screen=pending.summary_visible,
            phase=Idle(),
        )

    def cancelled(self) -> "ControlState":
        return replace(self, phase=Idle())

    def to_document(self) -> dict[str, Any]:
        """Flat record observed by every live viewer."""
        pending = self.countdown
        return {
            "currentContestantId": self.current_contestant_id,
            "isJudgingOpen": self.is_judging_open,
            "showSummaryScreen": self.show_summary_screen,
            "videoUrl": self.video_url,
            "videoPlaying": self.video_playing,
            "isCountingDown": pending is not None,
            "countdownValue": pending.remaining if pending else 0,
            "nextContestantIdAfterCountdown": pending.target_contestant_id if pending else None,
            "isJudgingOpenChange": pending.judging_open if pending else False,
            "showSummaryScreenChange": pending.summary_visible if pending else False,
            "transitionId": pending.transition_id if pending else None,
            "version": self.version,
            "updatedAt": self.updated_at.isoformat(),
        }
