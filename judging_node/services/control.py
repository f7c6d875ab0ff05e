"""Direct reads and writes of the live control record.

Callers must already be authorised as admin; every write is one
compare-and-set on the record and is published to live viewers afterwards.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable

from judging_node.db.control_state import DBControlStateRepository
from judging_node.db.pg_notify import CONTROL_CHANNEL
from judging_node.entities.control import ControlState
from judging_node.errors import StaleControlState, store_errors
from judging_node.services.live_view import ChangeFeed


class ControlService:
    def __init__(
        self,
        repository: DBControlStateRepository,
        feed: ChangeFeed | None = None,
        retries: int = 3,
    ):
        self.repository = repository
        self.feed = feed
        self.retries = max(1, retries)
        self.logger = logging.getLogger(__name__)

    def get(self) -> ControlState:
        with store_errors(self.repository, operation="control read"):
            return self.repository.get()

    def save(self, state: ControlState) -> ControlState:
        """Single compare-and-set write; raises `StaleControlState` on conflict."""
        with store_errors(self.repository, operation="control write"):
            saved = self.repository.save(state)
        self.publish(saved)
        return saved

    def update(self, mutate: Callable[[ControlState], ControlState]) -> ControlState:
        """Read-modify-write, re-reading when another writer got in first."""
        for attempt in range(1, self.retries + 1):
            state = self.get()
            try:
                return self.save(mutate(state))
            except StaleControlState:
                if attempt == self.retries:
                    raise
                self.logger.debug("control write conflict, retrying (%d/%d)", attempt, self.retries)
        raise AssertionError("unreachable")

    def publish(self, state: ControlState) -> None:
        if self.feed is not None:
            self.feed.publish(CONTROL_CHANNEL, state.to_document())

    def set_no_contestant(self) -> ControlState:
        """Blank the stage immediately, discarding any pending countdown."""
        state = self.update(lambda s: replace(s.cancelled(), current_contestant_id=None))
        self.logger.info("stage cleared (version=%d)", state.version)
        return state

    def set_video(self, video_url: str | None = None, playing: bool | None = None) -> ControlState:
        """Update the video url and playing flag in one write.

        With neither given the playing flag is flipped.
        """
        def apply(s: ControlState) -> ControlState:
            if video_url is None and playing is None:
                return replace(s, video_playing=not s.video_playing)
            return replace(
                s,
                video_url=s.video_url if video_url is None else video_url,
                video_playing=s.video_playing if playing is None else playing,
            )

        state = self.update(apply)
        self.logger.info(
            "video url=%r playing=%s (version=%d)", state.video_url, state.video_playing, state.version,
        )
        return state

    def release_contestant(self, contestant_id: str) -> ControlState | None:
        """Take a removed contestant off stage and drop a countdown targeting them.

        Returns None when the record does not refer to the contestant.
        """
        def refers(s: ControlState) -> bool:
            pending = s.countdown
            return s.current_contestant_id == contestant_id or (
                pending is not None and pending.target_contestant_id == contestant_id
            )

        def apply(s: ControlState) -> ControlState:
            pending = s.countdown
            if pending is not None and pending.target_contestant_id == contestant_id:
                s = s.cancelled()
            if s.current_contestant_id == contestant_id:
                s = replace(s, current_contestant_id=None)
            return s

        if not refers(self.get()):
            return None
        state = self.update(apply)
        self.logger.info("contestant %s released from control (version=%d)", contestant_id, state.version)
        return state
