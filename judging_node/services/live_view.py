"""Live view subscriptions: in-process fan-out plus cross-process relay.

Every viewer (admin, judge, audience) attaches to the `control` channel and
receives the latest document immediately and then every change in publish
order. Admin and audience viewers also attach to `results`.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import threading
from functools import partial
from typing import Any, AsyncIterator, Callable, Protocol

from judging_node.db.pg_notify import CONTROL_CHANNEL, RESULTS_CHANNEL, listen, notify
from judging_node.entities.identity import Identity
from judging_node.entities.roster import Role

Document = dict[str, Any]
Listener = Callable[[Document], None]
ErrorListener = Callable[[Exception], None]


class ChangeFeed(Protocol):
    def publish(self, channel: str, document: Document) -> None: ...


class LiveViewHub:
    def __init__(self) -> None:
        self._subscribers: dict[str, dict[int, tuple[Listener, ErrorListener | None]]] = {}
        self._latest: dict[str, Document] = {}
        self._tokens = itertools.count(1)
        # publishes arrive from the event loop and from threadpool endpoints
        self._lock = threading.RLock()
        self.logger = logging.getLogger(__name__)

    def subscribe(
        self, channel: str, on_change: Listener, on_error: ErrorListener | None = None,
    ) -> Callable[[], None]:
        """Attach a listener; returns the function that detaches it."""
        with self._lock:
            token = next(self._tokens)
            self._subscribers.setdefault(channel, {})[token] = (on_change, on_error)
            latest = self._latest.get(channel)
            if latest is not None:
                self._deliver(channel, on_change, on_error, latest)

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.get(channel, {}).pop(token, None)

        return unsubscribe

    def publish(self, channel: str, document: Document) -> None:
        with self._lock:
            self._latest[channel] = document
            for on_change, on_error in list(self._subscribers.get(channel, {}).values()):
                self._deliver(channel, on_change, on_error, document)

    def fail(self, channel: str, exc: Exception) -> None:
        """Report a feed failure to every listener of `channel`."""
        with self._lock:
            for _, on_error in list(self._subscribers.get(channel, {}).values()):
                if on_error is not None:
                    on_error(exc)

    def latest(self, channel: str) -> Document | None:
        return self._latest.get(channel)

    def _deliver(
        self, channel: str, on_change: Listener, on_error: ErrorListener | None, document: Document,
    ) -> None:
        try:
            on_change(document)
        except Exception as exc:
            self.logger.exception("listener on %s failed: %s", channel, exc)
            if on_error is not None:
                on_error(exc)


def channels_for(identity: Identity) -> tuple[str, ...]:
    if identity.role == Role.JUDGE:
        return (CONTROL_CHANNEL,)
    return (CONTROL_CHANNEL, RESULTS_CHANNEL)


class LiveViewSession:
    """The subscriptions of one viewer, re-established when its identity changes."""

    def __init__(
        self,
        hub: LiveViewHub,
        deliver: Callable[[str, Document], None],
        on_error: ErrorListener | None = None,
    ):
        self.hub = hub
        self.deliver = deliver
        self.on_error = on_error
        self.identity: Identity | None = None
        self._unsubscribes: list[Callable[[], None]] = []
        self._channels: tuple[str, ...] = ()

    @property
    def channels(self) -> tuple[str, ...]:
        return self._channels

    def attach(self, identity: Identity) -> None:
        self.detach()
        self.identity = identity
        self._channels = channels_for(identity)
        for channel in self._channels:
            self._unsubscribes.append(
                self.hub.subscribe(channel, partial(self.deliver, channel), self.on_error)
            )

    def detach(self) -> None:
        while self._unsubscribes:
            self._unsubscribes.pop()()
        self._channels = ()
        self.identity = None


class PgNotifyFeed:
    """Announce writes with NOTIFY and relay notifications into the local hub.

    `loaders` maps each channel to a callable that reads the current document
    from the store; a notification only tells listeners to reload.
    """

    def __init__(
        self,
        hub: LiveViewHub,
        loaders: dict[str, Callable[[], Document | None]],
        notifier: Callable[..., None] = notify,
        listener: Callable[..., AsyncIterator[tuple[str, str]]] = listen,
        reconnect_seconds: float = 5.0,
    ):
        self.hub = hub
        self.loaders = loaders
        self._notifier = notifier
        self._listener = listener
        self.reconnect_seconds = reconnect_seconds
        self.logger = logging.getLogger(__name__)
        self.stop_event = asyncio.Event()

    def publish(self, channel: str, document: Document) -> None:
        payload = json.dumps({"version": document.get("version")})
        try:
            self._notifier(channel, payload=payload)
        except Exception as exc:
            # the write is committed; at least this process' viewers see it
            self.logger.warning("notify on %s failed, publishing locally: %s", channel, exc)
            self.hub.publish(channel, document)

    def relay(self, channel: str) -> None:
        loader = self.loaders.get(channel)
        if loader is None:
            return
        document = loader()
        if document is not None:
            self.hub.publish(channel, document)

    async def run(self) -> None:
        self.logger.info("live feed relay started (channels=%s)", ",".join(self.loaders))
        while not self.stop_event.is_set():
            try:
                # catch up on anything missed while disconnected
                for channel in self.loaders:
                    self.relay(channel)
                async for channel, _payload in self._listener(*self.loaders):
                    self.relay(channel)
                    if self.stop_event.is_set():
                        break
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.logger.exception("live feed relay error: %s", exc)
                for channel in self.loaders:
                    self.hub.fail(channel, exc)
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=self.reconnect_seconds)
            except asyncio.TimeoutError:
                pass

    async def shutdown(self) -> None:
        self.stop_event.set()
