"""PostgreSQL LISTEN/NOTIFY helpers for cross-process live-view fan-out.

Writers announce a change on a channel; every api process listens and relays
the change to its own viewers. Payloads only carry a small JSON marker (the
document itself can exceed the 8000 byte NOTIFY limit), listeners reload the
document from the store.

Usage:
    notify(CONTROL_CHANNEL, payload='{"version": 12}')

    async for channel, payload in listen(CONTROL_CHANNEL, RESULTS_CHANNEL):
        print(f"got {channel}: {payload}")
"""
from __future__ import annotations

import asyncio
import logging
import re
import select as _select
from typing import Any, AsyncIterator

import psycopg2
from judging_node.db.session import database_url

logger = logging.getLogger(__name__)

CONTROL_CHANNEL = "control_state"
RESULTS_CHANNEL = "results"

_CHANNEL_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def _checked(channel: str) -> str:
    # channel names are interpolated into LISTEN/NOTIFY statements
    if not _CHANNEL_RE.match(channel):
        raise ValueError(f"invalid notify channel: {channel!r}")
    return channel


def notify(channel: str = CONTROL_CHANNEL, payload: str = "", connection: Any = None) -> None:
    """Send a NOTIFY on the given channel with an optional payload string."""
    channel = _checked(channel)
    own_conn = connection is None
    if own_conn:
        connection = _raw_connection()
    try:
        connection.autocommit = True
        with connection.cursor() as cur:
            if payload:
                cur.execute("SELECT pg_notify(%s, %s)", (channel, payload))
            else:
                cur.execute(f"NOTIFY {channel}")
    finally:
        if own_conn:
            connection.close()


async def listen(*channels: str, timeout: float | None = None) -> AsyncIterator[tuple[str, str]]:
    """Async generator yielding (channel, payload) tuples until cancelled."""
    if not channels:
        channels = (CONTROL_CHANNEL,)

    conn = _raw_connection()
    conn.autocommit = True
    try:
        with conn.cursor() as cur:
            for ch in channels:
                cur.execute(f"LISTEN {_checked(ch)}")

        loop = asyncio.get_running_loop()
        while True:
            notified = await loop.run_in_executor(
                None, _poll_notify, conn, timeout if timeout is not None else 30.0,
            )
            if notified:
                while conn.notifies:
                    n = conn.notifies.pop(0)
                    yield (n.channel, n.payload or "")
    finally:
        conn.close()


def _poll_notify(conn: Any, timeout: float) -> bool:
    """Synchronous poll, runs in an executor thread."""
    if _select.select([conn], [], [], timeout) == ([], [], []):
        return False
    conn.poll()
    return bool(conn.notifies)


def _raw_connection():
    url = database_url()
    dsn = url.replace("+psycopg2", "")
    return psycopg2.connect(dsn)
