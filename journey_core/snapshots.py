"""
Line-status snapshot cache.

Status reads are served from the most recent stored snapshot while it is
fresh. A stale or missing snapshot triggers a refresh, and if that does not
produce a fresh snapshot the status is fetched live and stored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from journey_core.dispatch import DispatchError
from journey_core.tfl_client import TflClient

logger = logging.getLogger(__name__)

SOURCE_LIVE = "live"
SOURCE_MANUAL_REFRESH = "manual-refresh"
SOURCE_CRON = "cron"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class StatusSnapshot:
    """A stored copy of the line-status payload."""

    payload: list[dict]
    source: str
    valid_at: datetime

    def age(self, now: Optional[datetime] = None) -> timedelta:
        """Time since this snapshot was taken."""
        if now is None:
            now = utcnow()
        return now - self.valid_at


def is_snapshot_fresh(
    snapshot: Optional[StatusSnapshot],
    max_age: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    if snapshot is None:
        return False
    return snapshot.age(now) <= max_age


class SnapshotStoreError(Exception):
    """Raised when the snapshot store cannot be read or written."""


class SnapshotStore(Protocol):
    async def insert(self, snapshot: StatusSnapshot) -> None: ...

    async def latest(self) -> Optional[StatusSnapshot]: ...


class InMemorySnapshotStore:
    """
    Append-only in-process snapshot store.

    latest() returns the snapshot with the newest valid_at; among equal
    timestamps the one inserted last wins.
    """

    def __init__(self, max_rows: int = 50) -> None:
        self._rows: list[StatusSnapshot] = []
        self._max_rows = max_rows

    async def insert(self, snapshot: StatusSnapshot) -> None:
        self._rows.append(snapshot)
        if len(self._rows) > self._max_rows:
            del self._rows[: len(self._rows) - self._max_rows]

    async def latest(self) -> Optional[StatusSnapshot]:
        best: Optional[StatusSnapshot] = None
        for row in self._rows:
            if best is None or row.valid_at >= best.valid_at:
                best = row
        return best

    def __len__(self) -> int:
        return len(self._rows)


class StatusSnapshotCache:
    """
    Freshness-gated read path for line status.

    `client` serves interactive live fetches; `refresh_client` (usually
    holding the autofetch keys) is used by refresh().
    """

    def __init__(
        self,
        store: SnapshotStore,
        client: TflClient,
        refresh_client: Optional[TflClient] = None,
        max_age: float = 120,
        modes: Optional[list[str]] = None,
    ) -> None:
        self._store = store
        self._client = client
        self._refresh_client = refresh_client or client
        self._max_age = timedelta(seconds=max_age)
        self._modes = modes
        self._clock: Callable[[], datetime] = utcnow  # overridable for testing

    async def refresh(self, source: str = SOURCE_MANUAL_REFRESH) -> StatusSnapshot:
        """Fetch live status with the refresh client and store it as a new snapshot."""
        payload = await self._refresh_client.get_line_status(self._modes)
        snapshot = StatusSnapshot(payload=payload, source=source, valid_at=self._clock())
        await self._store.insert(snapshot)
        logger.info("Stored %s status snapshot (%d lines)", source, len(payload))
        return snapshot

    async def get_line_statuses(self, max_age: Optional[float] = None) -> list[dict]:
        """
        Line statuses no older than `max_age` seconds when obtainable.

        1. Fresh snapshot -> returned without calling TfL.
        2. Otherwise refresh and re-read.
        3. Otherwise fetch live and store (best effort).
        If the live fetch fails too, a stale snapshot is better than nothing.
        """
        limit = self._max_age if max_age is None else timedelta(seconds=max_age)

        snapshot = await self._read_latest()
        if is_snapshot_fresh(snapshot, limit, self._clock()):
            return snapshot.payload

        try:
            await self.refresh(SOURCE_MANUAL_REFRESH)
            snapshot = await self._read_latest() or snapshot
        except (DispatchError, SnapshotStoreError) as exc:
            logger.error("Status snapshot refresh failed: %s", exc)

        if is_snapshot_fresh(snapshot, limit, self._clock()):
            return snapshot.payload

        try:
            payload = await self._client.get_line_status(self._modes)
        except DispatchError as exc:
            if snapshot is None:
                raise
            logger.warning(
                "Live status fetch failed (%s); serving %s snapshot from %s",
                exc,
                snapshot.source,
                snapshot.valid_at.isoformat(),
            )
            return snapshot.payload

        try:
            await self._store.insert(
                StatusSnapshot(payload=payload, source=SOURCE_LIVE, valid_at=self._clock())
            )
        except SnapshotStoreError as exc:
            logger.error("Failed to persist live status snapshot: %s", exc)
        return payload

    async def _read_latest(self) -> Optional[StatusSnapshot]:
        try:
            return await self._store.latest()
        except SnapshotStoreError as exc:
            logger.error("Failed to read status snapshot: %s", exc)
            return None
