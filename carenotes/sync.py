"""
Replication between the local store and a remote replica.

sync() pulls remote changes into the local store, then pushes local
changes queued in the store's outbox. It never raises: failures are
logged and reported as a False return, so callers (a sync button, a
startup hook) only need to offer a retry.

The remote speaks a small JSON protocol over HTTPS:

    GET  {url}/v1/pull?since=<cursor>  -> {"changes": [...], "cursor": "...", "has_more": false}
    POST {url}/v1/push  {"changes": [...]}  -> {"accepted": <n>}

where each change is ``{"table": "<name>", "row": {<column>: <value>}}``.
Vector columns are never replicated; each device indexes rows itself.
Conflicts resolve last-write-wins at row granularity.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional, Protocol

import httpx

from .config import RemoteConfig
from .errors import SyncError
from .notify import ChangeBus
from .store import LocalStore
from .types import utc_now

logger = logging.getLogger(__name__)

# Retry config for transient HTTP failures
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds
DEFAULT_RETRY_AFTER = 5.0
MAX_RETRY_AFTER = 60.0

DEFAULT_TIMEOUT = 30.0
PUSH_BATCH_SIZE = 100
MAX_PULL_PAGES = 50

CURSOR_KEY = "pull_cursor"


def retry_after_seconds(value: Optional[str]) -> float:
    """
    Seconds to wait for a Retry-After header value.

    Accepts delta-seconds or an HTTP-date. Missing or unparseable values
    wait DEFAULT_RETRY_AFTER; the result is clamped to [0, MAX_RETRY_AFTER].
    """
    if not value:
        return DEFAULT_RETRY_AFTER
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            logger.debug("Ignoring unparseable Retry-After: %r", value)
            return DEFAULT_RETRY_AFTER
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = (when - datetime.now(timezone.utc)).total_seconds()
    if seconds != seconds:  # NaN
        return DEFAULT_RETRY_AFTER
    return max(0.0, min(seconds, MAX_RETRY_AFTER))


@dataclass
class PullResult:
    """One page of remote changes."""
    changes: list[dict] = field(default_factory=list)
    cursor: Optional[str] = None
    has_more: bool = False


class ReplicationTransport(Protocol):
    """Moves change sets to and from the remote replica."""

    def pull(self, cursor: Optional[str]) -> PullResult: ...

    def push(self, changes: list[dict]) -> int: ...

    def close(self) -> None: ...


class HttpReplicationTransport:
    """HTTP client for the remote replica."""

    def __init__(
        self,
        url: str,
        token: str,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
        retry_backoff_base: float = RETRY_BACKOFF_BASE,
    ):
        self._url = url.rstrip("/")
        self._retry_backoff_base = retry_backoff_base

        # Refuse non-HTTPS for remote hosts (bearer token would be sent in cleartext)
        if not self._url.startswith("https://"):
            from urllib.parse import urlparse
            host = urlparse(self._url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise SyncError(
                    f"Sync URL must use HTTPS (got {self._url}). "
                    "Use HTTPS to protect credentials, or use localhost for local development."
                )

        self._client = httpx.Client(
            base_url=self._url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        """Send a request, retrying transient failures with exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = self._client.request(method, path, **kwargs)
                if resp.status_code == 429:
                    retry_after = retry_after_seconds(resp.headers.get("Retry-After"))
                    logger.info("Rate limited, retrying after %.1fs", retry_after)
                    last_error = SyncError("rate limited")
                    time.sleep(retry_after)
                    continue
                resp.raise_for_status()
                try:
                    return resp.json()
                except ValueError as e:
                    raise SyncError(f"{method} {path} returned invalid JSON: {e}") from e
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise SyncError(
                        f"{method} {path} rejected: {e.response.status_code} {e.response.text}"
                    ) from e
                last_error = e
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e

            if attempt < MAX_RETRIES - 1:
                delay = self._retry_backoff_base * (2 ** attempt)
                logger.info(
                    "%s %s attempt %d failed, retrying in %.1fs: %s",
                    method, path, attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        raise SyncError(
            f"{method} {path} failed after {MAX_RETRIES} attempts: {last_error}"
        ) from last_error

    def pull(self, cursor: Optional[str]) -> PullResult:
        params = {"since": cursor} if cursor else {}
        data = self._request("GET", "/v1/pull", params=params)
        changes = data.get("changes", [])
        if not isinstance(changes, list):
            raise SyncError("Pull response 'changes' is not a list")
        return PullResult(
            changes=changes,
            cursor=data.get("cursor", cursor),
            has_more=bool(data.get("has_more", False)),
        )

    def push(self, changes: list[dict]) -> int:
        data = self._request("POST", "/v1/push", json={"changes": changes})
        return int(data.get("accepted", 0))

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()


TransportFactory = Callable[[RemoteConfig], ReplicationTransport]


def http_transport_factory(remote: RemoteConfig) -> ReplicationTransport:
    return HttpReplicationTransport(remote.url, remote.token)


class SyncEngine:
    """
    Pull-then-push replication with at most one sync in flight.

    Without a remote URL and token the engine runs in local-only mode:
    sync() returns False and makes no network calls.
    """

    def __init__(
        self,
        store: LocalStore,
        bus: ChangeBus,
        remote: RemoteConfig,
        *,
        transport_factory: TransportFactory = http_transport_factory,
    ):
        self._store = store
        self._bus = bus
        self._remote = remote
        self._transport_factory = transport_factory
        self._transport: Optional[ReplicationTransport] = None
        self._sync_lock = threading.Lock()
        self.last_sync: Optional[str] = None
        self.last_error: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return self._remote.is_configured

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    def sync(self) -> bool:
        """
        Pull remote changes, then push local ones.

        If the pull applied anything, the change bus is notified once,
        before the push starts. A failed push doesn't retract that.

        Returns:
            True if both phases completed; False on any failure, when
            another sync is already running, or in local-only mode
        """
        if not self.is_configured:
            logger.warning("Sync URL or token missing; running in local-only mode")
            return False
        if not self._sync_lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            return False

        try:
            logger.info("Starting bidirectional sync")
            transport = self._get_transport()

            pulled = self._pull(transport)
            if pulled:
                logger.info("Pulled and applied %d remote change(s)", pulled)
                self._bus.notify()

            pushed = self._push(transport)
            logger.info("Pushed %d local change(s)", pushed)

            self.last_sync = utc_now()
            self.last_error = None
            logger.info("Sync complete")
            return True
        except Exception as e:
            self.last_error = str(e)
            logger.warning("Sync failed: %s", e)
            return False
        finally:
            self._sync_lock.release()

    def _get_transport(self) -> ReplicationTransport:
        if self._transport is None:
            self._transport = self._transport_factory(self._remote)
        return self._transport

    def _pull(self, transport: ReplicationTransport) -> int:
        applied = 0
        cursor = self._store.get_sync_state(CURSOR_KEY)
        for _ in range(MAX_PULL_PAGES):
            page = transport.pull(cursor)
            if page.changes:
                applied += self._store.apply_remote_changes(page.changes)
            if page.cursor != cursor:
                cursor = page.cursor
                self._store.set_sync_state(CURSOR_KEY, cursor)
            if not page.has_more:
                break
        return applied

    def _push(self, transport: ReplicationTransport) -> int:
        pushed = 0
        while True:
            entries = self._store.pending_changes(PUSH_BATCH_SIZE)
            if not entries:
                return pushed
            changes = [{"table": e.table, "row": e.row} for e in entries if e.row is not None]
            if changes:
                accepted = transport.push(changes)
                if accepted != len(changes):
                    raise SyncError(f"Remote accepted {accepted} of {len(changes)} change(s)")
            self._store.ack_changes([e.seq for e in entries])
            pushed += len(changes)

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
