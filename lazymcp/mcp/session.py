"""Per-connection protocol state machine and session bookkeeping.

A session moves through ``uninitialized -> negotiating -> ready -> closing ->
closed``. Only ``ready`` sessions accept tool calls. The in-flight request
set is the one structure shared between concurrent calls, so every
check-and-update on it happens under ``_lock``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from enum import Enum
from typing import Any, Mapping

from ..errors import (
    ConcurrencyLimitError,
    DuplicateRequestError,
    ProtocolSequenceError,
    SessionLimitError,
)
from ..session_logging import log_session, session_extra
from ..settings import SessionSettings
from .cancellation import CancellationToken
from .schema import RequestId

logger = logging.getLogger(__name__)

SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]


class SessionPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    NEGOTIATING = "negotiating"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


def negotiate_protocol_version(requested: str | None) -> str:
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


class Session:
    """Lifecycle and in-flight call state of one client connection."""

    def __init__(
        self,
        settings: SessionSettings | None = None,
        *,
        session_id: str | None = None,
        client_address: str | None = None,
    ) -> None:
        self.settings = settings or SessionSettings()
        self.session_id = session_id or uuid.uuid4().hex
        self.client_address = client_address
        self.phase = SessionPhase.UNINITIALIZED
        self.protocol_version: str | None = None
        self.client_capabilities: dict[str, Any] = {}
        self.client_info: dict[str, Any] = {}
        self._in_flight: dict[RequestId, CancellationToken] = {}
        self._lock = threading.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._sequence_violations = 0
        self._grace_expired = False
        self._closed_event = asyncio.Event()
        self.last_activity = time.monotonic()

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    # ----- phase transitions -------------------------------------------------

    def begin_initialize(
        self,
        *,
        protocol_version: str | None,
        capabilities: Mapping[str, Any] | None = None,
        client_info: Mapping[str, Any] | None = None,
    ) -> str:
        """Record the client's initialize request and enter ``negotiating``."""
        with self._lock:
            if self.phase != SessionPhase.UNINITIALIZED:
                raise ProtocolSequenceError(
                    f"initialize is not allowed in phase {self.phase.value}"
                )
            self.protocol_version = negotiate_protocol_version(protocol_version)
            self.client_capabilities = dict(capabilities or {})
            self.client_info = dict(client_info or {})
            self.phase = SessionPhase.NEGOTIATING
        log_session(
            self.session_id,
            "session negotiating protocol=%s client=%s",
            self.protocol_version,
            self.client_info.get("name", "unknown"),
        )
        return self.protocol_version

    def mark_ready(self) -> None:
        with self._lock:
            if self.phase != SessionPhase.NEGOTIATING:
                raise ProtocolSequenceError(
                    f"initialized notification is not allowed in phase {self.phase.value}"
                )
            self.phase = SessionPhase.READY
        log_session(self.session_id, "session ready")

    def require_phase(self, *phases: SessionPhase) -> None:
        if self.phase not in phases:
            expected = ", ".join(phase.value for phase in phases)
            raise ProtocolSequenceError(
                f"message not allowed in phase {self.phase.value} (expected {expected})"
            )

    @property
    def closed(self) -> bool:
        return self.phase == SessionPhase.CLOSED

    def record_sequence_violation(self) -> bool:
        """Count an out-of-order message; True once the session should be dropped."""
        with self._lock:
            self._sequence_violations += 1
            return self._sequence_violations >= self.settings.max_sequence_violations

    def reset_sequence_violations(self) -> None:
        with self._lock:
            self._sequence_violations = 0

    # ----- in-flight calls ---------------------------------------------------

    def begin_call(self, request_id: RequestId) -> CancellationToken:
        """Atomically admit ``request_id`` into the in-flight set."""
        with self._lock:
            if self.phase != SessionPhase.READY:
                raise ProtocolSequenceError(
                    f"tools/call is not allowed in phase {self.phase.value}"
                )
            if request_id in self._in_flight:
                raise DuplicateRequestError(request_id)
            if len(self._in_flight) >= self.settings.max_concurrent_calls:
                raise ConcurrencyLimitError(self.settings.max_concurrent_calls)
            token = CancellationToken()
            self._in_flight[request_id] = token
            self._idle.clear()
            return token

    def end_call(self, request_id: RequestId) -> bool:
        """Remove ``request_id`` from the in-flight set; False if already gone."""
        with self._lock:
            removed = self._in_flight.pop(request_id, None) is not None
            if not self._in_flight:
                self._idle.set()
            return removed

    def cancel_call(self, request_id: RequestId, reason: str = "cancelled by client") -> bool:
        with self._lock:
            token = self._in_flight.get(request_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def in_flight(self) -> frozenset[RequestId]:
        with self._lock:
            return frozenset(self._in_flight)

    def is_in_flight(self, request_id: RequestId) -> bool:
        with self._lock:
            return request_id in self._in_flight

    def _cancel_all(self, reason: str) -> int:
        with self._lock:
            tokens = list(self._in_flight.values())
        for token in tokens:
            token.cancel(reason)
        return len(tokens)

    # ----- shutdown ----------------------------------------------------------

    @property
    def delivers_results(self) -> bool:
        """False once the session is closed or its close grace period ran out."""
        return self.phase != SessionPhase.CLOSED and not self._grace_expired

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def drain(self, grace_seconds: float | None = None) -> bool:
        """Enter ``closing`` and let in-flight calls finish.

        Calls still running when the grace period ends are cancelled. The
        session stays ``closing`` until ``finish_close``, so the transport can
        acknowledge the close first. Returns False if a close was already under
        way.
        """
        grace = self.settings.close_grace_seconds if grace_seconds is None else grace_seconds
        with self._lock:
            if self.phase in (SessionPhase.CLOSING, SessionPhase.CLOSED):
                return False
            self.phase = SessionPhase.CLOSING
            pending = len(self._in_flight)
        log_session(self.session_id, "session closing in_flight=%s grace=%s", pending, grace)
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=grace)
        except asyncio.TimeoutError:
            self._grace_expired = True
            cancelled = self._cancel_all("session closed")
            logger.warning(
                "session grace period elapsed cancelled=%s",
                cancelled,
                extra=session_extra(self.session_id),
            )
        return True

    def finish_close(self) -> None:
        """Complete a close started by ``drain``; no-op in any other phase."""
        with self._lock:
            if self.phase != SessionPhase.CLOSING:
                return
            self.phase = SessionPhase.CLOSED
        self._closed_event.set()
        log_session(self.session_id, "session closed")

    async def close(self, grace_seconds: float | None = None) -> None:
        """Drain in-flight work, then mark ``closed``."""
        if await self.drain(grace_seconds):
            self.finish_close()

    def abort(self, reason: str = "transport disconnected") -> None:
        """Tear the session down immediately, cancelling every in-flight call."""
        with self._lock:
            if self.phase == SessionPhase.CLOSED:
                return
            self.phase = SessionPhase.CLOSED
        self._closed_event.set()
        cancelled = self._cancel_all(reason)
        log_session(self.session_id, "session aborted reason=%s cancelled=%s", reason, cancelled)


class SessionManager:
    """Creates and tracks sessions. Sessions share no mutable state."""

    def __init__(self, settings: SessionSettings | None = None) -> None:
        self.settings = settings or SessionSettings()
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def create(self, *, client_address: str | None = None) -> Session:
        self.expire_idle()
        with self._lock:
            if len(self._sessions) >= self.settings.max_sessions:
                raise SessionLimitError(self.settings.max_sessions)
            session = Session(self.settings, client_address=client_address)
            self._sessions[session.session_id] = session
        log_session(session.session_id, "session registered client=%s", client_address)
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def list(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def expire_idle(self, now: float | None = None) -> list[Session]:
        """Abort and forget sessions with no calls running and no recent activity.

        A zero ``idle_timeout_seconds`` disables expiry.
        """
        limit = self.settings.idle_timeout_seconds
        if limit <= 0:
            return []
        now = time.monotonic() if now is None else now
        with self._lock:
            stale = [
                session
                for session in self._sessions.values()
                if now - session.last_activity > limit and not session.in_flight()
            ]
            for session in stale:
                del self._sessions[session.session_id]
        for session in stale:
            session.abort("session idle timeout")
        return stale

    async def close_all(self, grace_seconds: float | None = None) -> None:
        sessions = self.list()
        await asyncio.gather(
            *(session.close(grace_seconds) for session in sessions),
            return_exceptions=True,
        )
        with self._lock:
            self._sessions.clear()
