"""Keyed pool of long-lived SSH sessions."""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import CommandTimeoutError, SessionConnectError
from .models import Credentials, SessionKey
from .transport import (
    DEFAULT_CONNECT_TIMEOUT,
    ChannelBrokenError,
    ParamikoTransport,
    SessionTransport,
)

_LOGGER = logging.getLogger(__name__)

DEFAULT_IDLE_TTL = 5 * 60
DEFAULT_SWEEP_INTERVAL = 60


class SessionState(Enum):
    CONNECTED = "connected"
    INVALID = "invalid"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass
class Session:
    """A pooled SSH connection. Only the pool changes its state."""

    key: SessionKey
    handle: Any
    created_at: float
    last_used: float
    state: SessionState = SessionState.CONNECTED
    commands: int = 0

    @property
    def usable(self) -> bool:
        return self.state is SessionState.CONNECTED


class ConnectionPool:
    """Cache of SSH sessions keyed by :class:`SessionKey`.

    Commands on one key are serialized through an ``asyncio.Lock``; its
    waiters are woken in FIFO order, so concurrent callers for the same host
    run one after the other in submission order. Different keys never wait
    on each other.

    A session whose channel breaks mid-command is dropped and the command is
    retried once on a fresh session. Timeouts and cancellations also drop the
    session, since the remote side may still be writing, but are never
    retried.
    """

    def __init__(
        self,
        transport: Optional[SessionTransport] = None,
        *,
        idle_ttl: float = DEFAULT_IDLE_TTL,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport: SessionTransport = (
            transport if transport is not None else ParamikoTransport(connect_timeout=connect_timeout)
        )
        self._idle_ttl = idle_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._sessions: Dict[SessionKey, Session] = {}
        self._locks: Dict[SessionKey, asyncio.Lock] = {}
        self._lock_users: Dict[SessionKey, int] = {}
        self._sweeper: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Future] = set()
        self._closed = False

    async def __aenter__(self) -> "ConnectionPool":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    @property
    def idle_ttl(self) -> float:
        return self._idle_ttl

    async def start(self) -> None:
        """Start the background sweep of idle sessions."""
        if self._sweeper is None or self._sweeper.done():
            self._closed = False
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="ssh-pool-sweeper")

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return max(0.0, deadline - asyncio.get_running_loop().time())

    async def execute(self, credentials: Credentials, command: str, timeout: Optional[float] = None) -> str:
        """Run *command* on the session for *credentials* and return stdout.

        *timeout* bounds the whole call: waiting for the session, connecting
        and running the command.
        """
        if self._closed:
            raise SessionConnectError("Connection pool is shut down")
        key = SessionKey.from_credentials(credentials)
        deadline = None if timeout is None else asyncio.get_running_loop().time() + timeout
        lock = self._claim_lock(key)
        try:
            try:
                await asyncio.wait_for(lock.acquire(), self._remaining(deadline))
            except asyncio.TimeoutError as err:
                raise CommandTimeoutError(f"Timed out waiting for session {key}") from err
            try:
                return await self._execute_locked(key, credentials, command, deadline)
            finally:
                lock.release()
        finally:
            self._unclaim_lock(key)

    def _claim_lock(self, key: SessionKey) -> asyncio.Lock:
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        return self._locks.setdefault(key, asyncio.Lock())

    def _unclaim_lock(self, key: SessionKey) -> None:
        users = self._lock_users.get(key, 1) - 1
        if users > 0:
            self._lock_users[key] = users
            return
        self._lock_users.pop(key, None)
        if key not in self._sessions:
            self._locks.pop(key, None)

    def _busy(self, key: SessionKey) -> bool:
        """Whether a caller holds or is queued on the lock for *key*."""
        return self._lock_users.get(key, 0) > 0

    async def _execute_locked(
        self,
        key: SessionKey,
        credentials: Credentials,
        command: str,
        deadline: Optional[float],
    ) -> str:
        for attempt in (1, 2):
            session = await self._checkout(key, credentials, deadline)
            try:
                output = await asyncio.wait_for(
                    self._transport.run(session.handle, command), self._remaining(deadline)
                )
            except ChannelBrokenError as err:
                await self._discard(session)
                if attempt == 2:
                    session.state = SessionState.FAILED
                    raise SessionConnectError(f"Session {key} failed after reconnect: {err}") from err
                _LOGGER.warning("Channel to %s broke (%s); reconnecting once", key, err)
                continue
            except asyncio.TimeoutError as err:
                await self._discard(session)
                raise CommandTimeoutError(f"Command on {key} did not finish in time") from err
            except asyncio.CancelledError:
                await asyncio.shield(self._discard(session))
                raise
            session.commands += 1
            session.last_used = self._clock()
            return output
        raise AssertionError("unreachable")

    async def _checkout(self, key: SessionKey, credentials: Credentials, deadline: Optional[float]) -> Session:
        session = self._sessions.get(key)
        if session is not None:
            if session.usable and self._transport.is_alive(session.handle):
                session.last_used = self._clock()
                _LOGGER.debug("Reusing connection for %s", key)
                return session
            _LOGGER.info("Dropping dead connection for %s", key)
            await self._discard(session)

        if self._closed:
            raise SessionConnectError("Connection pool is shut down")
        _LOGGER.info("Creating new connection to %s", key)
        # Shielded: a blocking connect cannot be interrupted, so a handshake
        # that completes after its caller gave up is closed, not leaked.
        connecting = asyncio.ensure_future(self._transport.connect(credentials))
        try:
            handle = await asyncio.wait_for(asyncio.shield(connecting), self._remaining(deadline))
        except asyncio.TimeoutError as err:
            connecting.add_done_callback(self._close_abandoned)
            raise CommandTimeoutError(f"Timed out connecting to {key}") from err
        except asyncio.CancelledError:
            connecting.add_done_callback(self._close_abandoned)
            raise
        now = self._clock()
        session = Session(key=key, handle=handle, created_at=now, last_used=now)
        self._sessions[key] = session
        _LOGGER.info("Connected to %s", key)
        return session

    async def _discard(self, session: Session, state: SessionState = SessionState.INVALID) -> None:
        if self._sessions.get(session.key) is session:
            del self._sessions[session.key]
        session.state = state
        await self._close_handle(session)

    def _close_abandoned(self, connecting: asyncio.Future) -> None:
        if connecting.cancelled() or connecting.exception() is not None:
            return
        task = asyncio.ensure_future(self._transport.close(connecting.result()))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_handle(self, session: Session) -> None:
        try:
            await self._transport.close(session.handle)
        except Exception as err:  # pragma: no cover - closing is best effort
            _LOGGER.debug("Error closing connection for %s: %s", session.key, err)

    async def close(self, credentials: Credentials) -> bool:
        """Close the session for *credentials* once it is idle."""
        key = SessionKey.from_credentials(credentials)
        lock = self._claim_lock(key)
        try:
            async with lock:
                session = self._sessions.get(key)
                if session is None:
                    return False
                await self._discard(session, SessionState.CLOSED)
        finally:
            self._unclaim_lock(key)
        _LOGGER.info("Closed connection for %s", key)
        return True

    async def sweep(self) -> int:
        """Close sessions idle longer than the TTL and return how many."""
        now = self._clock()
        stale = [
            session
            for key, session in self._sessions.items()
            if not self._busy(key) and now - session.last_used > self._idle_ttl
        ]
        # Stale sessions leave the pool before the first await; the closes run
        # as a tracked task that shutdown() waits for.
        for session in stale:
            del self._sessions[session.key]
            self._locks.pop(session.key, None)
            session.state = SessionState.CLOSED
        if stale:
            closing = asyncio.ensure_future(self._close_stale(stale))
            self._background.add(closing)
            closing.add_done_callback(self._background.discard)
            await asyncio.shield(closing)
            _LOGGER.info("Cleaned up %d stale connection(s)", len(stale))
        return len(stale)

    async def _close_stale(self, stale: List[Session]) -> None:
        for session in stale:
            await self._close_handle(session)
            _LOGGER.info("Removed stale connection: %s", session.key)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            await self.sweep()

    async def shutdown(self) -> None:
        """Stop the sweeper and close every session."""
        self._closed = True
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            session.state = SessionState.CLOSED
            await self._close_handle(session)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        for key in [key for key in self._locks if not self._busy(key)]:
            del self._locks[key]
        _LOGGER.info("Destroyed all connections (%d closed)", len(sessions))

    def stats(self) -> Dict[str, Any]:
        """Return a snapshot of the pooled sessions."""
        now = self._clock()
        return {
            "active_connections": len(self._sessions),
            "connections": [
                {
                    "key": str(key),
                    "host": key.host,
                    "port": key.port,
                    "username": key.username,
                    "state": session.state.value,
                    "last_used": session.last_used,
                    "idle_seconds": round(now - session.last_used, 1),
                    "commands": session.commands,
                }
                for key, session in self._sessions.items()
            ],
        }
