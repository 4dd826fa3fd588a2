"""
Resource Pool: bounded set of reusable sessions drawn from the Session Host.

Admission is limited twice:
- `max_concurrent` bounds sessions handed out at once (callers beyond it queue)
- `max_tabs_allowed` bounds live sessions, idle or not (creation beyond it waits or fails)

Every mutation of the queue and the idle/in-use bookkeeping happens inside
`self._lock`, and no lock-held section awaits, so a session is always in
exactly one of: the idle list, one owner's hands, or nowhere (closed).
"""

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

from . import constants
from .errors import PoolExhausted, QueueTimeout
from .models import PendingRequest, Session
from .utils import debug_print, short_id


class SessionPool:
    def __init__(
        self,
        host,
        *,
        max_pool_size: int = constants.DEFAULT_MAX_POOL_SIZE,
        max_concurrent: int = constants.DEFAULT_MAX_CONCURRENT,
        max_tabs_allowed: int = constants.DEFAULT_MAX_TABS_ALLOWED,
        queue_timeout: float = constants.QUEUE_TIMEOUT_SECONDS,
        force_close_timeout: float = constants.FORCE_CLOSE_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.host = host
        self.max_pool_size = max(1, int(max_pool_size))
        self.max_concurrent = max(1, int(max_concurrent))
        self.max_tabs_allowed = max(self.max_concurrent, int(max_tabs_allowed))
        self.queue_timeout = float(queue_timeout)
        self.force_close_timeout = float(force_close_timeout)
        self._clock = clock

        self._lock = asyncio.Lock()
        self._idle: List[Session] = []
        self._in_use: Dict[str, Session] = {}
        self._live: Dict[str, Session] = {}
        # Admission slots granted to callers that do not hold a session yet
        self._reserved = 0
        # Tabs reserved for sessions currently being created
        self._pending_creates = 0
        self._queue: Deque[PendingRequest] = deque()
        self._tab_queue: Deque[PendingRequest] = deque()
        self._reclaim_listeners: List[Callable[[Session, str], None]] = []

        host.add_session_close_listener(self._on_session_closed)

    @classmethod
    def from_config(cls, host, config: dict) -> "SessionPool":
        return cls(
            host,
            max_pool_size=config.get("max_pool_size", constants.DEFAULT_MAX_POOL_SIZE),
            max_concurrent=config.get("max_concurrent", constants.DEFAULT_MAX_CONCURRENT),
            max_tabs_allowed=config.get("max_tabs_allowed", constants.DEFAULT_MAX_TABS_ALLOWED),
            queue_timeout=config.get("queue_timeout_seconds", constants.QUEUE_TIMEOUT_SECONDS),
            force_close_timeout=config.get("force_close_timeout_seconds", constants.FORCE_CLOSE_TIMEOUT_SECONDS),
        )

    # --- Counters ---

    def _active_count(self) -> int:
        return len(self._in_use) + self._reserved

    def _tab_count(self) -> int:
        return len(self._live) + self._pending_creates

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def live_count(self) -> int:
        return len(self._live)

    @property
    def queued_count(self) -> int:
        return len(self._queue) + len(self._tab_queue)

    def is_in_use(self, session: Session) -> bool:
        return self._in_use.get(session.id) is session

    def idle_sessions(self) -> List[Session]:
        return list(self._idle)

    def in_use_sessions(self) -> List[Session]:
        return list(self._in_use.values())

    # --- Public API ---

    def add_reclaim_listener(self, listener: Callable[[Session, str], None]) -> None:
        """`listener(session, owner_request_id)` runs when a session is taken away from its owner."""
        self._reclaim_listeners.append(listener)

    async def acquire(self, request_id: str, *, priority: bool = False, force: bool = False) -> Session:
        """
        Hand out a session owned by `request_id`.

        Suspends while the pool is saturated. Raises QueueTimeout when no slot
        frees within the wait bound and PoolExhausted when a priority caller
        needs a new session at the live-session ceiling without `force`.
        """
        await self._reclaim_abandoned()
        await self._acquire_slot(request_id, priority=priority, force=force)
        try:
            return await self._obtain_session(request_id, priority=priority, force=force)
        except BaseException:
            async with self._lock:
                self._reserved -= 1
                self._drain_locked()
            raise

    async def release(self, session: Session, request_id: Optional[str] = None) -> None:
        """Return a session to the idle set, or close it when the warm pool is full."""
        to_close = None
        async with self._lock:
            if self._in_use.get(session.id) is not session:
                debug_print(f"⚠️ Release ignored: session {short_id(session.id)} is not in use (already reclaimed?)")
                return
            if request_id is not None and session.owner_request_id != request_id:
                debug_print(
                    f"⚠️ Release ignored: session {short_id(session.id)} is owned by "
                    f"{session.owner_request_id}, not {request_id}"
                )
                return
            self._unbind_locked(session)
            if session.is_closed():
                self._live.pop(session.id, None)
            elif len(self._idle) >= self.max_pool_size:
                to_close = session
                self._live.pop(session.id, None)
            else:
                session.last_activity_at = self._clock()
                self._idle.append(session)
            self._drain_locked()

        if to_close is not None:
            debug_print(f"🧹 Pool full, closing released session {short_id(to_close.id)}")
            await self.host.close_session(to_close)
            async with self._lock:
                self._drain_locked()
        else:
            debug_print(f"↩️  Session {short_id(session.id)} released ({self._describe()})")

    async def force_close(self, session: Session) -> None:
        """Close a session regardless of its state and free its slot."""
        async with self._lock:
            self._forget_locked(session)
        await self.host.close_session(session)
        async with self._lock:
            self._drain_locked()
        debug_print(f"🗑️  Session {short_id(session.id)} force-closed ({self._describe()})")

    def touch(self, session: Session) -> None:
        """Mark activity on an in-use session so it is not reclaimed as abandoned."""
        session.last_activity_at = self._clock()
        self.host.touch()

    def park(self, session: Session, parked: bool = True) -> None:
        """Parked sessions wait on something external and are exempt from abandoned reclaim."""
        session.parked = parked
        self.touch(session)

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._live.values())
            waiters = list(self._queue) + list(self._tab_queue)
            self._queue.clear()
            self._tab_queue.clear()
            for session in sessions:
                self._forget_locked(session)
            for waiter in waiters:
                if not waiter.future.done():
                    waiter.future.set_exception(PoolExhausted("Session pool is shutting down"))
        for session in sessions:
            await self.host.close_session(session)
        debug_print(f"🧹 Closed {len(sessions)} pooled session(s)")

    def info(self) -> dict:
        now = self._clock()
        sessions = []
        for session in self._live.values():
            in_use = self.is_in_use(session)
            sessions.append({
                "id": session.id,
                "in_use": in_use,
                "request_id": session.owner_request_id if in_use else None,
                "in_use_seconds": round(now - session.acquired_at, 1) if in_use and session.acquired_at else None,
                "parked": session.parked,
                "profile": session.profile_name,
                "closed": session.is_closed(),
            })
        return {
            "max_pool_size": self.max_pool_size,
            "max_concurrent": self.max_concurrent,
            "max_tabs_allowed": self.max_tabs_allowed,
            "queue_timeout_seconds": self.queue_timeout,
            "force_close_timeout_seconds": self.force_close_timeout,
            "live_sessions": len(self._live),
            "idle_sessions": len(self._idle),
            "sessions_in_use": len(self._in_use),
            "queued_requests": len(self._queue),
            "tab_limit_waiters": len(self._tab_queue),
            "sessions": sessions,
        }

    # --- Admission ---

    async def _acquire_slot(self, request_id: str, *, priority: bool, force: bool) -> None:
        async with self._lock:
            free = self._active_count() < self.max_concurrent
            if force or (free and (priority or not self._queue)):
                self._reserved += 1
                return
            waiter = self._enqueue_locked(request_id, priority=priority)
            debug_print(
                f"⏳ Request {request_id}: max concurrent sessions reached "
                f"({self._active_count()}/{self.max_concurrent}). Queued at position "
                f"{list(self._queue).index(waiter) + 1}{' (priority)' if priority else ''}."
            )
        await self._wait_for_grant(waiter)

    def _enqueue_locked(self, request_id: str, *, priority: bool, tab_limit: bool = False) -> PendingRequest:
        now = self._clock()
        waiter = PendingRequest(
            request_id=request_id,
            priority=priority,
            future=asyncio.get_running_loop().create_future(),
            enqueued_at=now,
            expires_at=now + self.queue_timeout,
            tab_limit_wait=tab_limit,
        )
        queue = self._tab_queue if tab_limit else self._queue
        if priority:
            # Behind earlier priority waiters, ahead of every regular one
            position = 0
            for position, queued in enumerate(queue):
                if not queued.priority:
                    break
            else:
                position = len(queue)
            queue.insert(position, waiter)
        else:
            queue.append(waiter)
        return waiter

    async def _wait_for_grant(self, waiter: PendingRequest) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(waiter.future), timeout=self.queue_timeout)
        except asyncio.TimeoutError:
            async with self._lock:
                granted = waiter.future.done() and not waiter.future.cancelled() and waiter.future.exception() is None
                if not granted:
                    self._remove_waiter_locked(waiter)
                    waiter.future.cancel()
            if granted:
                return
            kind = "tab limit" if waiter.tab_limit_wait else "queue"
            raise QueueTimeout(
                f"Request {waiter.request_id}: timed out after {self.queue_timeout:.0f}s waiting in {kind}"
            )
        except asyncio.CancelledError:
            async with self._lock:
                if waiter.future.done() and not waiter.future.cancelled() and waiter.future.exception() is None:
                    # Granted just before cancellation: hand the grant back
                    if not waiter.tab_limit_wait:
                        self._reserved -= 1
                    self._drain_locked()
                else:
                    self._remove_waiter_locked(waiter)
                    waiter.future.cancel()
            raise

    def _remove_waiter_locked(self, waiter: PendingRequest) -> None:
        queue = self._tab_queue if waiter.tab_limit_wait else self._queue
        try:
            queue.remove(waiter)
        except ValueError:
            pass

    def _drain_locked(self) -> None:
        """Wake waiters whose limit has room: tab-limit waiters first, then the regular queue."""
        # A woken tab-limit waiter re-runs session lookup, so an idle session counts as room too
        room = self.max_tabs_allowed - self._tab_count() + len(self._idle)
        while self._tab_queue and room > 0:
            waiter = self._tab_queue.popleft()
            if waiter.future.done():
                continue
            room -= 1
            waiter.future.set_result(None)
            debug_print(f"🚦 Request {waiter.request_id}: tab available")
        while self._queue and self._active_count() < self.max_concurrent:
            waiter = self._queue.popleft()
            if waiter.future.done():
                continue
            self._reserved += 1
            waiter.future.set_result(None)
            waited = self._clock() - waiter.enqueued_at
            debug_print(f"🚦 Request {waiter.request_id}: dequeued after {waited:.1f}s")

    # --- Session binding ---

    def _bind_locked(self, session: Session, request_id: str) -> None:
        now = self._clock()
        self._reserved -= 1
        self._in_use[session.id] = session
        session.in_use = True
        session.owner_request_id = request_id
        session.acquired_at = now
        session.last_activity_at = now
        session.parked = False

    def _unbind_locked(self, session: Session) -> None:
        self._in_use.pop(session.id, None)
        session.in_use = False
        session.owner_request_id = None
        session.acquired_at = None
        session.parked = False

    def _forget_locked(self, session: Session) -> None:
        self._unbind_locked(session)
        if session in self._idle:
            self._idle.remove(session)
        self._live.pop(session.id, None)

    def _pop_idle_locked(self) -> Optional[Session]:
        while self._idle:
            session = self._idle.pop()
            if session.is_closed():
                self._live.pop(session.id, None)
                continue
            return session
        return None

    async def _obtain_session(self, request_id: str, *, priority: bool, force: bool) -> Session:
        """Reuse an idle session when one exists, otherwise create one within the tab limit."""
        while True:
            waiter = None
            session = None
            async with self._lock:
                session = self._pop_idle_locked()
                if session is not None:
                    self._bind_locked(session, request_id)
                elif self._tab_count() < self.max_tabs_allowed or force:
                    self._pending_creates += 1
                elif priority:
                    raise PoolExhausted(
                        f"Maximum tab limit reached ({self._tab_count()}/{self.max_tabs_allowed})"
                    )
                else:
                    waiter = self._enqueue_locked(request_id, priority=False, tab_limit=True)
                    debug_print(
                        f"⏳ Request {request_id}: tab limit reached ({self._tab_count()}/{self.max_tabs_allowed}). Waiting."
                    )

            if waiter is not None:
                await self._wait_for_grant(waiter)
                continue
            if session is None:
                return await self._create_session(request_id)
            if await self._reset_session(session, request_id):
                self.host.touch()
                debug_print(f"♻️  Request {request_id}: reusing session {short_id(session.id)} ({self._describe()})")
                return session

    async def _reset_session(self, session: Session, request_id: str) -> bool:
        """Point a reused session at a neutral page. On failure it is discarded and its slot kept."""
        try:
            await asyncio.wait_for(
                session.page.goto(constants.NEUTRAL_PAGE_URL),
                timeout=constants.PAGE_RESET_TIMEOUT_SECONDS,
            )
            return True
        except BaseException as e:
            async with self._lock:
                self._forget_locked(session)
                self._reserved += 1
            await self.host.close_session(session)
            if not isinstance(e, Exception):
                raise
            debug_print(f"⚠️ Request {request_id}: reset of session {short_id(session.id)} failed ({e}). Discarding.")
            return False

    async def _create_session(self, request_id: str) -> Session:
        try:
            session = await self.host.new_session()
        except BaseException:
            async with self._lock:
                self._pending_creates -= 1
                self._drain_locked()
            raise

        async with self._lock:
            self._pending_creates -= 1
            self._live[session.id] = session
            self._bind_locked(session, request_id)
        debug_print(f"🆕 Request {request_id}: new session {short_id(session.id)} ({self._describe()})")
        return session

    # --- Reclaim ---

    async def _reclaim_abandoned(self) -> None:
        now = self._clock()
        reclaimed = []
        async with self._lock:
            for session in list(self._in_use.values()):
                if session.parked:
                    continue
                if now - session.last_activity_at <= self.force_close_timeout:
                    continue
                owner = session.owner_request_id
                self._forget_locked(session)
                reclaimed.append((session, owner))
        for session, owner in reclaimed:
            debug_print(
                f"🧹 Force-closing session {short_id(session.id)} held by {owner} "
                f"(inactive > {self.force_close_timeout:.0f}s)"
            )
            await self.host.close_session(session)
            self._notify_reclaimed(session, owner)
        if reclaimed:
            async with self._lock:
                self._drain_locked()

    def _on_session_closed(self, session: Session) -> None:
        # Runs synchronously from the host's close notification. Lock-held
        # sections never await, so this cannot interleave with one.
        owner = session.owner_request_id if self.is_in_use(session) else None
        known = session.id in self._live
        self._forget_locked(session)
        if known:
            debug_print(f"📕 Session {short_id(session.id)} closed ({self._describe()})")
        self._drain_locked()
        if owner:
            self._notify_reclaimed(session, owner)

    def _notify_reclaimed(self, session: Session, owner: Optional[str]) -> None:
        if not owner:
            return
        for listener in list(self._reclaim_listeners):
            try:
                listener(session, owner)
            except Exception as e:
                debug_print(f"⚠️ Reclaim listener failed: {e}")

    def _describe(self) -> str:
        return (
            f"in use {len(self._in_use)}/{self.max_concurrent}, "
            f"tabs {self._tab_count()}/{self.max_tabs_allowed}, "
            f"idle {len(self._idle)}, queued {self.queued_count}"
        )
