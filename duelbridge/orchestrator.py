"""
Interaction Orchestrator: drives one request through navigate -> submit ->
observe on a pooled session, pausing for a human when a challenge cannot be
cleared automatically.
"""

import asyncio
import enum
import random
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from . import constants
from .errors import HostInitFailure, PoolExhausted, QueueTimeout, RequestCancelled, is_timeout_error
from .events import ErrorEvent, StatusEvent, StreamEndEvent, StreamEvent, UserActionRequiredEvent
from .models import InteractionRequest, Session
from .page_adapter import PlaywrightPageAdapter
from .registry import ResumeOutcome, RetrySignalRegistry
from .rewriter import EvaluationInterceptor
from .utils import debug_print

Emit = Callable[[StreamEvent], Awaitable[None]]


class InteractionState(enum.Enum):
    START = "start"
    NAVIGATING = "navigating"
    SUBMITTING = "submitting"
    AWAITING_MODELS = "awaiting_models"
    CHALLENGE_DETECTED = "challenge_detected"
    AWAITING_HUMAN_RESUME = "awaiting_human_resume"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (InteractionState.COMPLETED, InteractionState.FAILED)


class _AttemptResult(enum.Enum):
    DONE = "done"
    RETRY = "retry"


@dataclass
class InteractionRun:
    """What happened to one request; returned by `InteractionOrchestrator.run`."""
    request_id: str
    states: List[InteractionState] = field(default_factory=list)
    attempts: int = 0
    session_id: Optional[str] = None
    error: Optional[str] = None
    outbound_payload: Optional[dict] = None
    discard_session: bool = False
    started_at: float = field(default_factory=time.monotonic)

    @property
    def state(self) -> InteractionState:
        return self.states[-1] if self.states else InteractionState.START

    def transition(self, state: InteractionState) -> None:
        self.states.append(state)
        debug_print(f"🔀 Request {self.request_id}: {state.value}")


class _EventSink:
    """Forwards events in order and lets exactly one STREAM_END through."""

    def __init__(self, emit: Emit, on_event: Optional[Callable[[StreamEvent], None]] = None) -> None:
        self._emit = emit
        self._on_event = on_event
        self.ended = False

    async def __call__(self, event: StreamEvent) -> None:
        if self.ended:
            return
        if isinstance(event, StreamEndEvent):
            self.ended = True
        if self._on_event is not None:
            self._on_event(event)
        await self._emit(event)

    async def end(self) -> None:
        await self(StreamEndEvent())


class InteractionOrchestrator:
    def __init__(
        self,
        pool,
        host,
        registry: RetrySignalRegistry,
        *,
        target_url: str = constants.LMARENA_URL,
        solver=None,
        adapter_factory: Callable[[object], object] = PlaywrightPageAdapter,
        interceptor_factory=EvaluationInterceptor,
        max_attempts: int = constants.MAX_ATTEMPTS,
        intercept_timeout: float = constants.INTERCEPT_WAIT_SECONDS,
        settle_delay_range=constants.SETTLE_DELAY_RANGE_SECONDS,
        completion_timeout: float = constants.COMPLETION_TIMEOUT_SECONDS,
        keepalive_interval: float = 5.0,
    ) -> None:
        self.pool = pool
        self.host = host
        self.registry = registry
        self.target_url = target_url
        self.solver = solver
        self._adapter_factory = adapter_factory
        self._interceptor_factory = interceptor_factory
        self.max_attempts = max(1, int(max_attempts))
        self.intercept_timeout = float(intercept_timeout)
        self.settle_delay_range = tuple(settle_delay_range)
        self.completion_timeout = float(completion_timeout)
        self.keepalive_interval = float(keepalive_interval)
        self._running: Dict[str, asyncio.Task] = {}
        self.runs: Dict[str, InteractionRun] = {}

        pool.add_reclaim_listener(self._on_session_reclaimed)

    @classmethod
    def from_config(cls, config: dict, pool, host, registry: RetrySignalRegistry, solver=None) -> "InteractionOrchestrator":
        return cls(
            pool,
            host,
            registry,
            target_url=config.get("lmarena_url", constants.LMARENA_URL),
            solver=solver,
            max_attempts=config.get("max_attempts", constants.MAX_ATTEMPTS),
            completion_timeout=config.get("completion_timeout_seconds", constants.COMPLETION_TIMEOUT_SECONDS),
        )

    def is_running(self, request_id: str) -> bool:
        return request_id in self._running

    def cancel(self, request_id: str) -> bool:
        """Stop an in-flight request. Returns False when it is not running."""
        task = self._running.get(request_id)
        if task is None:
            return False
        debug_print(f"⏹️  Request {request_id}: cancellation requested")
        self.registry.cancel(request_id)
        task.cancel()
        return True

    def _on_session_reclaimed(self, session: Session, owner_request_id: str) -> None:
        run = self.runs.get(owner_request_id)
        if run is not None and run.state not in TERMINAL_STATES:
            run.discard_session = True
            run.error = "Browser session was reclaimed"
        self.registry.cancel(owner_request_id)

    async def run(self, request: InteractionRequest, emit: Emit) -> InteractionRun:
        """
        Drive `request` to completion, emitting events through `emit`.

        Always ends the event stream with exactly one STREAM_END and always
        returns the session to the pool (or closes it) before returning.
        """
        request_id = request.request_id
        run = InteractionRun(request_id=request_id)
        self.runs[request_id] = run
        task = asyncio.current_task()
        if task is not None:
            self._running[request_id] = task

        session: Optional[Session] = None

        def _touch_session(_event: StreamEvent) -> None:
            if session is not None:
                self.pool.touch(session)

        sink = _EventSink(emit, on_event=_touch_session)
        run.transition(InteractionState.START)
        try:
            await sink(StatusEvent("Waiting for an available browser session..."))
            try:
                session = await self.pool.acquire(request_id, priority=request.priority)
            except (QueueTimeout, PoolExhausted, HostInitFailure) as e:
                run.error = str(e)
                run.transition(InteractionState.FAILED)
                await sink(ErrorEvent(str(e)))
                return run
            run.session_id = session.id
            await self._attempt_loop(request, session, sink, run)
        except RequestCancelled as e:
            run.error = run.error or str(e)
            run.discard_session = True
            run.transition(InteractionState.FAILED)
            await sink(ErrorEvent(run.error))
        except asyncio.CancelledError:
            run.error = "Request cancelled"
            run.discard_session = True
            run.transition(InteractionState.FAILED)
            await sink(ErrorEvent(run.error))
            raise
        except Exception as e:
            debug_print(f"❌ Request {request_id}: {type(e).__name__}: {e}")
            run.error = f"Interaction failed: {e}"
            run.discard_session = True
            run.transition(InteractionState.FAILED)
            self.host.record_failure()
            await sink(ErrorEvent(run.error))
        finally:
            self._running.pop(request_id, None)
            self.registry.discard(request_id)
            if session is not None:
                if run.discard_session:
                    await self.pool.force_close(session)
                else:
                    await self.pool.release(session, request_id)
            await sink.end()
            elapsed = time.monotonic() - run.started_at
            debug_print(f"🏁 Request {request_id}: {run.state.value} after {run.attempts} attempt(s) in {elapsed:.1f}s")
        return run

    async def _attempt_loop(self, request: InteractionRequest, session: Session, sink: _EventSink, run: InteractionRun) -> None:
        for attempt in range(1, self.max_attempts + 1):
            request.attempt = attempt
            run.attempts = attempt
            adapter = self._adapter_factory(session.page)
            result = await self._run_attempt(request, session, adapter, sink, run)
            if result is _AttemptResult.DONE:
                return
            try:
                await self.host.refresh_fingerprint(session)
            except Exception as e:
                debug_print(f"⚠️ Request {request.request_id}: fingerprint refresh failed: {e}")
            await sink(StatusEvent(f"Retrying (attempt {attempt + 1}/{self.max_attempts})..."))

    async def _run_attempt(self, request, session, adapter, sink, run) -> _AttemptResult:
        last_attempt = request.attempt >= self.max_attempts
        timed_out = False
        async with self._interceptor_factory(session.page, request, sink) as interceptor:
            try:
                challenged = await self._navigate_and_submit(request, session, adapter, interceptor, sink, run)
            except Exception as e:
                if not is_timeout_error(e):
                    run.error = f"Interaction failed: {e}"
                    run.discard_session = True
                    run.transition(InteractionState.FAILED)
                    self.host.record_failure()
                    await sink(ErrorEvent(run.error))
                    return _AttemptResult.DONE
                debug_print(f"⏱️ Request {request.request_id}: timeout on attempt {request.attempt}: {e}")
                challenged = True
                timed_out = True
            finally:
                run.outbound_payload = interceptor.outbound_payload or run.outbound_payload

            if not challenged:
                return await self._await_models(request, session, interceptor, sink, run)

            run.transition(InteractionState.CHALLENGE_DETECTED)
            self.host.record_failure()
            if last_attempt:
                run.error = (
                    "Timed out waiting for LMArena after all attempts."
                    if timed_out
                    else "Challenge still present after all attempts."
                )
                run.transition(InteractionState.FAILED)
                await sink(ErrorEvent(run.error))
                return _AttemptResult.DONE

            if not timed_out and await self._try_auto_resolve(request, adapter, sink):
                return _AttemptResult.RETRY

            run.transition(InteractionState.AWAITING_HUMAN_RESUME)
            self.pool.park(session, True)
            try:
                resume = self.registry.arm(request.request_id)
                await sink(UserActionRequiredEvent(
                    request_id=request.request_id,
                    message=(
                        "Verification required. Complete the challenge in the browser, "
                        "then send a retry signal for this request."
                    ),
                ))
                outcome = await self.registry.wait(request.request_id, resume)
            finally:
                self.pool.park(session, False)
            if outcome is ResumeOutcome.CANCELLED:
                raise RequestCancelled(run.error or "Request cancelled")
            return _AttemptResult.RETRY

    async def _navigate_and_submit(self, request, session, adapter, interceptor, sink, run) -> bool:
        """Returns True when a challenge blocks the interaction."""
        run.transition(InteractionState.NAVIGATING)
        await sink(StatusEvent(f"Loading LMArena (attempt {request.attempt}/{self.max_attempts})..."))
        await adapter.navigate(self.target_url)
        self.pool.touch(session)
        await adapter.dismiss_dialogs()
        interceptor.credential = await adapter.read_stored_credentials()
        if await adapter.detect_challenge():
            return True

        run.transition(InteractionState.SUBMITTING)
        await adapter.type_text("prompt_input", request.user_prompt)
        await adapter.click("submit")
        self.pool.touch(session)
        await sink(StatusEvent("Prompt submitted. Waiting for models..."))

        try:
            await asyncio.wait_for(interceptor.intercepted.wait(), timeout=self.intercept_timeout)
        except asyncio.TimeoutError:
            debug_print(
                f"⚠️ Request {request.request_id}: evaluation call not intercepted within "
                f"{self.intercept_timeout:.0f}s; it may still be in flight"
            )

        settle = random.uniform(*self.settle_delay_range)
        await asyncio.wait({interceptor.finished}, timeout=settle)
        if interceptor.finished.done() and not interceptor.auth_rejected:
            return False
        return interceptor.auth_rejected or await adapter.detect_challenge()

    async def _await_models(self, request, session, interceptor, sink, run) -> _AttemptResult:
        run.transition(InteractionState.AWAITING_MODELS)
        deadline = time.monotonic() + self.completion_timeout
        while not interceptor.finished.done():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.wait({interceptor.finished}, timeout=min(self.keepalive_interval, remaining))
            self.pool.touch(session)

        if not interceptor.finished.done():
            run.error = f"No complete response from LMArena within {self.completion_timeout:.0f}s."
            run.transition(InteractionState.FAILED)
            self.host.record_failure()
            await sink(ErrorEvent(run.error))
            return _AttemptResult.DONE

        outcome = interceptor.finished.result()
        if outcome.completed:
            run.transition(InteractionState.COMPLETED)
            self.host.record_success()
        else:
            run.error = outcome.error or "LMArena stream failed."
            run.transition(InteractionState.FAILED)
            self.host.record_failure()
            await sink(ErrorEvent(run.error))
        return _AttemptResult.DONE

    async def _try_auto_resolve(self, request, adapter, sink) -> bool:
        """Click the widget, then try the solver. True when the challenge is gone."""
        await sink(StatusEvent("Challenge detected, attempting to solve..."))
        try:
            if await adapter.click_challenge_widget() and not await adapter.detect_challenge():
                debug_print(f"✅ Request {request.request_id}: challenge cleared by clicking the widget")
                return True
            if self.solver is None:
                return False
            params = await adapter.read_challenge_params()
            if not params:
                debug_print(f"⚠️ Request {request.request_id}: no challenge parameters captured")
                return False
            page_url = str(getattr(adapter.page, "url", "") or self.target_url)
            result = await self.solver.solve(page_url, params.get("sitekey"), params.get("action"), params.get("cData"))
            if not result.success or not result.token:
                debug_print(f"⚠️ Request {request.request_id}: solver failed: {result.error}")
                return False
            if not await adapter.apply_challenge_token(result.token, params):
                await sink(StatusEvent("Solved the challenge but could not apply the token."))
                return False
        except Exception as e:
            debug_print(f"⚠️ Request {request.request_id}: automatic challenge resolution failed: {e}")
            return False
        await sink(StatusEvent("Challenge solved automatically. Retrying..."))
        return True
