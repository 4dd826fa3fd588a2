import asyncio
import unittest

from duelbridge.errors import NavigationFailure
from duelbridge.events import ErrorEvent, ModelChunkEvent, StatusEvent, StreamEndEvent, UserActionRequiredEvent
from duelbridge.models import InteractionRequest, SolveResult
from duelbridge.orchestrator import InteractionOrchestrator, InteractionState
from duelbridge.registry import RetrySignalRegistry
from tests._bridge_test_utils import BaseBridgeTest, EventCollector, FakeSite, make_host, make_pool, wait_until


class _StaticSolver:
    def __init__(self, token: str = "solved-token") -> None:
        self.token = token
        self.calls = []

    async def solve(self, url, site_key, action=None, extra_data=None) -> SolveResult:
        self.calls.append((url, site_key, action, extra_data))
        return SolveResult(success=True, token=self.token)


class OrchestratorTestCase(BaseBridgeTest):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.host = make_host()
        self.pool = make_pool(self.host)
        self.registry = RetrySignalRegistry()

    async def asyncTearDown(self) -> None:
        await self.pool.close_all()
        await self.host.close()
        await super().asyncTearDown()

    def make_orchestrator(self, site: FakeSite, **overrides) -> InteractionOrchestrator:
        options = {
            "adapter_factory": site.adapter_factory,
            "intercept_timeout": 0.2,
            "settle_delay_range": (0.01, 0.02),
            "completion_timeout": 1.0,
            "keepalive_interval": 0.05,
        }
        options.update(overrides)
        return InteractionOrchestrator(self.pool, self.host, self.registry, **options)

    @staticmethod
    def make_request(**overrides) -> InteractionRequest:
        values = {"user_prompt": "Hello", "target_model_a": "m1", "target_model_b": "m2"}
        values.update(overrides)
        return InteractionRequest(**values)

    def assert_single_stream_end(self, collector: EventCollector) -> None:
        ends = collector.of_type(StreamEndEvent)
        self.assertEqual(len(ends), 1)
        self.assertIs(collector.events[-1], ends[0])


class TestHappyPath(OrchestratorTestCase):
    async def test_both_models_stream_then_one_stream_end(self) -> None:
        site = FakeSite()
        orchestrator = self.make_orchestrator(site)
        collector = EventCollector()
        request = self.make_request()

        run = await orchestrator.run(request, collector)

        self.assertEqual(run.state, InteractionState.COMPLETED)
        self.assertEqual(run.attempts, 1)
        self.assert_single_stream_end(collector)
        chunks = [(e.model_key, e.content) for e in collector.of_type(ModelChunkEvent) if e.content]
        self.assertEqual(chunks, [("A", "Hel"), ("B", "Hi"), ("A", "lo"), ("B", " there")])

        first_chunk = collector.events.index(collector.of_type(ModelChunkEvent)[0])
        self.assertTrue(all(isinstance(e, StatusEvent) for e in collector.events[:first_chunk]))
        self.assertFalse(collector.of_type(ErrorEvent))

        self.assertEqual(site.typed, [("prompt_input", "Hello")])
        sent = run.outbound_payload
        self.assertEqual(sent["modelAId"], "m1")
        self.assertEqual(sent["modelBId"], "m2")
        messages = sent["messages"]
        self.assertEqual(
            [(m["role"], m.get("modelId"), m["content"]) for m in messages],
            [("user", None, "Hello"), ("assistant", "m1", ""), ("assistant", "m2", "")],
        )
        self.assertTrue(all(m["status"] == "pending" for m in messages))
        message_ids = [m["id"] for m in messages] + [sent["id"]]
        self.assertEqual(len(set(message_ids)), 4)
        self.assertEqual(sent["id"], request.conversation_id)
        self.assertEqual(sent["userMessageId"], messages[0]["id"])
        self.assertEqual(sent["modelAMessageId"], messages[1]["id"])
        self.assertEqual(sent["modelBMessageId"], messages[2]["id"])
        self.assertEqual(sent["turnstileToken"], "turnstile-from-page")
        self.assertEqual(
            site.routes[0].continued["headers"]["supabase-jwt"],
            "jwt-token",
        )

        # Session went back to the pool
        self.assertEqual(self.pool.in_use_count, 0)
        self.assertEqual(self.pool.idle_count, 1)
        self.assertEqual(len(self.registry), 0)
        self.assertFalse(orchestrator.is_running(request.request_id))

    async def test_stream_end_follows_session_release(self) -> None:
        orchestrator = self.make_orchestrator(FakeSite())
        in_use_at_end = []

        async def _sink(event) -> None:
            if isinstance(event, StreamEndEvent):
                in_use_at_end.append(self.pool.in_use_count)

        await orchestrator.run(self.make_request(), _sink)

        self.assertEqual(in_use_at_end, [0])

    async def test_http_error_ends_with_error(self) -> None:
        site = FakeSite(status=500, body="oops")
        orchestrator = self.make_orchestrator(site)
        collector = EventCollector()

        run = await orchestrator.run(self.make_request(), collector)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertIn("500", collector.of_type(ErrorEvent)[0].message)
        self.assert_single_stream_end(collector)

    async def test_incomplete_stream_times_out(self) -> None:
        site = FakeSite(hang=True)
        orchestrator = self.make_orchestrator(site, completion_timeout=0.2)
        collector = EventCollector()

        run = await orchestrator.run(self.make_request(), collector)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertIn("No complete response", run.error)
        self.assert_single_stream_end(collector)
        self.assertEqual(self.pool.in_use_count, 0)

    async def test_non_timeout_failure_discards_session(self) -> None:
        site = FakeSite(navigation_errors={1: NavigationFailure("net::ERR_CONNECTION_REFUSED")})
        orchestrator = self.make_orchestrator(site)
        collector = EventCollector()

        run = await orchestrator.run(self.make_request(), collector)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertEqual(run.attempts, 1)
        self.assertIn("ERR_CONNECTION_REFUSED", collector.of_type(ErrorEvent)[0].message)
        self.assertFalse(collector.of_type(UserActionRequiredEvent))
        self.assert_single_stream_end(collector)
        self.assertEqual(self.pool.live_count, 0)


    async def test_session_creation_failure_ends_with_error(self) -> None:
        browser = await self.host.get_host()
        browser.context_error = RuntimeError("Browser.newContext: Target closed")
        orchestrator = self.make_orchestrator(FakeSite())
        collector = EventCollector()

        run = await orchestrator.run(self.make_request(), collector)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertIn("Target closed", collector.of_type(ErrorEvent)[0].message)
        self.assert_single_stream_end(collector)
        self.assertEqual(self.pool.in_use_count, 0)
        self.assertEqual(self.pool.live_count, 0)

    async def test_interception_failure_discards_session(self) -> None:
        site = FakeSite()

        def _factory(page):
            page.route_error = RuntimeError("Target page, context or browser has been closed")
            return site.adapter_factory(page)

        orchestrator = self.make_orchestrator(site, adapter_factory=_factory)
        collector = EventCollector()

        run = await orchestrator.run(self.make_request(), collector)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertIn("has been closed", collector.of_type(ErrorEvent)[0].message)
        self.assert_single_stream_end(collector)
        self.assertEqual(self.pool.idle_count, 0)
        self.assertEqual(self.pool.live_count, 0)
        self.assertEqual(self.host.consecutive_failures, 1)


class TestChallengeRetry(OrchestratorTestCase):
    async def test_resume_sent_while_the_pause_is_being_delivered(self) -> None:
        site = FakeSite(challenge_attempts={1})
        orchestrator = self.make_orchestrator(site)
        events = []
        resumed = []

        async def _sink(event) -> None:
            events.append(event)
            if isinstance(event, UserActionRequiredEvent):
                # The caller reacts before the event sink returns
                await asyncio.sleep(0)
                resumed.append(self.registry.resume(event.request_id))

        run = await asyncio.wait_for(orchestrator.run(self.make_request(), _sink), timeout=2.0)

        self.assertEqual(resumed, [True])
        self.assertEqual(run.state, InteractionState.COMPLETED)
        self.assertEqual(run.attempts, 2)
        self.assertEqual(len(self.registry), 0)
        self.assertIsInstance(events[-1], StreamEndEvent)

    async def test_resume_retries_with_second_attempt(self) -> None:
        site = FakeSite(challenge_attempts={1})
        orchestrator = self.make_orchestrator(site)
        collector = EventCollector()
        request = self.make_request()

        task = asyncio.create_task(orchestrator.run(request, collector))
        await wait_until(lambda: request.request_id in self.registry)

        prompts = collector.of_type(UserActionRequiredEvent)
        self.assertEqual(len(prompts), 1)
        self.assertEqual(prompts[0].request_id, request.request_id)
        session = self.pool.in_use_sessions()[0]
        self.assertTrue(session.parked)

        self.assertTrue(self.registry.resume(request.request_id))
        run = await asyncio.wait_for(task, timeout=2.0)

        self.assertEqual(run.state, InteractionState.COMPLETED)
        self.assertEqual(run.attempts, 2)
        self.assertEqual(run.states.count(InteractionState.NAVIGATING), 2)
        waiting = run.states.index(InteractionState.AWAITING_HUMAN_RESUME)
        self.assertEqual(run.states[waiting + 1], InteractionState.NAVIGATING)
        self.assertEqual(len(self.registry), 0)
        self.assertFalse(self.registry.resume(request.request_id))
        self.assertIsNotNone(session.page.extra_headers)
        self.assertFalse(session.parked)
        self.assert_single_stream_end(collector)

    async def test_challenge_on_last_attempt_fails(self) -> None:
        site = FakeSite(challenge_attempts={1, 2})
        orchestrator = self.make_orchestrator(site)
        collector = EventCollector()
        request = self.make_request()

        task = asyncio.create_task(orchestrator.run(request, collector))
        await wait_until(lambda: request.request_id in self.registry)
        self.registry.resume(request.request_id)
        run = await asyncio.wait_for(task, timeout=2.0)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertEqual(run.attempts, 2)
        self.assertEqual(len(collector.of_type(UserActionRequiredEvent)), 1)
        self.assertIn("Challenge", collector.of_type(ErrorEvent)[-1].message)
        self.assert_single_stream_end(collector)

    async def test_timeout_counts_as_challenge(self) -> None:
        site = FakeSite(navigation_errors={
            1: asyncio.TimeoutError("Timeout 90000ms exceeded"),
            2: asyncio.TimeoutError("Timeout 90000ms exceeded"),
        })
        orchestrator = self.make_orchestrator(site)
        collector = EventCollector()
        request = self.make_request()

        task = asyncio.create_task(orchestrator.run(request, collector))
        await wait_until(lambda: request.request_id in self.registry)
        self.registry.resume(request.request_id)
        run = await asyncio.wait_for(task, timeout=2.0)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertIn(InteractionState.CHALLENGE_DETECTED, run.states)
        self.assertIn("Timed out", run.error)
        self.assert_single_stream_end(collector)

    async def test_solver_token_skips_human(self) -> None:
        site = FakeSite(challenge_attempts={1})
        solver = _StaticSolver()

        async def _params():
            return {"sitekey": "0x4AAA", "action": "login"}

        async def _apply(token, params=None):
            return token == "solved-token"

        original_factory = site.adapter_factory

        def _factory(page):
            adapter = original_factory(page)
            adapter.read_challenge_params = _params
            adapter.apply_challenge_token = _apply
            return adapter

        orchestrator = self.make_orchestrator(site, solver=solver, adapter_factory=_factory)
        collector = EventCollector()

        run = await asyncio.wait_for(orchestrator.run(self.make_request(), collector), timeout=2.0)

        self.assertEqual(run.state, InteractionState.COMPLETED)
        self.assertEqual(run.attempts, 2)
        self.assertEqual(solver.calls[0][1], "0x4AAA")
        self.assertFalse(collector.of_type(UserActionRequiredEvent))
        self.assertNotIn(InteractionState.AWAITING_HUMAN_RESUME, run.states)


class TestCancellation(OrchestratorTestCase):
    async def test_cancel_while_waiting_for_human(self) -> None:
        site = FakeSite(challenge_attempts={1})
        orchestrator = self.make_orchestrator(site)
        collector = EventCollector()
        request = self.make_request()

        task = asyncio.create_task(orchestrator.run(request, collector))
        await wait_until(lambda: request.request_id in self.registry)

        self.assertTrue(orchestrator.cancel(request.request_id))
        with self.assertRaises(asyncio.CancelledError):
            await task

        self.assertEqual(orchestrator.runs[request.request_id].state, InteractionState.FAILED)
        self.assertEqual(collector.of_type(ErrorEvent)[-1].message, "Request cancelled")
        self.assert_single_stream_end(collector)
        self.assertEqual(len(self.registry), 0)
        self.assertEqual(self.pool.live_count, 0)
        self.assertFalse(orchestrator.cancel(request.request_id))

    async def test_reclaimed_session_cancels_waiting_request(self) -> None:
        site = FakeSite(challenge_attempts={1})
        orchestrator = self.make_orchestrator(site)
        collector = EventCollector()
        request = self.make_request()

        task = asyncio.create_task(orchestrator.run(request, collector))
        await wait_until(lambda: request.request_id in self.registry)

        # Host restart closes every session, including parked ones
        await self.host.restart()
        run = await asyncio.wait_for(task, timeout=2.0)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertEqual(run.error, "Browser session was reclaimed")
        self.assert_single_stream_end(collector)
        self.assertEqual(len(self.registry), 0)

    async def test_queue_timeout_is_reported(self) -> None:
        self.pool.queue_timeout = 0.05
        held = await self.pool.acquire("someone-else")
        orchestrator = self.make_orchestrator(FakeSite())
        collector = EventCollector()

        run = await orchestrator.run(self.make_request(), collector)

        self.assertEqual(run.state, InteractionState.FAILED)
        self.assertIn("timed out", collector.of_type(ErrorEvent)[0].message)
        self.assert_single_stream_end(collector)
        await self.pool.release(held, "someone-else")


if __name__ == "__main__":
    unittest.main()
