import asyncio
import json
import unittest

from duelbridge import constants
from duelbridge.events import ErrorEvent, ModelChunkEvent, StatusEvent, StreamEndEvent
from duelbridge.models import InteractionRequest
from duelbridge.rewriter import (
    STREAM_TAP_SCRIPT,
    EvaluationInterceptor,
    MessageIds,
    StreamDecoder,
    build_messages,
    install_stream_tap,
    is_evaluation_url,
    rewrite_payload,
)
from tests._bridge_test_utils import (
    BaseBridgeTest,
    EVALUATION_URL,
    EventCollector,
    FakePage,
    FakeRequest,
    FakeRoute,
    HELLO_STREAM,
    PAGE_ORIGINAL_PAYLOAD,
    wait_until,
)


def _request(**overrides) -> InteractionRequest:
    values = {
        "user_prompt": "Hello",
        "target_model_a": "m1",
        "target_model_b": "m2",
        "conversation_id": "conv-1",
    }
    values.update(overrides)
    return InteractionRequest(**values)


class TestPayloadRewrite(unittest.TestCase):
    def test_messages_are_rebuilt_with_fresh_ids(self) -> None:
        request = _request()
        ids = MessageIds()

        messages = build_messages(request, ids)

        self.assertEqual([m["role"] for m in messages], ["user", "assistant", "assistant"])
        self.assertEqual(messages[0]["content"], "Hello")
        self.assertEqual(messages[1]["modelId"], "m1")
        self.assertEqual(messages[2]["modelId"], "m2")
        self.assertTrue(all(m["status"] == constants.MESSAGE_STATUS_PENDING for m in messages))
        self.assertTrue(all(m["evaluationSessionId"] == "conv-1" for m in messages))
        generated = {request.conversation_id, ids.user_message_id, ids.model_a_message_id, ids.model_b_message_id}
        self.assertEqual(len(generated), 4)

    def test_system_prompt_is_prepended_once(self) -> None:
        request = _request(system_prompt="Be brief.")
        messages = build_messages(request, MessageIds())
        self.assertEqual(messages[0]["role"], "system")
        self.assertEqual(messages[0]["content"], "Be brief.")

        history = [{"role": "system", "content": "Existing rules"}, {"role": "user", "content": "Earlier"}]
        request = _request(system_prompt="Be brief.", history=history)
        messages = build_messages(request, MessageIds())
        self.assertEqual(sum(1 for m in messages if m["role"] == "system"), 1)
        self.assertEqual(messages[0]["content"], "Existing rules")
        self.assertEqual(messages[1]["content"], "Earlier")

    def test_history_is_not_mutated(self) -> None:
        history = [{"role": "user", "content": "Earlier"}]
        request = _request(history=history)

        build_messages(request, MessageIds())

        self.assertEqual(history, [{"role": "user", "content": "Earlier"}])

    def test_rewrite_overlays_page_payload(self) -> None:
        request = _request()
        ids = MessageIds()

        payload = rewrite_payload(PAGE_ORIGINAL_PAYLOAD, request, ids, turnstile_token="tok")

        self.assertEqual(payload["id"], "conv-1")
        self.assertEqual(payload["modelAId"], "m1")
        self.assertEqual(payload["modelBId"], "m2")
        self.assertEqual(payload["userMessageId"], ids.user_message_id)
        self.assertEqual(payload["modelAMessageId"], ids.model_a_message_id)
        self.assertEqual(payload["modelBMessageId"], ids.model_b_message_id)
        self.assertEqual(payload["mode"], constants.EVALUATION_MODE)
        self.assertEqual(payload["turnstileToken"], "tok")
        # Fields the page added that are not conversation state survive
        self.assertEqual(payload["recaptchaV3Token"], "recaptcha-from-page")
        self.assertEqual(PAGE_ORIGINAL_PAYLOAD["id"], "page-generated-conversation")

    def test_evaluation_url_detection(self) -> None:
        self.assertTrue(is_evaluation_url(EVALUATION_URL))
        self.assertTrue(is_evaluation_url("https://arena-api-stable.vercel.app/evaluation"))
        self.assertFalse(is_evaluation_url("https://lmarena.ai/nextjs-api/models"))
        self.assertFalse(is_evaluation_url(None))


class TestStreamDecoder(unittest.TestCase):
    def test_interleaved_chunks_keep_order(self) -> None:
        decoder = StreamDecoder()

        events = decoder.feed(HELLO_STREAM) + decoder.close()

        chunks = [e for e in events if isinstance(e, ModelChunkEvent) and e.content]
        self.assertEqual([(c.model_key, c.content) for c in chunks], [("A", "Hel"), ("B", "Hi"), ("A", "lo"), ("B", " there")])
        finished = [e for e in events if isinstance(e, ModelChunkEvent) and e.finish_reason]
        self.assertEqual([(f.model_key, f.finish_reason) for f in finished], [("A", "stop"), ("B", "stop")])
        self.assertFalse(any(isinstance(e, StreamEndEvent) for e in events))

    def test_malformed_record_is_skipped(self) -> None:
        decoder = StreamDecoder()

        events = decoder.feed('a0:"one"\na0:{not json\nb0:"two"\n')

        self.assertEqual([(e.model_key, e.content) for e in events], [("A", "one"), ("B", "two")])
        self.assertEqual(decoder.records_skipped, 1)

    def test_records_split_across_chunks(self) -> None:
        decoder = StreamDecoder()

        first = decoder.feed('a0:"Hel')
        second = decoder.feed('lo"\nb0:"Wor')
        third = decoder.feed('ld"')
        rest = decoder.close()

        self.assertEqual(first, [])
        self.assertEqual([(e.model_key, e.content) for e in second], [("A", "Hello")])
        self.assertEqual(third, [])
        # The last record arrives without its newline and is flushed on close
        self.assertEqual(rest, [ModelChunkEvent(model_key="B", content="World")])
        self.assertEqual(decoder.close(), [])

    def test_truncated_trailing_record_is_dropped(self) -> None:
        decoder = StreamDecoder()

        decoder.feed('a0:"one"\nb0:"Wor')

        self.assertEqual(decoder.close(), [])
        self.assertEqual(decoder.records_skipped, 1)

    def test_json_object_and_sse_prefixed_records(self) -> None:
        decoder = StreamDecoder()

        events = decoder.feed(
            'data: {"a0": "x", "b0": "y"}\n'
            'data: b0:"z"\n'
            'data: {"be": {"finishReason": "length"}}\n'
            "data: [DONE]\n"
        )

        self.assertEqual(
            [(e.model_key, e.content, e.finish_reason) for e in events],
            [("A", "x", None), ("B", "y", None), ("B", "z", None), ("B", "", "length")],
        )

    def test_error_and_side_channels(self) -> None:
        decoder = StreamDecoder()

        events = decoder.feed('ag:"thinking..."\na3:"rate limited"\n')

        self.assertEqual(len(events), 1)
        self.assertIsInstance(events[0], ErrorEvent)
        self.assertIn("rate limited", events[0].message)

    def test_bytes_are_accepted(self) -> None:
        decoder = StreamDecoder()

        events = decoder.feed('a0:"café"\n'.encode("utf-8"))

        self.assertEqual(events[0].content, "café")


class TestEvaluationInterceptor(BaseBridgeTest):
    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.page = FakePage()
        await install_stream_tap(self.page)

    async def test_stream_tap_is_installed_once_per_page(self) -> None:
        self.assertIn(constants.STREAM_BINDING_NAME, self.page.bindings)
        self.assertEqual(self.page.init_scripts, [STREAM_TAP_SCRIPT])
        self.assertIn(constants.STREAM_BINDING_NAME, STREAM_TAP_SCRIPT)
        self.assertIn(constants.EVALUATION_URL_MARKERS[1], STREAM_TAP_SCRIPT)

    async def test_outbound_request_is_rewritten(self) -> None:
        page = self.page
        request = _request(history=[{"role": "user", "content": "Earlier"}])
        collector = EventCollector()

        async with EvaluationInterceptor(page, request, collector, credential="jwt-token") as interceptor:
            route = await page.send_evaluation(
                headers={
                    "Content-Type": "text/plain;charset=UTF-8",
                    "Content-Length": "42",
                    constants.TURNSTILE_RESPONSE_HEADER: "page-token",
                },
            )
            outcome = await asyncio.wait_for(interceptor.finished, timeout=1.0)

        self.assertTrue(interceptor.intercepted.is_set())
        self.assertTrue(outcome.completed)
        headers = route.continued["headers"]
        self.assertNotIn("content-length", headers)
        self.assertEqual(headers["content-type"], "application/json")
        self.assertEqual(headers[constants.CREDENTIAL_HEADER], "jwt-token")
        self.assertEqual(headers[constants.TURNSTILE_RESPONSE_HEADER], "page-token")

        sent = json.loads(route.continued["post_data"])
        self.assertEqual(sent["turnstileToken"], "page-token")
        self.assertEqual(sent["modelAId"], "m1")
        self.assertEqual([m["content"] for m in sent["messages"][:2]], ["Earlier", "Hello"])
        self.assertEqual(sent, interceptor.outbound_payload)

        self.assertIsInstance(collector.events[0], StatusEvent)
        chunks = [(e.model_key, e.content) for e in collector.of_type(ModelChunkEvent) if e.content]
        self.assertEqual(chunks, [("A", "Hel"), ("B", "Hi"), ("A", "lo"), ("B", " there")])
        # Ending the stream is left to the orchestrator
        self.assertEqual(collector.of_type(StreamEndEvent), [])
        self.assertEqual(page.routes, [])

    async def test_chunks_are_forwarded_before_the_body_completes(self) -> None:
        page = self.page
        collector = EventCollector()
        hold = asyncio.Event()

        async with EvaluationInterceptor(page, _request(), collector) as interceptor:
            await page.send_evaluation(chunks=['a0:"Hel"\nb0:"Hi"\n', 'a0:"lo"\n'], hold=hold)
            await wait_until(lambda: len(collector.of_type(ModelChunkEvent)) == 2)

            # Model B is still generating: nothing is finished yet
            self.assertFalse(interceptor.finished.done())
            self.assertEqual(
                [(e.model_key, e.content) for e in collector.of_type(ModelChunkEvent)],
                [("A", "Hel"), ("B", "Hi")],
            )

            hold.set()
            outcome = await asyncio.wait_for(interceptor.finished, timeout=1.0)

        self.assertTrue(outcome.completed)
        self.assertEqual(collector.of_type(ModelChunkEvent)[-1], ModelChunkEvent(model_key="A", content="lo"))

    async def test_non_post_requests_pass_through(self) -> None:
        interceptor = EvaluationInterceptor(self.page, _request(), EventCollector())
        await interceptor.attach()

        get_route = FakeRoute(FakeRequest(EVALUATION_URL, "GET"))
        await interceptor._handle_route(get_route)

        self.assertEqual(get_route.continued, {})
        self.assertFalse(interceptor.intercepted.is_set())
        await interceptor.detach()

    async def test_auth_rejection_is_flagged_not_finished(self) -> None:
        page = self.page
        collector = EventCollector()

        async with EvaluationInterceptor(page, _request(), collector) as interceptor:
            await page.send_evaluation(status=403, body="blocked")
            await asyncio.gather(*page.stream_tasks)
            self.assertTrue(interceptor.auth_rejected)
            self.assertFalse(interceptor.finished.done())

        self.assertEqual(collector.events, [])

    async def test_server_error_finishes_with_error(self) -> None:
        page = self.page

        async with EvaluationInterceptor(page, _request(), EventCollector()) as interceptor:
            await page.send_evaluation(status=502, body="bad gateway")
            outcome = await asyncio.wait_for(interceptor.finished, timeout=1.0)

        self.assertFalse(outcome.completed)
        self.assertIn("502", outcome.error)

    async def test_unrelated_urls_are_ignored(self) -> None:
        page = self.page

        async with EvaluationInterceptor(page, _request(), EventCollector()) as interceptor:
            await page.send_evaluation(url="https://lmarena.ai/nextjs-api/models")
            await asyncio.gather(*page.stream_tasks)
            self.assertFalse(interceptor.intercepted.is_set())
            self.assertFalse(interceptor.finished.done())

    async def test_reports_after_detach_are_dropped(self) -> None:
        page = self.page
        collector = EventCollector()

        async with EvaluationInterceptor(page, _request(), collector):
            pass
        await page.send_evaluation()
        await asyncio.gather(*page.stream_tasks)

        self.assertEqual(collector.events, [])


if __name__ == "__main__":
    unittest.main()
