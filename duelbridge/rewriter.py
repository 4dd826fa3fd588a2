"""
Request/response rewriting for the evaluation call.

Outbound: the page's own evaluation request is used as a template and its
conversation state is replaced with the caller's history plus freshly
generated message ids.

Inbound: a fetch tap installed in every session page reports the evaluation
response chunk by chunk while it downloads; each chunk is decoded record by
record into MODEL_CHUNK events, keeping the two model slots interleaved
exactly as they arrive.
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from . import constants
from .errors import StreamDecodeError
from .events import ErrorEvent, ModelChunkEvent, StatusEvent, StreamEvent
from .models import InteractionRequest
from .utils import debug_print, log_http_status, uuid7

Emit = Callable[[StreamEvent], Awaitable[None]]


def is_evaluation_url(url: str) -> bool:
    url = str(url or "")
    return any(marker in url for marker in constants.EVALUATION_URL_MARKERS)


@dataclass(frozen=True)
class MessageIds:
    user_message_id: str = field(default_factory=uuid7)
    model_a_message_id: str = field(default_factory=uuid7)
    model_b_message_id: str = field(default_factory=uuid7)


def build_messages(request: InteractionRequest, ids: MessageIds) -> List[dict]:
    """
    [system prompt, unless history already leads with one] + history
    + new user message + one pending assistant placeholder per model.
    """
    messages = [dict(m) for m in request.history]
    if request.system_prompt and not (messages and messages[0].get("role") == "system"):
        messages.insert(0, {"role": "system", "content": request.system_prompt, "id": uuid7()})

    session_id = request.conversation_id
    messages.append({
        "role": "user",
        "content": request.user_prompt,
        "id": ids.user_message_id,
        "evaluationSessionId": session_id,
        "status": constants.MESSAGE_STATUS_PENDING,
    })
    for message_id, model_id in (
        (ids.model_a_message_id, request.target_model_a),
        (ids.model_b_message_id, request.target_model_b),
    ):
        messages.append({
            "role": "assistant",
            "content": "",
            "id": message_id,
            "modelId": model_id,
            "evaluationSessionId": session_id,
            "status": constants.MESSAGE_STATUS_PENDING,
        })
    return messages


def rewrite_payload(
    original: dict,
    request: InteractionRequest,
    ids: MessageIds,
    *,
    turnstile_token: Optional[str] = None,
) -> dict:
    """Overlay the caller's conversation on the page-originated payload."""
    payload = dict(original or {})
    payload["id"] = request.conversation_id
    payload["modality"] = constants.EVALUATION_MODALITY
    payload["mode"] = constants.EVALUATION_MODE
    payload["messages"] = build_messages(request, ids)
    payload["modelAId"] = request.target_model_a
    payload["modelAMessageId"] = ids.model_a_message_id
    payload["modelBId"] = request.target_model_b
    payload["modelBMessageId"] = ids.model_b_message_id
    payload["userMessageId"] = ids.user_message_id
    if turnstile_token and not payload.get("turnstileToken"):
        payload["turnstileToken"] = turnstile_token
    return payload


class StreamDecoder:
    """
    Incremental decoder for the evaluation stream.

    Accepts both record shapes the endpoint has used:
    - `a0:"text"` / `b0:"text"` with `ad:`/`ae:` finish records (optionally `data:` prefixed)
    - `data: {"a0": "text", "be": {"finishReason": "stop"}}` JSON objects
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._closed = False
        self.records_decoded = 0
        self.records_skipped = 0

    def feed(self, chunk: Union[str, bytes]) -> List[StreamEvent]:
        if self._closed:
            raise RuntimeError("StreamDecoder is closed")
        if isinstance(chunk, (bytes, bytearray)):
            chunk = chunk.decode("utf-8", errors="replace")
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._decode_lines(lines)

    def close(self) -> List[StreamEvent]:
        """Flush a trailing record that arrived without its newline."""
        if self._closed:
            return []
        self._closed = True
        remainder, self._buffer = self._buffer, ""
        return self._decode_lines([remainder])

    def _decode_lines(self, lines: Iterable[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for line in lines:
            try:
                decoded = self.decode_record(line)
            except StreamDecodeError as e:
                self.records_skipped += 1
                debug_print(f"  ⚠️ Skipping undecodable stream record: {e}")
                continue
            if decoded:
                self.records_decoded += 1
                events.extend(decoded)
        return events

    def decode_record(self, line: str) -> List[StreamEvent]:
        line = line.strip()
        if line.startswith("data:"):
            line = line[5:].strip()
        if not line or line == "[DONE]":
            return []

        if line.startswith("{"):
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                raise StreamDecodeError(f"invalid JSON record {line[:80]!r}: {e}") from e
            if not isinstance(obj, dict):
                raise StreamDecodeError(f"unexpected record {line[:80]!r}")
            events: List[StreamEvent] = []
            for key, value in obj.items():
                events.extend(self._decode_channel(key, value))
            return events

        prefix, sep, body = line.partition(":")
        if not sep or len(prefix) != 2:
            raise StreamDecodeError(f"unrecognized record {line[:80]!r}")
        try:
            value = json.loads(body)
        except json.JSONDecodeError as e:
            raise StreamDecodeError(f"invalid payload in {line[:80]!r}: {e}") from e
        return self._decode_channel(prefix, value)

    @staticmethod
    def _decode_channel(key: str, value) -> List[StreamEvent]:
        if not isinstance(key, str) or len(key) != 2:
            return []
        slot = constants.MODEL_SLOT_KEYS.get(key[0])
        if slot is None:
            return []
        kind = key[1]
        if kind == "0":
            if not isinstance(value, str):
                raise StreamDecodeError(f"content for {key} is not a string")
            return [ModelChunkEvent(model_key=slot, content=value)]
        if kind in ("d", "e"):
            reason = value.get("finishReason") if isinstance(value, dict) else None
            if not reason:
                return []
            return [ModelChunkEvent(model_key=slot, content="", finish_reason=str(reason))]
        if kind == "3":
            return [ErrorEvent(message=f"Model {slot} error: {value}")]
        # Reasoning, citations and other side channels are not forwarded
        return []


@dataclass
class StreamOutcome:
    completed: bool
    error: Optional[str] = None


# Wraps window.fetch so evaluation responses are reported to Python chunk by
# chunk while the page keeps reading its own copy of the body.
STREAM_TAP_SCRIPT = """
(() => {
  const w = window;
  if (w.__lmDuelStreamTap) return;
  w.__lmDuelStreamTap = true;
  const markers = %s;
  const binding = %s;
  const report = async (kind, url, data) => {
    try {
      if (typeof w[binding] === 'function') await w[binding](kind, url, data);
    } catch (e) {}
  };
  const originalFetch = w.fetch;
  w.fetch = async function (input, init) {
    const response = await originalFetch.apply(this, arguments);
    let url = '';
    try { url = typeof input === 'string' ? input : (input && input.url) || ''; } catch (e) {}
    if (!markers.some((m) => url.includes(m))) return response;
    await report('meta', url, String(response.status));
    if (!response.ok || !response.body) {
      await report('end', url, '');
      return response;
    }
    const [mine, theirs] = response.body.tee();
    (async () => {
      const reader = mine.getReader();
      const decoder = new TextDecoder();
      try {
        while (true) {
          const { value, done } = await reader.read();
          if (done) break;
          const text = decoder.decode(value, { stream: true });
          if (text) await report('chunk', url, text);
        }
        const tail = decoder.decode();
        if (tail) await report('chunk', url, tail);
        await report('end', url, '');
      } catch (e) {
        await report('error', url, String(e));
      }
    })();
    return new Response(theirs, { status: response.status, statusText: response.statusText, headers: response.headers });
  };
})();
""" % (json.dumps(list(constants.EVALUATION_URL_MARKERS)), json.dumps(constants.STREAM_BINDING_NAME))

# Interceptors currently listening on a page, keyed by id(page)
_stream_listeners: Dict[int, "EvaluationInterceptor"] = {}


async def _dispatch_stream_report(source, kind: str, url: str, data: str = "") -> None:
    page = source.get("page") if isinstance(source, dict) else None
    interceptor = _stream_listeners.get(id(page))
    if interceptor is not None:
        await interceptor.on_stream_report(kind, url, data)


async def install_stream_tap(page) -> None:
    """Wire a fresh page so evaluation responses can be decoded while they arrive."""
    await page.add_init_script(STREAM_TAP_SCRIPT)
    await page.expose_binding(constants.STREAM_BINDING_NAME, _dispatch_stream_report)


class EvaluationInterceptor:
    """
    One attempt's subscription on one page: rewrites the outbound evaluation
    request and decodes its response as the page's stream tap reports it.
    Use as `async with` so the route and the stream listener are removed on
    every exit path.

    `intercepted` is set once the rewritten request has been sent; `finished`
    resolves with a StreamOutcome when the response has been fully decoded.
    The interceptor never emits STREAM_END; the caller ends the stream.
    """

    def __init__(self, page, request: InteractionRequest, emit: Emit, *, credential: Optional[str] = None) -> None:
        self.page = page
        self.request = request
        self.credential = credential
        self.ids = MessageIds()
        self.decoder = StreamDecoder()
        self.intercepted = asyncio.Event()
        self.finished: asyncio.Future = asyncio.get_running_loop().create_future()
        self.auth_rejected = False
        self.outbound_payload: Optional[dict] = None
        self._emit = emit
        self._route_handler = self._handle_route
        self._streaming = False
        self._attached = False

    async def __aenter__(self) -> "EvaluationInterceptor":
        await self.attach()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.detach()

    async def attach(self) -> None:
        await self.page.route(is_evaluation_url, self._route_handler)
        _stream_listeners[id(self.page)] = self
        self._attached = True

    async def detach(self) -> None:
        if not self._attached:
            return
        self._attached = False
        if _stream_listeners.get(id(self.page)) is self:
            del _stream_listeners[id(self.page)]
        try:
            await self.page.unroute(is_evaluation_url, self._route_handler)
        except Exception as e:
            debug_print(f"  ⚠️ Could not disable interception: {e}")
        if not self.finished.done():
            self.finished.cancel()

    async def _handle_route(self, route) -> None:
        outbound = route.request
        if str(outbound.method).upper() != "POST":
            await route.continue_()
            return

        try:
            original = json.loads(outbound.post_data or "{}")
        except (json.JSONDecodeError, TypeError):
            original = {}
        if not isinstance(original, dict):
            original = {}

        headers = {k.lower(): v for k, v in dict(outbound.headers or {}).items()}
        headers.pop("content-length", None)
        token = original.get("turnstileToken") or headers.get(constants.TURNSTILE_RESPONSE_HEADER)
        if not token:
            debug_print(f"  ⚠️ Request {self.request.request_id}: no Turnstile token in the page's evaluation request")

        payload = rewrite_payload(original, self.request, self.ids, turnstile_token=token)
        headers["content-type"] = constants.CONTENT_TYPE_APPLICATION_JSON
        if self.credential:
            headers[constants.CREDENTIAL_HEADER] = self.credential
        else:
            debug_print(f"  ⚠️ Request {self.request.request_id}: {constants.ARENA_AUTH_COOKIE} not found")

        await route.continue_(method="POST", post_data=json.dumps(payload), headers=headers)
        self.outbound_payload = payload
        self.intercepted.set()
        debug_print(
            f"  📤 Request {self.request.request_id}: evaluation call rewritten "
            f"({len(payload['messages'])} messages) -> {outbound.url}"
        )

    def _finish(self, outcome: StreamOutcome) -> None:
        if not self.finished.done():
            self.finished.set_result(outcome)

    async def on_stream_report(self, kind: str, url: str, data: str = "") -> None:
        """Handle one report from the page: `meta` (status), `chunk`, `end` or `error`."""
        if not self._attached or self.finished.done() or not is_evaluation_url(url):
            return

        if kind == "meta":
            try:
                status = int(data)
            except (TypeError, ValueError):
                status = 0
            log_http_status(status, f"evaluation, request {self.request.request_id}")
            if status in constants.AUTH_REJECTION_STATUSES:
                self.auth_rejected = True
                debug_print(f"  🚫 Request {self.request.request_id}: evaluation endpoint returned {status}. Potential challenge block.")
                return
            if status >= 400 or status == 0:
                self._finish(StreamOutcome(completed=False, error=f"LMArena API returned HTTP {status}"))
                return
            self._streaming = True
            await self._emit(StatusEvent("Connected to LMArena stream. Models are responding..."))
            return

        if not self._streaming:
            return

        if kind == "chunk":
            for event in self.decoder.feed(data or ""):
                await self._emit(event)
        elif kind == "end":
            for event in self.decoder.close():
                await self._emit(event)
            debug_print(
                f"  ✅ Request {self.request.request_id}: stream finished "
                f"({self.decoder.records_decoded} records, {self.decoder.records_skipped} skipped)"
            )
            self._finish(StreamOutcome(completed=True))
        elif kind == "error":
            debug_print(f"  ❌ Request {self.request.request_id}: error reading evaluation stream: {data}")
            self._finish(StreamOutcome(completed=False, error="Error processing LMArena response stream."))
