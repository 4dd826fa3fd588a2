"""
Events emitted to the caller while an interaction runs.

One frozen dataclass per event kind; `to_dict()` gives the wire shape that the
HTTP layer serializes as server-sent events.
"""

import json
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class StatusEvent:
    message: str

    def to_dict(self) -> dict:
        return {"type": "STATUS", "message": self.message}


@dataclass(frozen=True)
class ModelChunkEvent:
    model_key: str
    content: str = ""
    finish_reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.model_key not in ("A", "B"):
            raise ValueError(f"model_key must be 'A' or 'B', got {self.model_key!r}")

    def to_dict(self) -> dict:
        data = {"type": "MODEL_CHUNK", "modelKey": self.model_key, "content": self.content}
        if self.finish_reason is not None:
            data["finishReason"] = self.finish_reason
        return data


@dataclass(frozen=True)
class UserActionRequiredEvent:
    request_id: str
    message: str

    def to_dict(self) -> dict:
        return {"type": "USER_ACTION_REQUIRED", "requestId": self.request_id, "message": self.message}


@dataclass(frozen=True)
class ErrorEvent:
    message: str

    def to_dict(self) -> dict:
        return {"type": "ERROR", "message": self.message}


@dataclass(frozen=True)
class StreamEndEvent:
    def to_dict(self) -> dict:
        return {"type": "STREAM_END"}


StreamEvent = Union[StatusEvent, ModelChunkEvent, UserActionRequiredEvent, ErrorEvent, StreamEndEvent]


def format_sse(event: StreamEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
