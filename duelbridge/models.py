"""
Data model shared by the pool, host and orchestrator.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .utils import uuid7


@dataclass(frozen=True)
class BrowserProfile:
    name: str
    user_agent: str
    viewport: Dict[str, int]
    headers: Dict[str, str]

    @classmethod
    def from_dict(cls, data: dict) -> "BrowserProfile":
        return cls(
            name=str(data["name"]),
            user_agent=str(data["user_agent"]),
            viewport=dict(data["viewport"]),
            headers=dict(data.get("headers") or {}),
        )


@dataclass(frozen=True)
class ProxyDescriptor:
    server: str
    username: Optional[str] = None
    password: Optional[str] = None
    target_compatible: bool = True

    def to_playwright(self) -> dict:
        proxy = {"server": self.server}
        if self.username:
            proxy["username"] = self.username
        if self.password:
            proxy["password"] = self.password
        return proxy


@dataclass
class Session:
    """
    One browser context + page owned by the pool while idle and by exactly one
    interaction while in use.
    """
    page: Any
    context: Any = None
    profile_name: str = ""
    id: str = field(default_factory=uuid7)
    created_at: float = field(default_factory=time.monotonic)
    in_use: bool = False
    owner_request_id: Optional[str] = None
    acquired_at: Optional[float] = None
    last_activity_at: float = field(default_factory=time.monotonic)
    parked: bool = False
    closed: bool = False

    def is_closed(self) -> bool:
        if self.closed:
            return True
        try:
            return bool(self.page.is_closed())
        except Exception:
            return True


@dataclass
class PendingRequest:
    request_id: str
    priority: bool
    future: "asyncio.Future"
    enqueued_at: float = field(default_factory=time.monotonic)
    expires_at: Optional[float] = None
    tab_limit_wait: bool = False


@dataclass
class SolveResult:
    success: bool
    token: Optional[str] = None
    error: str = ""


@dataclass
class InteractionRequest:
    user_prompt: str
    target_model_a: str
    target_model_b: str
    system_prompt: Optional[str] = None
    conversation_id: str = field(default_factory=uuid7)
    history: List[dict] = field(default_factory=list)
    request_id: str = field(default_factory=uuid7)
    priority: bool = False
    attempt: int = 0

    @classmethod
    def from_payload(cls, payload: dict) -> "InteractionRequest":
        """Build a request from the JSON body posted to /api/chat."""
        if not isinstance(payload, dict):
            raise ValueError("Request body must be a JSON object")
        prompt = payload.get("userPrompt")
        model_a = payload.get("targetModelA")
        model_b = payload.get("targetModelB")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("userPrompt is required")
        if not model_a or not model_b:
            raise ValueError("targetModelA and targetModelB are required")

        history = payload.get("clientMessagesHistory") or []
        if not isinstance(history, list) or not all(isinstance(m, dict) for m in history):
            raise ValueError("clientMessagesHistory must be a list of message objects")

        system_prompt = payload.get("systemPrompt")
        if not isinstance(system_prompt, str) or not system_prompt.strip():
            system_prompt = None

        kwargs = {}
        conversation_id = payload.get("clientConversationId")
        if conversation_id:
            kwargs["conversation_id"] = str(conversation_id)

        return cls(
            user_prompt=prompt,
            target_model_a=str(model_a),
            target_model_b=str(model_b),
            system_prompt=system_prompt,
            history=[dict(m) for m in history],
            priority=bool(payload.get("priority", False)),
            **kwargs,
        )
