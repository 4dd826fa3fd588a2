"""
Exception types raised by the pool, host and orchestrator.
"""

import asyncio

from playwright.async_api import TimeoutError as PlaywrightTimeoutError


class BridgeError(Exception):
    """Base class for bridge failures."""


class QueueTimeout(BridgeError):
    """The pool stayed saturated longer than the queue wait bound."""


class PoolExhausted(BridgeError):
    """No session can be created because the live-session ceiling is reached."""


class HostInitFailure(BridgeError):
    """The browser engine could not be launched."""


class NavigationFailure(BridgeError):
    """Loading the target page failed."""


class ActionTimeout(BridgeError):
    """A page element did not become available in time."""


class StreamDecodeError(BridgeError):
    """One record of the response stream could not be decoded."""


class RequestCancelled(BridgeError):
    """The caller cancelled an in-flight interaction."""


def is_timeout_error(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, PlaywrightTimeoutError, ActionTimeout)):
        return True
    return "timeout" in str(exc).lower()
