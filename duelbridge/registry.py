"""
Retry-signal registry: lets an external caller resume an interaction that is
parked on a challenge.
"""

import asyncio
import enum
from typing import Dict, List

from .utils import debug_print


class ResumeOutcome(enum.Enum):
    RESUMED = "resumed"
    CANCELLED = "cancelled"


class RetrySignalRegistry:
    """
    At most one waiter per request id. A waiter is removed as soon as it is
    fulfilled, cancelled or discarded.
    """

    def __init__(self) -> None:
        self._waiters: Dict[str, asyncio.Future] = {}

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._waiters

    def __len__(self) -> int:
        return len(self._waiters)

    def waiting_request_ids(self) -> List[str]:
        return list(self._waiters)

    def arm(self, request_id: str) -> asyncio.Future:
        """Register the waiter for `request_id` without suspending; await it with `wait`."""
        if request_id in self._waiters:
            raise RuntimeError(f"Request {request_id} is already waiting for a retry signal")
        future = asyncio.get_running_loop().create_future()
        self._waiters[request_id] = future
        debug_print(f"⏸️  Request {request_id}: waiting for retry signal")
        return future

    async def wait(self, request_id: str, future: asyncio.Future) -> ResumeOutcome:
        try:
            return await future
        finally:
            if self._waiters.get(request_id) is future:
                del self._waiters[request_id]

    async def register_waiter(self, request_id: str) -> ResumeOutcome:
        """Suspend until `resume` or `cancel` is called for `request_id`."""
        return await self.wait(request_id, self.arm(request_id))

    def resume(self, request_id: str) -> bool:
        """Fulfil the waiter for `request_id`. Returns False when none is registered."""
        future = self._waiters.pop(request_id, None)
        if future is None or future.done():
            debug_print(f"❓ Request {request_id}: no action waiting for retry")
            return False
        future.set_result(ResumeOutcome.RESUMED)
        debug_print(f"▶️  Request {request_id}: retry signal received")
        return True

    def cancel(self, request_id: str) -> bool:
        future = self._waiters.pop(request_id, None)
        if future is None or future.done():
            return False
        future.set_result(ResumeOutcome.CANCELLED)
        debug_print(f"⏹️  Request {request_id}: retry wait cancelled")
        return True

    def discard(self, request_id: str) -> None:
        """Drop any waiter left behind by a finished request."""
        future = self._waiters.pop(request_id, None)
        if future is not None and not future.done():
            future.cancel()

    def cancel_all(self) -> None:
        for request_id in list(self._waiters):
            self.cancel(request_id)
