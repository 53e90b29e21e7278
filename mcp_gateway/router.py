"""
Response routing — matches JSON-RPC responses to the calls waiting on them.

Each in-flight request owns one future, keyed by its id. The future is
removed the moment a matching response arrives, so a second response
with the same id (or a late one, after the caller gave up) finds
nothing and is dropped.
"""

from __future__ import annotations

import asyncio
import logging

from mcp_gateway.errors import DuplicateRequestError
from mcp_gateway.transport import JsonRpcResponse

logger = logging.getLogger(__name__)


class ResponseRouter:
    """Pending-request table for one client instance."""

    def __init__(self):
        self._pending: dict[str, asyncio.Future] = {}

    def register(self, request_id: str) -> asyncio.Future:
        """
        Create the completion for ``request_id``.

        Raises:
            DuplicateRequestError: If a call with this id is still pending.
        """
        if request_id in self._pending:
            raise DuplicateRequestError(f"Request id {request_id!r} is already pending")
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        return future

    def resolve(self, response: JsonRpcResponse) -> bool:
        """Complete the call waiting on ``response.id``. Unknown ids are a no-op."""
        future = self._pending.pop(response.id, None)
        if future is None:
            logger.debug(f"Dropping response for unknown request id {response.id!r}")
            return False
        if not future.done():
            future.set_result(response)
        return True

    def discard(self, request_id: str) -> None:
        """Forget a registration whose caller is no longer waiting."""
        self._pending.pop(request_id, None)

    def drain_all(self, error: BaseException) -> int:
        """Fail every pending call with ``error``. Returns how many were failed."""
        pending, self._pending = self._pending, {}
        failed = 0
        for future in pending.values():
            if not future.done():
                future.set_exception(error)
                failed += 1
        if failed:
            logger.info(f"Failed {failed} pending request(s): {error}")
        return failed

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)
