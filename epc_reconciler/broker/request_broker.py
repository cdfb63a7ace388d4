"""Correlation table turning cross-boundary round trips into awaitable futures.

One broker serves every message kind (image OCR, PDF OCR, register parsing).
A request is dispatched with a fresh ``request_id``; the executor later calls
:meth:`RequestBroker.complete` with the same id and the reply payload.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

# Dispatcher receives (request_id, payload) and hands the request to its executor
Dispatcher = Callable[[str, Any], Awaitable[None]]

KIND_IMAGE_OCR = "image-ocr"
KIND_PDF_OCR = "pdf-ocr"
KIND_REGISTER_PARSE = "register-parse"


class RequestBrokerError(Exception):
    """Base error for broker round trips."""


class RequestTimeoutError(RequestBrokerError):
    """No completion arrived before the request deadline."""

    def __init__(self, kind: str, request_id: str, timeout: float):
        super().__init__(f"{kind} request {request_id} timed out after {timeout:.1f}s")
        self.kind = kind
        self.request_id = request_id
        self.timeout = timeout


class UnknownRequestKindError(RequestBrokerError):
    """Issued a request for a kind with no registered dispatcher."""


@dataclass
class PendingRequest:
    request_id: str
    future: asyncio.Future
    deadline: float
    timer: Optional[asyncio.TimerHandle] = None


@dataclass
class _Route:
    dispatcher: Dispatcher
    timeout: float


class RequestBroker:
    """Kind-scoped tables of pending requests, each with its own deadline.

    Every entry is removed exactly once: on completion, on dispatch failure,
    on timeout, or when the caller stops waiting.
    """

    def __init__(self):
        self._routes: dict[str, _Route] = {}
        self._pending: dict[str, dict[str, PendingRequest]] = {}

    def register(self, kind: str, dispatcher: Dispatcher, timeout: float) -> None:
        """Route ``kind`` requests to ``dispatcher`` with a per-request deadline in seconds."""
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._routes[kind] = _Route(dispatcher=dispatcher, timeout=timeout)
        self._pending.setdefault(kind, {})

    def pending_count(self, kind: Optional[str] = None) -> int:
        if kind is not None:
            return len(self._pending.get(kind, {}))
        return sum(len(table) for table in self._pending.values())

    def is_pending(self, kind: str, request_id: str) -> bool:
        return request_id in self._pending.get(kind, {})

    async def issue(self, kind: str, payload: Any) -> asyncio.Future:
        """Dispatch ``payload`` and return a future resolved by :meth:`complete`.

        The future fails with :class:`RequestTimeoutError` once the kind's
        deadline passes without a completion.
        """
        route = self._routes.get(kind)
        if route is None:
            raise UnknownRequestKindError(f"No dispatcher registered for '{kind}'")

        loop = asyncio.get_running_loop()
        request_id = uuid.uuid4().hex
        future = loop.create_future()
        entry = PendingRequest(
            request_id=request_id,
            future=future,
            deadline=loop.time() + route.timeout,
        )
        table = self._pending[kind]
        table[request_id] = entry
        entry.timer = loop.call_later(route.timeout, self._expire, kind, request_id, route.timeout)
        future.add_done_callback(lambda _: self._discard(kind, request_id))

        try:
            await route.dispatcher(request_id, payload)
        except Exception:
            self._discard(kind, request_id)
            if not future.done():
                future.cancel()
            raise

        logger.debug("Issued %s request %s", kind, request_id)
        return future

    async def request(self, kind: str, payload: Any) -> Any:
        """Issue a request and wait for its reply."""
        future = await self.issue(kind, payload)
        return await future

    def complete(self, kind: str, request_id: Optional[str], payload: Any) -> bool:
        """Resolve the pending request ``request_id`` with ``payload``.

        Unknown, late or duplicate ids are logged and ignored. Returns whether
        a pending request was resolved.
        """
        entry = self._pending.get(kind, {}).pop(request_id, None) if request_id else None
        if entry is None:
            logger.warning("Ignoring %s reply for unknown or settled request %s", kind, request_id)
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return False
        entry.future.set_result(payload)
        return True

    def fail(self, kind: str, request_id: Optional[str], error: BaseException) -> bool:
        """Reject the pending request ``request_id`` with ``error``."""
        entry = self._pending.get(kind, {}).pop(request_id, None) if request_id else None
        if entry is None:
            logger.warning("Ignoring %s failure for unknown or settled request %s", kind, request_id)
            return False
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return False
        entry.future.set_exception(error)
        return True

    def cancel_all(self, kind: Optional[str] = None, error: Optional[BaseException] = None) -> int:
        """Settle every pending request, e.g. when an executor goes away.

        Futures are rejected with ``error`` when given, otherwise cancelled.
        """
        kinds = [kind] if kind is not None else list(self._pending)
        settled = 0
        for name in kinds:
            table = self._pending.get(name, {})
            for entry in list(table.values()):
                if entry.timer is not None:
                    entry.timer.cancel()
                if entry.future.done():
                    continue
                if error is not None:
                    entry.future.set_exception(error)
                else:
                    entry.future.cancel()
                settled += 1
            table.clear()
        return settled

    def _expire(self, kind: str, request_id: str, timeout: float) -> None:
        entry = self._pending.get(kind, {}).pop(request_id, None)
        if entry is None or entry.future.done():
            return
        logger.warning("%s request %s timed out after %.1fs", kind, request_id, timeout)
        entry.future.set_exception(RequestTimeoutError(kind, request_id, timeout))

    def _discard(self, kind: str, request_id: str) -> None:
        entry = self._pending.get(kind, {}).pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
