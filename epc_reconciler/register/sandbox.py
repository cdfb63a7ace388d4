"""Isolated child process that parses register HTML.

The parent and the child talk over a dedicated duplex pipe:

- parent -> child: ``{"action": "parseHtml", "html": ..., "requestId": ...}``
- child -> parent: ``{"success": bool, "data": [...] | "error": str, "requestId": ...}``

``None`` sent to the child asks it to exit. Replies are correlated through the
:class:`~epc_reconciler.broker.request_broker.RequestBroker`.
"""

import asyncio
import logging
import multiprocessing
from multiprocessing.connection import Connection
from typing import Any, Optional

from epc_reconciler.broker.request_broker import KIND_REGISTER_PARSE, RequestBroker
from epc_reconciler.db.models import RegisterCertificate
from epc_reconciler.register.parser import DEFAULT_BASE_URL, parse_register_html

logger = logging.getLogger(__name__)

SANDBOX_PROCESS_NAME = "epc-register-parser"
ACTION_PARSE_HTML = "parseHtml"


class SandboxError(Exception):
    """The parsing sandbox could not be started or reported a failure."""


def handle_message(message: Any, base_url: str = DEFAULT_BASE_URL) -> dict:
    """Process one request inside the sandbox and build its reply."""
    if not isinstance(message, dict):
        return {"success": False, "error": "Malformed sandbox message", "requestId": None}

    request_id = message.get("requestId")
    if message.get("action") != ACTION_PARSE_HTML:
        return {
            "success": False,
            "error": f"Unknown action: {message.get('action')}",
            "requestId": request_id,
        }

    html = message.get("html")
    if not isinstance(html, str):
        return {"success": False, "error": "No HTML supplied", "requestId": request_id}

    try:
        certificates = parse_register_html(html, base_url=base_url)
    except Exception as e:
        return {"success": False, "error": f"Parse failed: {e}", "requestId": request_id}

    return {
        "success": True,
        "data": [cert.model_dump(mode="json") for cert in certificates],
        "requestId": request_id,
    }


def _sandbox_main(conn: Connection, base_url: str) -> None:
    """Child process loop: answer parse requests until told to stop."""
    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            break
        if message is None:
            break
        conn.send(handle_message(message, base_url))
    conn.close()


class ParserSandbox:
    """Lazily started parsing process bound to a broker.

    Registers itself as the dispatcher for register-parse requests. The child
    is created on first use; concurrent first calls share a single start-up.
    """

    def __init__(self, broker: RequestBroker, timeout: float, base_url: str = DEFAULT_BASE_URL):
        self.broker = broker
        self.base_url = base_url
        self._process: Optional[multiprocessing.Process] = None
        self._conn: Optional[Connection] = None
        self._starting: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        broker.register(KIND_REGISTER_PARSE, self._dispatch, timeout)

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.is_alive()

    async def ensure_started(self) -> None:
        if self.is_running and self._conn is not None:
            return
        if self._starting is None:
            self._starting = asyncio.create_task(self._start())
        try:
            await asyncio.shield(self._starting)
        finally:
            if self._starting is not None and self._starting.done():
                self._starting = None

    async def _start(self) -> None:
        ctx = multiprocessing.get_context("spawn")
        parent_conn, child_conn = ctx.Pipe(duplex=True)
        process = ctx.Process(
            target=_sandbox_main,
            args=(child_conn, self.base_url),
            name=SANDBOX_PROCESS_NAME,
            daemon=True,
        )
        try:
            await asyncio.to_thread(process.start)
        except Exception as e:
            parent_conn.close()
            raise SandboxError(f"Could not start parsing sandbox: {e}") from e
        finally:
            child_conn.close()

        self._process = process
        self._conn = parent_conn
        self._reader = asyncio.create_task(self._read_replies(parent_conn))
        logger.info("Started parsing sandbox (pid %s)", process.pid)

    async def _dispatch(self, request_id: str, html: str) -> None:
        await self.ensure_started()
        message = {"action": ACTION_PARSE_HTML, "html": html, "requestId": request_id}
        async with self._send_lock:
            await asyncio.to_thread(self._conn.send, message)

    async def _read_replies(self, conn: Connection) -> None:
        while True:
            try:
                reply = await asyncio.to_thread(conn.recv)
            except (EOFError, OSError):
                break
            if not isinstance(reply, dict):
                logger.warning("Ignoring malformed sandbox reply: %r", reply)
                continue
            self.broker.complete(KIND_REGISTER_PARSE, reply.get("requestId"), reply)

        if self._conn is conn:
            self._conn = None
            failed = self.broker.cancel_all(
                KIND_REGISTER_PARSE, SandboxError("Parsing sandbox exited before replying")
            )
            logger.warning("Parsing sandbox channel closed; failed %d pending requests", failed)

    async def parse(self, html: str) -> list[RegisterCertificate]:
        """Parse ``html`` in the sandbox.

        Raises:
            SandboxError: the sandbox reported a failure or went away.
            RequestTimeoutError: no reply before the parse deadline.
        """
        reply = await self.broker.request(KIND_REGISTER_PARSE, html)
        if not reply.get("success"):
            raise SandboxError(reply.get("error") or "Parsing sandbox reported a failure")
        return [RegisterCertificate.model_validate(item) for item in reply.get("data") or []]

    async def close(self) -> None:
        """Stop the child process and the reply reader."""
        conn, process, reader = self._conn, self._process, self._reader
        self._conn = None
        self._process = None
        self._reader = None

        if conn is not None:
            try:
                async with self._send_lock:
                    await asyncio.to_thread(conn.send, None)
            except (OSError, ValueError) as e:
                logger.debug("Could not signal parsing sandbox to stop: %s", e)
        if process is not None:
            await asyncio.to_thread(process.join, 5)
            if process.is_alive():
                logger.warning("Parsing sandbox did not exit; terminating")
                process.terminate()
                await asyncio.to_thread(process.join, 5)
        if reader is not None:
            await reader
        if conn is not None:
            conn.close()
