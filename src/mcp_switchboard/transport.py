"""
JSON-RPC transports for talking to MCP servers.

Supports three transport types:
    - stdio: Subprocess with newline-delimited JSON-RPC over stdin/stdout
    - http: Streamable HTTP (POST, JSON or event-stream responses)
    - sse: Legacy Server-Sent Events stream plus a POST message endpoint
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

import aiohttp

from mcp_switchboard.errors import HandshakeRejected, MCPError, TransportError

logger = logging.getLogger(__name__)

# Large tool catalogs arrive as a single line on stdout.
STREAM_LIMIT = 10 * 1024 * 1024

# Statuses meaning "this endpoint does not speak streamable HTTP".
REJECTED_STATUSES = frozenset({400, 404, 405})


def error_from_payload(error: dict[str, Any]) -> MCPError:
    """Build an MCPError from a JSON-RPC error object."""
    return MCPError(
        error.get("code", -32000),
        error.get("message", "Unknown error"),
        error.get("data"),
    )


def unwrap_response(response: dict[str, Any]) -> Any:
    """Return the result of a JSON-RPC response or raise its error."""
    error = response.get("error")
    if error:
        raise error_from_payload(error)
    return response.get("result")


async def iter_sse_events(stream: AsyncIterator[bytes]) -> AsyncIterator[tuple[str, str]]:
    """Parse a byte line stream into (event, data) pairs."""
    event = "message"
    data_lines: list[str] = []

    async for raw in stream:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if data_lines:
                yield event, "\n".join(data_lines)
            event = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data_lines.append(value)

    if data_lines:
        yield event, "\n".join(data_lines)


class Transport(ABC):
    """Base class for a request/response channel to one server."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._request_id = 0
        self._pending: dict[Any, asyncio.Future[Any]] = {}

    def _next_request(self, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        self._request_id += 1
        request: dict[str, Any] = {"jsonrpc": "2.0", "id": self._request_id, "method": method}
        if params is not None:
            request["params"] = params
        return request

    @staticmethod
    def _notification(method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        return message

    def _resolve(self, message: dict[str, Any]) -> None:
        """Complete the pending request a response belongs to."""
        future = self._pending.pop(message.get("id"), None)
        if future is None or future.done():
            return
        error = message.get("error")
        if error:
            future.set_exception(error_from_payload(error))
        else:
            future.set_result(message.get("result"))

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    async def _await_response(
        self, request: dict[str, Any], future: asyncio.Future[Any], timeout: float | None
    ) -> Any:
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise TransportError(f"Timeout waiting for {request['method']}") from e
        finally:
            self._pending.pop(request["id"], None)

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Whether the underlying process or session is still usable."""

    @abstractmethod
    async def start(self) -> None:
        """Open the process or session."""

    @abstractmethod
    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        """Send a request and return its result (raises MCPError on error)."""

    @abstractmethod
    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification; no response is expected."""

    @abstractmethod
    async def close(self) -> None:
        """Release the process or session. Safe to call repeatedly."""


class StdioTransport(Transport):
    """Subprocess speaking newline-delimited JSON-RPC on stdin/stdout."""

    def __init__(
        self,
        name: str,
        command: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        debug: bool = False,
    ) -> None:
        super().__init__(name)
        self.command = command
        self.env = env or {}
        self.cwd = cwd
        self.debug = debug
        self.process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._write_lock = asyncio.Lock()

    @property
    def is_alive(self) -> bool:
        return (
            self.process is not None
            and self.process.returncode is None
            and self._reader_task is not None
            and not self._reader_task.done()
        )

    async def start(self) -> None:
        if self.is_alive:
            return

        logger.info(f"[{self.name}] Starting: {' '.join(self.command)}")

        proc_env = os.environ.copy()
        proc_env.update(self.env)
        cwd = Path(self.cwd).expanduser() if self.cwd else None

        self.process = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE if self.debug else asyncio.subprocess.DEVNULL,
            env=proc_env,
            cwd=cwd,
            limit=STREAM_LIMIT,
        )
        logger.info(f"[{self.name}] Started (PID: {self.process.pid})")

        self._reader_task = asyncio.create_task(self._read_stdout(self.process))
        if self.debug:
            self._stderr_task = asyncio.create_task(self._read_stderr(self.process))

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout
        try:
            while True:
                try:
                    line = await process.stdout.readline()
                except ValueError as e:
                    logger.warning(f"[{self.name}] Dropping oversized message: {e}")
                    continue
                if not line:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"[{self.name}] Ignoring non-JSON output: {line[:200]!r}")
                    continue
                if isinstance(message, dict):
                    await self._handle_message(message)
        finally:
            self._fail_pending(TransportError(f"Server '{self.name}' closed its output"))

    async def _read_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr
        with contextlib.suppress(ValueError):
            async for line in process.stderr:
                logger.info(f"[{self.name}] {line.decode(errors='replace').rstrip()}")

    async def _handle_message(self, message: dict[str, Any]) -> None:
        if "method" not in message:
            self._resolve(message)
            return

        # Server-initiated traffic: answer pings, refuse other requests.
        if "id" not in message:
            logger.debug(f"[{self.name}] Notification: {message['method']}")
            return
        if message["method"] == "ping":
            reply: dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": MCPError.METHOD_NOT_FOUND, "message": "Method not supported"},
            }
        with contextlib.suppress(TransportError):
            await self._write(reply)

    async def _write(self, message: dict[str, Any]) -> None:
        process = self.process
        if process is None or not self.is_alive or not process.stdin:
            raise TransportError(f"Server '{self.name}' is not running")

        data = (json.dumps(message) + "\n").encode()
        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportError(f"Write to '{self.name}' failed: {e}") from e

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        request = self._next_request(method, params)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request["id"]] = future

        try:
            await self._write(request)
        except TransportError:
            self._pending.pop(request["id"], None)
            raise
        return await self._await_response(request, future, timeout)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._write(self._notification(method, params))

    async def close(self) -> None:
        process, self.process = self.process, None
        if process is not None and process.returncode is None:
            logger.info(f"[{self.name}] Stopping (PID: {process.pid})")
            if process.stdin:
                process.stdin.close()
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        for task in (self._reader_task, self._stderr_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader_task = None
        self._stderr_task = None
        self._fail_pending(TransportError(f"Server '{self.name}' was closed"))


class StreamableHttpTransport(Transport):
    """Streamable HTTP: every message is a POST to a single endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(name)
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None
        self._session_id: str | None = None

    @property
    def is_alive(self) -> bool:
        return self._session is not None and not self._session.closed

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

    def _request_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self.headers,
        }
        if self._session_id:
            headers["mcp-session-id"] = self._session_id
        return headers

    async def _post(self, message: dict[str, Any], timeout: float | None) -> dict[str, Any] | None:
        if self._session is None or self._session.closed:
            raise TransportError(f"Session for '{self.name}' is closed")

        try:
            async with self._session.post(
                self.url,
                json=message,
                headers=self._request_headers(),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if "mcp-session-id" in resp.headers:
                    self._session_id = resp.headers["mcp-session-id"]
                    logger.debug(f"[{self.name}] Session: {self._session_id}")

                if resp.status in REJECTED_STATUSES and message.get("method") == "initialize":
                    raise HandshakeRejected(resp.status)
                if resp.status >= 400:
                    body = await resp.text()
                    raise TransportError(f"HTTP {resp.status} from '{self.name}': {body[:200]}")
                if resp.status == 202 or "id" not in message:
                    return None

                if "text/event-stream" in resp.content_type:
                    async for _event, data in iter_sse_events(resp.content):
                        try:
                            payload = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(payload, dict) and payload.get("id") == message["id"]:
                            return payload
                    raise TransportError(f"Event stream from '{self.name}' ended without a response")

                payload = await resp.json(content_type=None)
                if not isinstance(payload, dict):
                    raise TransportError(f"Unexpected response from '{self.name}': {payload!r}")
                return payload

        except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as e:
            raise TransportError(f"HTTP error from '{self.name}': {e}") from e

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        response = await self._post(self._next_request(method, params), timeout)
        if response is None:
            raise TransportError(f"Empty response to {method} from '{self.name}'")
        return unwrap_response(response)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._post(self._notification(method, params), self.timeout)

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is None or session.closed:
            return

        # Ask the server to drop the session; failures here are irrelevant.
        if self._session_id:
            with contextlib.suppress(aiohttp.ClientError, asyncio.TimeoutError):
                async with session.delete(
                    self.url,
                    headers=self._request_headers(),
                    timeout=aiohttp.ClientTimeout(total=5),
                ):
                    pass
        self._session_id = None
        await session.close()


class SseTransport(Transport):
    """Legacy SSE transport.

    Protocol:
    1. GET the SSE URL -> receive an 'endpoint' event with the message URL
    2. POST JSON-RPC requests to that endpoint
    3. Responses arrive as 'message' events on the stream
    """

    def __init__(
        self,
        name: str,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(name)
        self.url = url
        self.headers = headers or {}
        self.timeout = timeout
        self.endpoint: str | None = None
        self._session: aiohttp.ClientSession | None = None
        self._stream_task: asyncio.Task[None] | None = None
        self._endpoint_ready = asyncio.Event()
        self._stream_error: str | None = None

    @property
    def is_alive(self) -> bool:
        return (
            self._session is not None
            and not self._session.closed
            and self._stream_task is not None
            and not self._stream_task.done()
        )

    async def start(self) -> None:
        if self.is_alive:
            return

        logger.info(f"[{self.name}] Initializing SSE session...")
        self._session = aiohttp.ClientSession()
        self._endpoint_ready = asyncio.Event()
        self._stream_task = asyncio.create_task(self._read_stream(self._session))

        try:
            await asyncio.wait_for(self._endpoint_ready.wait(), self.timeout)
        except asyncio.TimeoutError as e:
            await self.close()
            raise TransportError(f"No SSE endpoint received from '{self.name}'") from e

        if self.endpoint is None:
            error = self._stream_error or "stream closed"
            await self.close()
            raise TransportError(f"SSE connect to '{self.name}' failed: {error}")

    async def _read_stream(self, session: aiohttp.ClientSession) -> None:
        try:
            async with session.get(
                self.url,
                headers={"Accept": "text/event-stream", **self.headers},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=self.timeout),
            ) as resp:
                if resp.status != 200:
                    self._stream_error = f"HTTP {resp.status}"
                    return

                async for event, data in iter_sse_events(resp.content):
                    if event == "endpoint":
                        self.endpoint = urljoin(self.url, data.strip())
                        logger.info(f"[{self.name}] SSE endpoint: {self.endpoint}")
                        self._endpoint_ready.set()
                    elif event == "message":
                        try:
                            message = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(message, dict) and "method" not in message:
                            self._resolve(message)

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._stream_error = str(e)
            logger.warning(f"[{self.name}] SSE stream error: {e}")
        finally:
            self._endpoint_ready.set()
            self._fail_pending(TransportError(f"SSE stream for '{self.name}' closed"))

    async def _post(self, message: dict[str, Any]) -> None:
        if not self.is_alive or self.endpoint is None or self._session is None:
            raise TransportError(f"SSE session for '{self.name}' is not open")

        try:
            async with self._session.post(
                self.endpoint,
                json=message,
                headers={"Content-Type": "application/json", **self.headers},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise TransportError(f"HTTP {resp.status} from '{self.name}': {body[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"HTTP error from '{self.name}': {e}") from e

    async def request(
        self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None
    ) -> Any:
        request = self._next_request(method, params)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request["id"]] = future

        try:
            await self._post(request)
        except TransportError:
            self._pending.pop(request["id"], None)
            raise
        return await self._await_response(request, future, timeout)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._post(self._notification(method, params))

    async def close(self) -> None:
        task, self._stream_task = self._stream_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()
        self.endpoint = None
        self._fail_pending(TransportError(f"SSE session for '{self.name}' was closed"))
