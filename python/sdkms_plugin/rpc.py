"""
JSON-RPC 2.0 over a Unix domain socket.

This module provides:
- read_message / write_message: Length-prefixed JSON framing
- RPCRequest, RPCResponse, RPCError, ErrorCode: Message types
- RPCServer: Socket server with a Unstarted -> Serving -> Draining -> Stopped lifecycle
- RPCClient: Minimal client for health probes and tests

Framing: every message is a 4-byte big-endian length followed by that many
bytes of UTF-8 JSON. Method names look like
``v2beta1.KeyManagementService/Encrypt``. A request may carry a ``timeout``
in seconds, which bounds the handler.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import struct
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Union

from .errors import (
    BindError,
    IdentityMismatchError,
    InvalidRequestError,
    MalformedEnvelopeError,
    PluginError,
    RemoteProviderError,
    SerializationError,
)

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
MAX_MESSAGE_SIZE = 8 * 1024 * 1024
_HEADER = struct.Struct(">I")

Handler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


# =============================================================================
# Protocol
# =============================================================================


class ErrorCode(IntEnum):
    """JSON-RPC standard codes plus plugin-specific ones."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    MALFORMED_ENVELOPE = -32001
    IDENTITY_MISMATCH = -32002
    REMOTE_PROVIDER = -32003
    SERIALIZATION = -32004
    DEADLINE_EXCEEDED = -32005
    UNAVAILABLE = -32006


# Most specific first
_ERROR_CODES = (
    (MalformedEnvelopeError, ErrorCode.MALFORMED_ENVELOPE),
    (IdentityMismatchError, ErrorCode.IDENTITY_MISMATCH),
    (RemoteProviderError, ErrorCode.REMOTE_PROVIDER),
    (SerializationError, ErrorCode.SERIALIZATION),
    (InvalidRequestError, ErrorCode.INVALID_PARAMS),
)


def error_code_for(exc: BaseException) -> ErrorCode:
    for exc_type, code in _ERROR_CODES:
        if isinstance(exc, exc_type):
            return code
    return ErrorCode.INTERNAL_ERROR


class RPCError(Exception):
    """An RPC-level failure, as sent on the wire."""

    def __init__(self, code: Union[ErrorCode, int], message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": int(self.code), "message": self.message}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RPCError:
        code = data.get("code", ErrorCode.INTERNAL_ERROR)
        try:
            code = ErrorCode(code)
        except ValueError:
            pass
        return cls(code, str(data.get("message", "")))

    def __repr__(self) -> str:
        return f"RPCError({self.code!r}, {self.message!r})"


@dataclass
class RPCRequest:
    """A JSON-RPC request."""

    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    id: Optional[Union[int, str]] = None
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any) -> RPCRequest:
        """
        Parse a decoded JSON message.

        Raises:
            RPCError: INVALID_REQUEST if the message is not a valid request
        """
        if not isinstance(data, dict):
            raise RPCError(ErrorCode.INVALID_REQUEST, "request must be an object")
        if data.get("jsonrpc") != JSONRPC_VERSION:
            raise RPCError(ErrorCode.INVALID_REQUEST, "unsupported jsonrpc version")
        method = data.get("method")
        if not isinstance(method, str) or not method:
            raise RPCError(ErrorCode.INVALID_REQUEST, "request has no method")
        params = data.get("params", {})
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise RPCError(ErrorCode.INVALID_REQUEST, "params must be an object")
        timeout = data.get("timeout")
        if timeout is not None and (
            isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
        ):
            raise RPCError(ErrorCode.INVALID_REQUEST, "timeout must be a positive number")
        return cls(method=method, params=params, id=data.get("id"), timeout=timeout)

    def to_dict(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }
        if self.timeout is not None:
            message["timeout"] = self.timeout
        return message


@dataclass
class RPCResponse:
    """A JSON-RPC response carrying either a result or an error."""

    id: Optional[Union[int, str]]
    result: Optional[Dict[str, Any]] = None
    error: Optional[RPCError] = None

    def to_dict(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "id": self.id}
        if self.error is not None:
            message["error"] = self.error.to_dict()
        else:
            message["result"] = self.result if self.result is not None else {}
        return message

    @classmethod
    def from_dict(cls, data: Any) -> RPCResponse:
        if not isinstance(data, dict):
            raise RPCError(ErrorCode.PARSE_ERROR, "response must be an object")
        error = data.get("error")
        return cls(
            id=data.get("id"),
            result=data.get("result"),
            error=RPCError.from_dict(error) if isinstance(error, dict) else None,
        )


# =============================================================================
# Framing
# =============================================================================


async def read_message(
    reader: asyncio.StreamReader, max_size: int = MAX_MESSAGE_SIZE
) -> Optional[Any]:
    """
    Read one framed JSON message.

    Returns:
        The decoded message, or None on a clean end of stream

    Raises:
        RPCError: PARSE_ERROR for invalid JSON (the stream stays in sync),
            INVALID_REQUEST for an oversized frame (the stream is unusable)
        asyncio.IncompleteReadError: If the stream ends mid-frame
    """
    try:
        header = await reader.readexactly(_HEADER.size)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise
    (length,) = _HEADER.unpack(header)
    if length > max_size:
        raise RPCError(
            ErrorCode.INVALID_REQUEST,
            f"message of {length} bytes exceeds limit of {max_size}",
        )
    body = await reader.readexactly(length)
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise RPCError(ErrorCode.PARSE_ERROR, f"invalid JSON: {e}") from e


async def write_message(writer: asyncio.StreamWriter, message: Mapping[str, Any]) -> None:
    """Write one framed JSON message and flush it."""
    body = json.dumps(message, separators=(",", ":")).encode("utf-8")
    writer.write(_HEADER.pack(len(body)) + body)
    await writer.drain()


# =============================================================================
# Server
# =============================================================================


class ServerState(Enum):
    """Lifecycle of an RPCServer."""

    UNSTARTED = "unstarted"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"

    def __str__(self) -> str:
        return self.value


class RPCServer:
    """
    Unix socket JSON-RPC server.

    Each request runs in its own task, so a slow call never blocks others on
    the same or another connection. Handlers share no mutable state with
    the server.
    """

    def __init__(self, socket_path: Union[str, Path], max_message_size: int = MAX_MESSAGE_SIZE) -> None:
        self._socket_path = Path(socket_path)
        self._max_message_size = max_message_size
        self._handlers: Dict[str, Handler] = {}
        self._server: Optional[asyncio.AbstractServer] = None
        self._state = ServerState.UNSTARTED
        self._inflight: Set[asyncio.Task] = set()
        self._writers: Set[asyncio.StreamWriter] = set()
        self._stopped = asyncio.Event()

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def socket_path(self) -> Path:
        return self._socket_path

    @property
    def methods(self) -> Set[str]:
        return set(self._handlers)

    def register(self, service: str, methods: Mapping[str, Handler]) -> None:
        """Register handlers as ``<service>/<name>``."""
        for name, handler in methods.items():
            self._handlers[f"{service}/{name}"] = handler

    async def start(self) -> None:
        """
        Bind the socket and start accepting connections.

        A stale socket file left by a previous run is removed first.

        Raises:
            BindError: If the server was already started or binding fails
        """
        if self._state is not ServerState.UNSTARTED:
            raise BindError(f"server is already {self._state}")

        path = self._socket_path
        try:
            if path.is_socket():
                path.unlink()
            elif path.exists():
                raise BindError(f"{path} exists and is not a socket")
            self._server = await asyncio.start_unix_server(self._on_connection, path=str(path))
        except OSError as e:
            raise BindError(f"failed to listen on {path}: {e}") from e

        try:
            os.chmod(path, 0o600)
        except OSError as e:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            path.unlink(missing_ok=True)
            raise BindError(f"failed to restrict permissions on {path}: {e}") from e

        self._state = ServerState.SERVING
        logger.info("Listening on %s", path)

    async def drain(self) -> None:
        """
        Stop accepting calls, wait for in-flight calls, then close.

        Requests that arrive while draining are answered with UNAVAILABLE.
        Concurrent callers all return once the server has stopped.
        """
        if self._state is ServerState.UNSTARTED:
            self._state = ServerState.STOPPED
            self._stopped.set()
            return
        if self._state is not ServerState.SERVING:
            await self._stopped.wait()
            return

        self._state = ServerState.DRAINING
        logger.info("Draining %d in-flight call(s)", len(self._inflight))
        self._server.close()

        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        for writer in list(self._writers):
            writer.close()
        await self._server.wait_closed()

        self._socket_path.unlink(missing_ok=True)
        self._state = ServerState.STOPPED
        self._stopped.set()
        logger.info("Stopped")

    async def _on_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        self._writers.add(writer)
        write_lock = asyncio.Lock()
        pending: Set[asyncio.Task] = set()
        try:
            while True:
                try:
                    message = await read_message(reader, self._max_message_size)
                except RPCError as e:
                    await self._send(writer, write_lock, RPCResponse(id=None, error=e))
                    if e.code == ErrorCode.PARSE_ERROR:
                        continue
                    break
                except (asyncio.IncompleteReadError, ConnectionError):
                    break
                if message is None:
                    break

                task = asyncio.create_task(self._process(message, writer, write_lock))
                for tracked in (self._inflight, pending):
                    tracked.add(task)
                    task.add_done_callback(tracked.discard)
        finally:
            if pending:
                await asyncio.gather(*list(pending), return_exceptions=True)
            self._writers.discard(writer)
            writer.close()

    async def _process(
        self, message: Any, writer: asyncio.StreamWriter, write_lock: asyncio.Lock
    ) -> None:
        response = await self.dispatch(message)
        await self._send(writer, write_lock, response)

    async def dispatch(self, message: Any) -> RPCResponse:
        """Run one decoded request through its handler."""
        try:
            request = RPCRequest.from_dict(message)
        except RPCError as e:
            request_id = message.get("id") if isinstance(message, dict) else None
            return RPCResponse(id=request_id, error=e)

        if self._state is not ServerState.SERVING:
            return RPCResponse(
                id=request.id,
                error=RPCError(ErrorCode.UNAVAILABLE, f"server is {self._state}"),
            )

        handler = self._handlers.get(request.method)
        if handler is None:
            return RPCResponse(
                id=request.id,
                error=RPCError(ErrorCode.METHOD_NOT_FOUND, f"unknown method {request.method}"),
            )

        try:
            if request.timeout is not None:
                result = await asyncio.wait_for(handler(request.params), request.timeout)
            else:
                result = await handler(request.params)
        except asyncio.TimeoutError:
            return RPCResponse(
                id=request.id,
                error=RPCError(
                    ErrorCode.DEADLINE_EXCEEDED,
                    f"{request.method} exceeded deadline of {request.timeout}s",
                ),
            )
        except PluginError as e:
            return RPCResponse(id=request.id, error=RPCError(error_code_for(e), str(e)))
        except Exception as e:
            logger.exception("Unhandled error in %s", request.method)
            return RPCResponse(
                id=request.id,
                error=RPCError(ErrorCode.INTERNAL_ERROR, f"internal error: {type(e).__name__}"),
            )
        return RPCResponse(id=request.id, result=result)

    async def _send(
        self, writer: asyncio.StreamWriter, write_lock: asyncio.Lock, response: RPCResponse
    ) -> None:
        async with write_lock:
            try:
                await write_message(writer, response.to_dict())
            except (ConnectionError, RuntimeError) as e:
                logger.debug("Dropping response %r: %s", response.id, e)


# =============================================================================
# Client
# =============================================================================


class RPCClient:
    """
    Sequential JSON-RPC client over a Unix socket.

    One call is outstanding at a time; open several clients for parallelism.
    """

    def __init__(self, socket_path: Union[str, Path], max_message_size: int = MAX_MESSAGE_SIZE) -> None:
        self._socket_path = Path(socket_path)
        self._max_message_size = max_message_size
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_unix_connection(str(self._socket_path))

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except ConnectionError:
                pass
            self._writer = None
            self._reader = None

    async def __aenter__(self) -> RPCClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Invoke a method and return its result.

        Raises:
            RPCError: If the server answers with an error
            ConnectionError: If the server closed the connection
        """
        if self._writer is None:
            raise ConnectionError("client is not connected")
        async with self._lock:
            request = RPCRequest(
                method=method, params=params or {}, id=next(self._ids), timeout=timeout
            )
            await write_message(self._writer, request.to_dict())
            message = await read_message(self._reader, self._max_message_size)
        if message is None:
            raise ConnectionError("server closed the connection")
        response = RPCResponse.from_dict(message)
        if response.error is not None:
            raise response.error
        return response.result or {}
