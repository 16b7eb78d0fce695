"""Session table and transport lifecycle.

A session is created in one of two ways:

* streamable HTTP: a POST without an ``mcp-session-id`` header whose body is an
  ``initialize`` request. The session's protocol server runs in the manager's
  task group; later POST/GET requests carrying the header are routed into the
  same transport.
* SSE: a GET on the stream endpoint. The stream stays open for the life of the
  session and messages arrive on a separate POST endpoint keyed by
  ``session_id``.

Either kind is removed by an explicit DELETE or when its transport closes.
Every session gets its own protocol server built by ``server_factory``; the
upstream connection behind those servers is shared.
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from http import HTTPStatus
from typing import Callable, Dict, List, Optional
from urllib.parse import quote
from uuid import uuid4

import anyio
import mcp.types as types
from anyio.abc import TaskGroup
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.server.lowlevel import Server
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.shared.message import SessionMessage
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Message, Receive, Scope, Send

from .errors import SessionProtocolError

# Configure logging
logger = logging.getLogger(__name__)

ReadStream = MemoryObjectReceiveStream
WriteStream = MemoryObjectSendStream
ServerFactory = Callable[[], Server]


class TransportKind(Enum):
    STREAMABLE_HTTP = "streamable-http"
    SSE = "sse"


class SessionTransport(ABC):
    """Protocol state for exactly one session."""

    kind: TransportKind

    def __init__(self, session_id: str):
        self.session_id = session_id

    @abstractmethod
    def connect(self):
        """Async context manager yielding the protocol server's read/write streams."""

    @abstractmethod
    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Feed one inbound HTTP request into the session."""

    @abstractmethod
    async def terminate(self) -> None:
        """Release every stream held by the session."""


class StreamableSessionTransport(SessionTransport):
    """Session-keyed, multi-request transport backed by the SDK's streamable HTTP transport."""

    kind = TransportKind.STREAMABLE_HTTP

    def __init__(self, session_id: str, json_response: bool = False):
        super().__init__(session_id)
        self._http = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )

    def connect(self):
        return self._http.connect()

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self._http.handle_request(scope, receive, send)

    async def terminate(self) -> None:
        await self._http.terminate()

    @property
    def is_terminated(self) -> bool:
        return self._http.is_terminated


class SseSessionTransport(SessionTransport):
    """Long-lived single-stream transport.

    Server messages are pushed as ``message`` events on the stream opened by the
    client; the first event is ``endpoint``, naming the URL the client must POST
    its own messages to.
    """

    kind = TransportKind.SSE

    def __init__(self, session_id: str, endpoint: str, scope: Scope, receive: Receive, send: Send):
        super().__init__(session_id)
        self._endpoint = endpoint
        self._scope = scope
        self._receive = receive
        self._send = send
        self._read_stream_writer: Optional[MemoryObjectSendStream] = None
        self._cancel_scope: Optional[anyio.CancelScope] = None

    @property
    def endpoint_uri(self) -> str:
        root_path = self._scope.get("root_path", "")
        path = root_path.rstrip("/") + self._endpoint
        return f"{quote(path)}?session_id={self.session_id}"

    @asynccontextmanager
    async def connect(self):
        read_stream_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_stream_reader = anyio.create_memory_object_stream(0)
        sse_stream_writer, sse_stream_reader = anyio.create_memory_object_stream(0)
        self._read_stream_writer = read_stream_writer

        async def sse_writer():
            async with sse_stream_writer, write_stream_reader:
                await sse_stream_writer.send({"event": "endpoint", "data": self.endpoint_uri})
                async for session_message in write_stream_reader:
                    await sse_stream_writer.send(
                        {
                            "event": "message",
                            "data": session_message.message.model_dump_json(by_alias=True, exclude_none=True),
                        }
                    )

        async def stream_response():
            try:
                response = EventSourceResponse(content=sse_stream_reader, data_sender_callable=sse_writer)
                await response(self._scope, self._receive, self._send)
            finally:
                # Client went away: end the protocol server's read loop
                await read_stream_writer.aclose()
                await write_stream_reader.aclose()

        async with anyio.create_task_group() as tg:
            self._cancel_scope = tg.cancel_scope
            tg.start_soon(stream_response)
            yield read_stream, write_stream

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        writer = self._read_stream_writer
        if writer is None:
            raise SessionProtocolError("Stream is not connected", HTTPStatus.CONFLICT)

        request = Request(scope, receive)
        body = await request.body()
        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except ValidationError as err:
            logger.warning(f"Could not parse message for session {self.session_id}: {err}")
            response = Response("Could not parse message", status_code=HTTPStatus.BAD_REQUEST)
            await response(scope, receive, send)
            try:
                await writer.send(err)
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.warning(f"Dropped parse error for closed session {self.session_id}")
            return

        response = Response("Accepted", status_code=HTTPStatus.ACCEPTED)
        await response(scope, receive, send)
        try:
            await writer.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            logger.warning(f"Dropped message for closed session {self.session_id}")

    async def terminate(self) -> None:
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()


@dataclass
class Session:
    session_id: str
    transport: SessionTransport
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def kind(self) -> TransportKind:
        return self.transport.kind


def is_initialize_request(body: bytes) -> bool:
    try:
        message = types.JSONRPCMessage.model_validate_json(body)
    except ValidationError:
        return False
    root = message.root
    return isinstance(root, types.JSONRPCRequest) and root.method == "initialize"


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Hand an already-read request body to the next ASGI consumer."""
    replayed = False

    async def wrapped() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return wrapped


class SessionManager:
    """Owns the process-wide table of open sessions."""

    def __init__(self, server_factory: ServerFactory, json_response: bool = False, stream_endpoint: str = "/messages/"):
        self._server_factory = server_factory
        self.json_response = json_response
        self.stream_endpoint = stream_endpoint
        self._sessions: Dict[str, Session] = {}
        self._session_creation_lock = anyio.Lock()
        self._task_group: Optional[TaskGroup] = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def session_ids(self) -> List[str]:
        return list(self._sessions)

    @asynccontextmanager
    async def run(self):
        """Run the task group that hosts streamable sessions. Closes every session on exit."""
        if self._task_group is not None:
            raise RuntimeError("SessionManager.run() is already active")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info("Session manager started")
            try:
                yield
            finally:
                logger.info("Session manager shutting down")
                await self.close_all()
                tg.cancel_scope.cancel()
                self._task_group = None

    def _register(self, transport: SessionTransport) -> Session:
        session = Session(session_id=transport.session_id, transport=transport)
        self._sessions[session.session_id] = session
        logger.info(f"Opened {transport.kind.value} session {session.session_id}")
        return session

    def _forget(self, transport: SessionTransport) -> None:
        session = self._sessions.get(transport.session_id)
        if session is not None and session.transport is transport:
            del self._sessions[transport.session_id]
            logger.info(f"Closed {transport.kind.value} session {transport.session_id}")

    def _require(self, session_id: Optional[str], kind: TransportKind) -> Session:
        if not session_id:
            raise SessionProtocolError("Bad Request: missing session ID")
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionProtocolError("Session not found", HTTPStatus.NOT_FOUND)
        if session.kind is not kind:
            raise SessionProtocolError(f"Session {session_id} does not use the {kind.value} transport")
        return session

    async def _run_server(self, transport: SessionTransport, read_stream: ReadStream, write_stream: WriteStream) -> None:
        server = self._server_factory()
        try:
            await server.run(read_stream, write_stream, server.create_initialization_options())
        except Exception as e:
            logger.exception(f"Session {transport.session_id} crashed: {e}")

    async def _open_streamable(self) -> StreamableSessionTransport:
        if self._task_group is None:
            raise RuntimeError("Task group is not initialized. Make sure to use run().")

        async with self._session_creation_lock:
            transport = StreamableSessionTransport(uuid4().hex, json_response=self.json_response)
            self._register(transport)

            async def run_session(*, task_status=anyio.TASK_STATUS_IGNORED):
                try:
                    async with transport.connect() as (read_stream, write_stream):
                        task_status.started()
                        await self._run_server(transport, read_stream, write_stream)
                finally:
                    self._forget(transport)

            await self._task_group.start(run_session)
        return transport

    async def handle_post(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Initialize a new session or continue an existing one."""
        request = Request(scope, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if session_id:
            session = self._require(session_id, TransportKind.STREAMABLE_HTTP)
            await session.transport.handle_request(scope, receive, send)
            return

        body = await request.body()
        if not is_initialize_request(body):
            raise SessionProtocolError("Bad Request: no valid session ID provided and not an initialize request")

        transport = await self._open_streamable()
        status = {}

        async def send_with_status(message: Message) -> None:
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
            await send(message)

        await transport.handle_request(scope, _replay_body(body, receive), send_with_status)
        # The transport refused the initialize; no client holds this session
        if status.get("code", HTTPStatus.OK) >= HTTPStatus.BAD_REQUEST:
            logger.info(f"Initialize rejected with {status['code']}, discarding session {transport.session_id}")
            await self.terminate(transport.session_id)

    async def attach_stream(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Attach a server-push stream to an open streamable session."""
        request = Request(scope, receive)
        session = self._require(request.headers.get(MCP_SESSION_ID_HEADER), TransportKind.STREAMABLE_HTTP)
        await session.transport.handle_request(scope, receive, send)

    async def terminate(self, session_id: str) -> bool:
        """Close a session. Unknown ids are a no-op; returns whether anything was closed."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            logger.debug(f"Terminate for unknown session {session_id}, nothing to do")
            return False

        await session.transport.terminate()
        logger.info(f"Terminated {session.kind.value} session {session_id}")
        return True

    async def close_all(self) -> None:
        for session_id in self.session_ids():
            await self.terminate(session_id)

    async def open_stream(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Serve a long-lived SSE session until the client disconnects or it is terminated."""
        transport = SseSessionTransport(uuid4().hex, self.stream_endpoint, scope, receive, send)
        async with transport.connect() as (read_stream, write_stream):
            self._register(transport)
            try:
                await self._run_server(transport, read_stream, write_stream)
            finally:
                self._forget(transport)

    async def post_stream_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        session = self._require(request.query_params.get("session_id"), TransportKind.SSE)
        await session.transport.handle_request(scope, receive, send)
