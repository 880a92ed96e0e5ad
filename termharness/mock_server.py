"""
TermHarness Mock Chat-Completion Service

An OpenAI-compatible HTTP double for the application's upstream LLM provider.
Serves fixed, queued, per-type and error responses, SSE streaming with
mid-stream interruption, and keeps a bounded request ledger for assertions.

The FastAPI app runs on a uvicorn server inside a background thread so tests
and the harness can drive it synchronously.
"""

import asyncio
import json
import socket
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Callable, Deque, Dict, List, Optional, Set, Union

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse

from termharness.errors import HarnessError
from termharness.logging import get_logger

logger = get_logger(__name__)

CHAT_COMPLETIONS = "/v1/chat/completions"
LEDGER_LIMIT = 100
STREAM_CHUNK_INTERVAL = 0.01

@dataclass
class MockResponse:
    """
    A canned reply.

    type is one of "fixed", "streaming" or "error". Streaming content may be a
    list of chunks; error content is the error message.
    """

    type: str
    content: Union[str, List[str]]
    delay_ms: Optional[int] = None
    status_code: Optional[int] = None

    def __post_init__(self) -> None:
        if self.type not in ("fixed", "streaming", "error"):
            raise ValueError(f"Unknown mock response type: {self.type}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MockResponse":
        return cls(
            type=data.get("type", "fixed"),
            content=data.get("content", ""),
            delay_ms=data.get("delayMs", data.get("delay_ms")),
            status_code=data.get("statusCode", data.get("status_code")),
        )

    @property
    def text(self) -> str:
        if isinstance(self.content, list):
            return "".join(self.content)
        return self.content

    @property
    def chunks(self) -> List[str]:
        if isinstance(self.content, list):
            return list(self.content)
        return [self.content]


@dataclass(frozen=True)
class RequestRecord:
    endpoint: str
    method: str
    headers: Dict[str, str]
    body: Any
    timestamp: float
    request_type: str = "unknown"
    streaming: bool = False
    error: bool = False


@dataclass(eq=False)
class StreamSession:
    session_id: int
    model: str
    started_at: float = field(default_factory=time.time)
    interrupted: bool = False


DEFAULT_RESPONSES: Dict[str, MockResponse] = {
    "system-concepts": MockResponse(type="fixed", content="[]"),
    "human-concepts": MockResponse(type="fixed", content="[]"),
    "description": MockResponse(
        type="fixed",
        content=json.dumps(
            {
                "short_description": "Test AI assistant",
                "long_description": "A helpful test assistant for automated testing.",
            }
        ),
    ),
    "response": MockResponse(
        type="fixed",
        content="Hello! This is a test response from the mock LLM server.",
    ),
}


def classify_request(messages: Any) -> str:
    """Classify a chat request by its system message."""
    if not isinstance(messages, list) or not messages:
        return "unknown"
    system = next(
        (m for m in messages if isinstance(m, dict) and m.get("role") == "system"),
        None,
    )
    if not system or not system.get("content"):
        return "unknown"
    content = str(system["content"]).lower()
    if "you are ei" in content and "companion" in content:
        return "response"
    if "system" in content and "concepts" in content:
        return "system-concepts"
    if "human" in content and "concepts" in content:
        return "human-concepts"
    if "description" in content and "persona" in content:
        return "description"
    return "response"


def _sse(payload: Any) -> str:
    return f"data: {json.dumps(payload)}\n\n"


class MockLLMService:
    """
    Mock chat-completion provider.

    Configuration setters are idempotent and safe to call from any thread
    while requests are being served.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, MockResponse]] = None,
        default_delay_ms: int = 0,
        enable_logging: bool = False,
        classifier: Callable[[Any], str] = classify_request,
    ) -> None:
        self.default_responses = dict(DEFAULT_RESPONSES)
        if responses:
            self.default_responses.update(responses)
        self.default_delay_ms = default_delay_ms
        self.enable_logging = enable_logging
        self.classifier = classifier

        self._lock = threading.Lock()
        self._ledger: Deque[RequestRecord] = deque(maxlen=LEDGER_LIMIT)
        self._queue: Deque[str] = deque()
        self._endpoint_overrides: Dict[str, MockResponse] = {}
        self._type_overrides: Dict[str, MockResponse] = {}
        self._delays: Dict[str, int] = {}
        self._streaming_chunks: Dict[str, List[str]] = {}
        self._streams: Set[StreamSession] = set()
        self._stream_counter = 0
        self._total_requests = 0

        self.app = create_app(self)
        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._sock: Optional[socket.socket] = None
        self.host = "127.0.0.1"
        self.port: Optional[int] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def url(self) -> str:
        if self.port is None:
            raise HarnessError("Mock service is not running")
        return f"http://{self.host}:{self.port}"

    @property
    def base_url(self) -> str:
        return f"{self.url}/v1"

    def start(self, port: int = 0, host: str = "127.0.0.1", startup_timeout: float = 5.0) -> int:
        """Bind the listener and serve in a background thread. Returns the bound port."""
        if self._server is not None:
            raise HarnessError("Mock service is already running", metadata={"port": self.port})

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as exc:
            sock.close()
            raise HarnessError(
                f"Mock service could not bind {host}:{port}: {exc}",
                metadata={"host": host, "port": port},
            ) from exc
        sock.listen(128)
        self.host = host
        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_config=None,
            log_level="warning",
            lifespan="off",
            timeout_graceful_shutdown=1,
        )
        server = uvicorn.Server(config)
        thread = threading.Thread(
            target=server.run,
            kwargs={"sockets": [sock]},
            name=f"mock-llm:{self.port}",
            daemon=True,
        )
        thread.start()

        deadline = time.time() + startup_timeout
        while not server.started:
            if not thread.is_alive() or time.time() > deadline:
                server.should_exit = True
                sock.close()
                self.port = None
                raise HarnessError("Mock service failed to start", metadata={"port": port})
            time.sleep(0.02)

        self._server = server
        self._thread = thread
        self._sock = sock
        logger.info("mock_server_started", extra={"port": self.port, "host": host})
        return self.port

    def stop(self, timeout: float = 5.0) -> None:
        """Interrupt streams, reset all state and close the listener."""
        if self._server is None:
            return
        self.interrupt_all_streams()
        with self._lock:
            self._ledger.clear()
            self._queue.clear()
            self._total_requests = 0
            self._endpoint_overrides.clear()
            self._type_overrides.clear()
            self._delays.clear()
            self._streaming_chunks.clear()

        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                self._server.force_exit = True
                self._thread.join(1.0)
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        logger.info("mock_server_stopped", extra={"port": self.port})
        self._server = None
        self._thread = None
        self.port = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_response(self, endpoint: str, response: MockResponse) -> None:
        with self._lock:
            self._endpoint_overrides[endpoint] = response

    def set_response_for_type(self, request_type: str, response: MockResponse) -> None:
        with self._lock:
            self._type_overrides[request_type] = response

    def clear_response_overrides(self) -> None:
        with self._lock:
            self._endpoint_overrides.clear()
            self._type_overrides.clear()

    def set_response_queue(self, responses: List[str]) -> None:
        with self._lock:
            self._queue = deque(responses)

    def clear_response_queue(self) -> None:
        with self._lock:
            self._queue.clear()

    def set_delay(self, endpoint: str, delay_ms: int) -> None:
        with self._lock:
            self._delays[endpoint] = delay_ms

    def enable_streaming(self, endpoint: str, chunks: List[str]) -> None:
        with self._lock:
            self._streaming_chunks[endpoint] = list(chunks)

    # ------------------------------------------------------------------
    # Ledger and streams
    # ------------------------------------------------------------------

    def get_request_history(self) -> List[RequestRecord]:
        with self._lock:
            return list(self._ledger)

    def clear_request_history(self) -> None:
        with self._lock:
            self._ledger.clear()

    @property
    def total_requests(self) -> int:
        """Requests served since start. Unlike the ledger this is never trimmed."""
        with self._lock:
            return self._total_requests

    def get_active_stream_count(self) -> int:
        with self._lock:
            return len(self._streams)

    def interrupt_all_streams(self) -> None:
        with self._lock:
            sessions = list(self._streams)
            self._streams.clear()
        for session in sessions:
            session.interrupted = True
        if sessions:
            logger.info("mock_streams_interrupted", extra={"count": len(sessions)})

    def _record(self, record: RequestRecord) -> None:
        with self._lock:
            self._ledger.append(record)
            self._total_requests += 1

    def _open_stream(self, model: str) -> StreamSession:
        with self._lock:
            self._stream_counter += 1
            session = StreamSession(session_id=self._stream_counter, model=model)
            self._streams.add(session)
        return session

    def _release_stream(self, session: StreamSession) -> None:
        with self._lock:
            self._streams.discard(session)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_response(self, request_type: str, endpoint: str) -> MockResponse:
        """Queue first, then endpoint override, then type override, then the built-in default."""
        with self._lock:
            if self._queue:
                return MockResponse(type="fixed", content=self._queue.popleft(), status_code=200)
            override = self._endpoint_overrides.get(endpoint)
            if override is not None:
                return override
            type_override = self._type_overrides.get(request_type)
            if type_override is not None:
                return type_override
        return self.default_responses.get(request_type, self.default_responses["response"])

    def resolve_delay_ms(self, response: MockResponse, endpoint: str) -> int:
        if response.delay_ms is not None:
            return response.delay_ms
        with self._lock:
            if endpoint in self._delays:
                return self._delays[endpoint]
        return self.default_delay_ms

    def streaming_chunks_for(self, endpoint: str) -> Optional[List[str]]:
        with self._lock:
            chunks = self._streaming_chunks.get(endpoint)
            return list(chunks) if chunks is not None else None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> "MockLLMService":
        if not self.running:
            self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()


def create_app(service: MockLLMService) -> FastAPI:
    """Build the FastAPI app serving the chat-completion surface for a service."""
    app = FastAPI(title="TermHarness Mock LLM", docs_url=None, redoc_url=None, openapi_url=None)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "timestamp": int(time.time() * 1000)}

    @app.get("/test/requests")
    async def list_requests() -> List[Dict[str, Any]]:
        return [
            {
                "endpoint": r.endpoint,
                "method": r.method,
                "headers": r.headers,
                "body": r.body,
                "timestamp": r.timestamp,
                "requestType": r.request_type,
                "streaming": r.streaming,
                "error": r.error,
            }
            for r in service.get_request_history()
        ]

    @app.delete("/test/requests")
    async def clear_requests() -> Dict[str, bool]:
        service.clear_request_history()
        return {"cleared": True}

    @app.post(CHAT_COMPLETIONS)
    async def chat_completions(request: Request) -> Response:
        endpoint = CHAT_COMPLETIONS
        headers = dict(request.headers)
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            service._record(
                RequestRecord(
                    endpoint=endpoint,
                    method=request.method,
                    headers=headers,
                    body=None,
                    timestamp=time.time(),
                    error=True,
                )
            )
            return _error_response("Request body must be valid JSON", 400)
        if not isinstance(body, dict):
            body = {}

        request_type = service.classifier(body.get("messages"))
        response = service.resolve_response(request_type, endpoint)
        chunks = service.streaming_chunks_for(endpoint)
        streaming = response.type != "error" and bool(
            body.get("stream") or response.type == "streaming" or chunks is not None
        )
        service._record(
            RequestRecord(
                endpoint=endpoint,
                method=request.method,
                headers=headers,
                body=body,
                timestamp=time.time(),
                request_type=request_type,
                streaming=streaming,
                error=response.type == "error",
            )
        )
        if service.enable_logging:
            logger.info(
                "mock_request",
                extra={
                    "endpoint": endpoint,
                    "model": body.get("model"),
                    "messages": len(body.get("messages") or []),
                    "stream": bool(body.get("stream")),
                    "request_type": request_type,
                },
            )

        delay_ms = service.resolve_delay_ms(response, endpoint)
        if delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000.0)

        if response.type == "error":
            return _error_response(response.text or "Mock error", response.status_code or 500)

        model = body.get("model") or "mock-model"
        if streaming:
            session = service._open_stream(model)
            return StreamingResponse(
                _stream_chunks(service, session, request, chunks or response.chunks),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )

        content = response.text
        created_ms = int(time.time() * 1000)
        return JSONResponse(
            status_code=response.status_code or 200,
            content={
                "id": f"chatcmpl-mock-{created_ms}",
                "object": "chat.completion",
                "created": created_ms // 1000,
                "model": model,
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": content},
                        "finish_reason": "stop",
                    }
                ],
                "usage": {
                    "prompt_tokens": 10,
                    "completion_tokens": len(content),
                    "total_tokens": 10 + len(content),
                },
            },
        )

    return app


def _error_response(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"message": message, "type": "mock_error", "code": "mock_error"}},
    )


async def _stream_chunks(
    service: MockLLMService,
    session: StreamSession,
    request: Request,
    chunks: List[str],
) -> AsyncGenerator[str, None]:
    created_ms = int(time.time() * 1000)
    base = {
        "id": f"chatcmpl-mock-{created_ms}",
        "object": "chat.completion.chunk",
        "created": created_ms // 1000,
        "model": session.model,
    }
    try:
        for index, chunk in enumerate(chunks):
            if session.interrupted or await request.is_disconnected():
                logger.debug("mock_stream_stopped", extra={"session": session.session_id, "sent": index})
                return
            yield _sse({**base, "choices": [{"index": 0, "delta": {"content": chunk}, "finish_reason": None}]})
            if index < len(chunks) - 1:
                await asyncio.sleep(STREAM_CHUNK_INTERVAL)
        if session.interrupted or await request.is_disconnected():
            return
        yield _sse({**base, "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]})
        yield "data: [DONE]\n\n"
    finally:
        service._release_stream(session)
