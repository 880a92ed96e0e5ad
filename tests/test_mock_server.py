import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List

import httpx
import pytest
from fastapi.testclient import TestClient

from termharness.errors import HarnessError
from termharness.mock_server import CHAT_COMPLETIONS, MockLLMService, MockResponse, classify_request


def chat_body(system: str = "You are Ei, a caring companion.", **extra: Any) -> Dict[str, Any]:
    body = {
        "model": "test-model",
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": "ping"},
        ],
    }
    body.update(extra)
    return body


def sse_payloads(lines: List[str]) -> List[Any]:
    payloads = []
    for line in lines:
        if not line.startswith("data: "):
            continue
        data = line[len("data: "):]
        payloads.append(data if data == "[DONE]" else json.loads(data))
    return payloads


@pytest.fixture
def service() -> MockLLMService:
    return MockLLMService()


@pytest.fixture
def client(service: MockLLMService) -> TestClient:
    return TestClient(service.app)


@pytest.mark.parametrize(
    "messages,expected",
    [
        (None, "unknown"),
        ([], "unknown"),
        ([{"role": "user", "content": "hi"}], "unknown"),
        ([{"role": "system", "content": "You are Ei, an emotional companion"}], "response"),
        ([{"role": "system", "content": "Extract SYSTEM concepts"}], "system-concepts"),
        ([{"role": "system", "content": "Update human concepts"}], "human-concepts"),
        ([{"role": "system", "content": "Write a description for this persona"}], "description"),
        ([{"role": "system", "content": "Anything else"}], "response"),
    ],
)
def test_classify_request(messages: Any, expected: str) -> None:
    assert classify_request(messages) == expected


def test_health(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert isinstance(response.json()["timestamp"], int)


def test_default_completion_envelope(client: TestClient, service: MockLLMService) -> None:
    response = client.post(CHAT_COMPLETIONS, json=chat_body())
    assert response.status_code == 200
    data = response.json()
    content = "Hello! This is a test response from the mock LLM server."
    assert data["object"] == "chat.completion"
    assert data["id"].startswith("chatcmpl-mock-")
    assert data["model"] == "test-model"
    assert data["choices"][0]["message"] == {"role": "assistant", "content": content}
    assert data["choices"][0]["finish_reason"] == "stop"
    assert data["usage"] == {
        "prompt_tokens": 10,
        "completion_tokens": len(content),
        "total_tokens": 10 + len(content),
    }

    history = service.get_request_history()
    assert len(history) == 1
    assert history[0].endpoint == CHAT_COMPLETIONS
    assert history[0].method == "POST"
    assert history[0].request_type == "response"
    assert history[0].body["messages"][1]["content"] == "ping"


def test_built_in_defaults_by_type(client: TestClient) -> None:
    concepts = client.post(CHAT_COMPLETIONS, json=chat_body("Extract system concepts")).json()
    assert concepts["choices"][0]["message"]["content"] == "[]"

    description = client.post(CHAT_COMPLETIONS, json=chat_body("Describe this persona: description please")).json()
    parsed = json.loads(description["choices"][0]["message"]["content"])
    assert set(parsed) == {"short_description", "long_description"}


def test_resolution_priority(client: TestClient, service: MockLLMService) -> None:
    service.set_response_for_type("response", MockResponse(type="fixed", content="by type"))
    assert client.post(CHAT_COMPLETIONS, json=chat_body()).json()["choices"][0]["message"]["content"] == "by type"

    service.set_response(CHAT_COMPLETIONS, MockResponse(type="fixed", content="by endpoint"))
    assert client.post(CHAT_COMPLETIONS, json=chat_body()).json()["choices"][0]["message"]["content"] == "by endpoint"

    service.set_response_queue(["first", "second"])
    contents = [
        client.post(CHAT_COMPLETIONS, json=chat_body()).json()["choices"][0]["message"]["content"]
        for _ in range(3)
    ]
    assert contents == ["first", "second", "by endpoint"]

    service.clear_response_overrides()
    assert client.post(CHAT_COMPLETIONS, json=chat_body()).json()["choices"][0]["message"]["content"].startswith("Hello!")


def test_error_response(client: TestClient, service: MockLLMService) -> None:
    service.set_response(CHAT_COMPLETIONS, MockResponse(type="error", content="rate limited", status_code=429))
    response = client.post(CHAT_COMPLETIONS, json=chat_body(stream=True))
    assert response.status_code == 429
    assert response.json() == {"error": {"message": "rate limited", "type": "mock_error", "code": "mock_error"}}
    record = service.get_request_history()[0]
    assert record.error is True
    assert record.streaming is False


def test_invalid_json_is_rejected_and_recorded(client: TestClient, service: MockLLMService) -> None:
    response = client.post(CHAT_COMPLETIONS, content=b"{not json", headers={"content-type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"]["type"] == "mock_error"
    assert service.get_request_history()[0].error is True


def test_delay_precedence(service: MockLLMService) -> None:
    service.default_delay_ms = 5
    plain = MockResponse(type="fixed", content="x")
    assert service.resolve_delay_ms(plain, CHAT_COMPLETIONS) == 5
    service.set_delay(CHAT_COMPLETIONS, 20)
    assert service.resolve_delay_ms(plain, CHAT_COMPLETIONS) == 20
    assert service.resolve_delay_ms(MockResponse(type="fixed", content="x", delay_ms=0), CHAT_COMPLETIONS) == 0


def test_delay_is_applied(client: TestClient, service: MockLLMService) -> None:
    service.set_response(CHAT_COMPLETIONS, MockResponse(type="fixed", content="slow", delay_ms=200))
    started = time.time()
    client.post(CHAT_COMPLETIONS, json=chat_body())
    assert time.time() - started >= 0.2


def test_streaming_when_requested(client: TestClient, service: MockLLMService) -> None:
    service.set_response(CHAT_COMPLETIONS, MockResponse(type="fixed", content="pong"))
    with client.stream("POST", CHAT_COMPLETIONS, json=chat_body(stream=True)) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        payloads = sse_payloads(list(response.iter_lines()))

    assert payloads[-1] == "[DONE]"
    assert payloads[0]["object"] == "chat.completion.chunk"
    assert payloads[0]["choices"][0]["delta"] == {"content": "pong"}
    assert payloads[-2]["choices"][0]["finish_reason"] == "stop"
    assert len({p["id"] for p in payloads[:-1]}) == 1
    assert service.get_request_history()[0].streaming is True
    assert service.get_active_stream_count() == 0


def test_enable_streaming_installs_chunks(client: TestClient, service: MockLLMService) -> None:
    service.enable_streaming(CHAT_COMPLETIONS, ["Hel", "lo", "!"])
    with client.stream("POST", CHAT_COMPLETIONS, json=chat_body()) as response:
        payloads = sse_payloads(list(response.iter_lines()))
    text = "".join(p["choices"][0]["delta"].get("content", "") for p in payloads[:-1])
    assert text == "Hello!"


def test_request_ledger_routes(client: TestClient, service: MockLLMService) -> None:
    client.post(CHAT_COMPLETIONS, json=chat_body(), headers={"x-test": "1"})
    listed = client.get("/test/requests").json()
    assert len(listed) == 1
    assert listed[0]["requestType"] == "response"
    assert listed[0]["headers"]["x-test"] == "1"

    assert client.delete("/test/requests").json() == {"cleared": True}
    assert client.get("/test/requests").json() == []
    assert service.total_requests == 1


def test_cors_preflight(client: TestClient) -> None:
    response = client.options(
        CHAT_COMPLETIONS,
        headers={"Origin": "http://example.com", "Access-Control-Request-Method": "POST"},
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] in ("*", "http://example.com")


def test_mock_response_validation() -> None:
    with pytest.raises(ValueError):
        MockResponse(type="bogus", content="x")
    response = MockResponse.from_dict({"type": "streaming", "content": ["a", "b"], "delayMs": 15})
    assert response.chunks == ["a", "b"]
    assert response.text == "ab"
    assert response.delay_ms == 15


# ----------------------------------------------------------------------
# Against the real uvicorn-served listener
# ----------------------------------------------------------------------


def test_start_reports_ephemeral_port_and_stop_resets(mock_service: MockLLMService) -> None:
    assert mock_service.running
    assert mock_service.port and mock_service.port > 0
    assert mock_service.base_url == f"http://127.0.0.1:{mock_service.port}/v1"
    with pytest.raises(HarnessError, match="already running"):
        mock_service.start()

    mock_service.set_response(CHAT_COMPLETIONS, MockResponse(type="fixed", content="x"))
    httpx.post(f"{mock_service.base_url}/chat/completions", json=chat_body(), timeout=5.0)
    assert len(mock_service.get_request_history()) == 1

    mock_service.stop()
    assert not mock_service.running
    assert mock_service.get_request_history() == []
    assert mock_service.resolve_response("response", CHAT_COMPLETIONS).text.startswith("Hello!")
    with pytest.raises(HarnessError):
        mock_service.url


def test_concurrent_requests_are_all_recorded(mock_service: MockLLMService) -> None:
    mock_service.set_delay(CHAT_COMPLETIONS, 50)
    url = f"{mock_service.base_url}/chat/completions"

    def send(i: int) -> int:
        return httpx.post(url, json=chat_body(), timeout=10.0).status_code

    with ThreadPoolExecutor(max_workers=10) as pool:
        statuses = list(pool.map(send, range(10)))

    assert statuses == [200] * 10
    assert len(mock_service.get_request_history()) == 10
    assert mock_service.total_requests == 10


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def test_client_disconnect_stops_stream(mock_service: MockLLMService) -> None:
    chunks = [f"c{i} " for i in range(300)]
    mock_service.enable_streaming(CHAT_COMPLETIONS, chunks)
    received: List[str] = []

    with httpx.Client(timeout=10.0) as client:
        with client.stream("POST", f"{mock_service.base_url}/chat/completions", json=chat_body()) as response:
            for line in response.iter_lines():
                if line.startswith("data: "):
                    received.append(line)
                if len(received) >= 3:
                    break

    assert _wait_for(lambda: mock_service.get_active_stream_count() == 0, timeout=5.0)
    assert len(received) < len(chunks)


def test_interrupt_all_streams_ends_open_streams(mock_service: MockLLMService) -> None:
    mock_service.enable_streaming(CHAT_COMPLETIONS, [f"c{i}" for i in range(300)])
    lines: List[str] = []
    first = threading.Event()

    def consume() -> None:
        with httpx.Client(timeout=10.0) as client:
            with client.stream("POST", f"{mock_service.base_url}/chat/completions", json=chat_body()) as response:
                for line in response.iter_lines():
                    if line.startswith("data: "):
                        lines.append(line)
                        first.set()

    reader = threading.Thread(target=consume, daemon=True)
    reader.start()
    assert first.wait(5.0)
    assert mock_service.get_active_stream_count() == 1

    mock_service.interrupt_all_streams()
    reader.join(5.0)

    assert not reader.is_alive()
    assert mock_service.get_active_stream_count() == 0
    assert "data: [DONE]" not in lines
    assert len(lines) < 300
