"""Tests for chat-completion requests and response handling."""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import pytest_asyncio

from romod.completion import (
    AGENT,
    CHAT_COMPLETIONS_PATH,
    REFINEMENT,
    ChatMessage,
    CompletionClient,
    backoff_delay,
    build_chat_request,
    clean_content,
    extract_content,
)
from romod.errors import (
    ResponseShapeError,
    RetriesExhaustedError,
    ServerResponseError,
    TransientServerError,
)


class FakeServer:
    """Scripted responses for httpx.MockTransport."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def chat_response(content: str) -> httpx.Response:
    return httpx.Response(
        200, json={"choices": [{"message": {"role": "assistant", "content": content}}]}
    )


@pytest.fixture
def no_sleep():
    with patch("romod.completion._backoff_sleep", new_callable=AsyncMock) as sleep:
        yield sleep


@pytest_asyncio.fixture
async def make_client():
    clients = []

    def factory(server: FakeServer, max_retries: int = 3) -> CompletionClient:
        client = CompletionClient(
            "http://127.0.0.1:8080",
            max_retries=max_retries,
            backoff_base=2.0,
            transport=httpx.MockTransport(server),
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        await client.aclose()


def test_build_chat_request():
    messages = [
        ChatMessage(role="system", content="Be brief."),
        ChatMessage(role="user", content="hello"),
    ]

    payload = build_chat_request(messages, AGENT)

    assert payload["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "hello"},
    ]
    assert payload["max_tokens"] == AGENT.max_tokens
    assert payload["temperature"] == AGENT.temperature
    assert payload["top_p"] == AGENT.top_p
    assert payload["stream"] is False


def test_build_chat_request_defaults_to_refinement():
    payload = build_chat_request([ChatMessage(role="user", content="x")])
    assert payload["temperature"] == REFINEMENT.temperature


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"choices": [{"message": {"content": "nested"}}]}, "nested"),
        ({"choices": [{"text": "flat"}]}, "flat"),
        ({"text": "bare"}, "bare"),
        ({"content": "native"}, "native"),
        # Earlier strategies win over later ones
        ({"choices": [{"message": {"content": "first"}, "text": "second"}], "text": "third"}, "first"),
        ({"choices": [], "text": "bare"}, "bare"),
    ],
)
def test_extract_content(body, expected):
    assert extract_content(body) == expected


@pytest.mark.parametrize("body", [{}, {"choices": [{"index": 0}]}, {"result": "x"}, ["x"]])
def test_extract_content_unknown_shape(body):
    with pytest.raises(ResponseShapeError):
        extract_content(body)


@pytest.mark.parametrize(
    "raw, cleaned",
    [
        ('"Hello, world."', "Hello, world."),
        ("'single'", "single"),
        ("“curly”", "curly"),
        ('  "padded"  ', "padded"),
        ('""nested""', '"nested"'),
        ('"unbalanced', '"unbalanced'),
        ("plain", "plain"),
        ('"', '"'),
    ],
)
def test_clean_content(raw, cleaned):
    assert clean_content(raw) == cleaned


def test_backoff_delay_strictly_increasing():
    delays = [backoff_delay(attempt, 2.0) for attempt in range(1, 6)]

    assert delays[0] == 2.0
    assert all(later > earlier for earlier, later in zip(delays, delays[1:]))


@pytest.mark.asyncio
async def test_post_chat_success(make_client, no_sleep):
    server = FakeServer(chat_response("hi"))
    client = make_client(server)

    data = await client.post_chat({"messages": []})

    assert data["choices"][0]["message"]["content"] == "hi"
    assert server.requests[0].url.path == CHAT_COMPLETIONS_PATH
    assert server.requests[0].method == "POST"
    no_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_post_chat_retries_503_then_exhausts(make_client, no_sleep):
    """Test the retry ceiling with strictly increasing backoff."""
    server = FakeServer(httpx.Response(503, text="loading model"))
    client = make_client(server)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        await client.post_chat({"messages": []})

    assert len(server.requests) == 3
    delays = [call.args[0] for call in no_sleep.await_args_list]
    assert delays == [2.0, 4.0]
    error = exc_info.value
    assert error.attempts == 3
    assert isinstance(error.last_error, TransientServerError)
    assert error.last_error.attempt == 3
    assert "All 3 attempts failed" in str(error)


@pytest.mark.asyncio
async def test_post_chat_recovers_after_503(make_client, no_sleep):
    server = FakeServer(httpx.Response(503), chat_response("ready now"))
    client = make_client(server)

    data = await client.post_chat({"messages": []})

    assert extract_content(data) == "ready now"
    assert len(server.requests) == 2
    no_sleep.assert_awaited_once_with(2.0)


@pytest.mark.asyncio
async def test_post_chat_other_status_fails_immediately(make_client, no_sleep):
    server = FakeServer(httpx.Response(500, text="internal error"))
    client = make_client(server)

    with pytest.raises(ServerResponseError) as exc_info:
        await client.post_chat({"messages": []})

    assert exc_info.value.status_code == 500
    assert exc_info.value.body == "internal error"
    assert len(server.requests) == 1
    no_sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_post_chat_transport_errors_are_retried(make_client, no_sleep):
    server = FakeServer(httpx.ConnectError("connection refused"))
    client = make_client(server, max_retries=2)

    with pytest.raises(RetriesExhaustedError) as exc_info:
        await client.post_chat({"messages": []})

    assert len(server.requests) == 2
    assert isinstance(exc_info.value.last_error, httpx.ConnectError)


@pytest.mark.asyncio
async def test_post_chat_non_json_body(make_client, no_sleep):
    server = FakeServer(httpx.Response(200, text="<html>not json</html>"))
    client = make_client(server)

    with pytest.raises(ResponseShapeError, match="not JSON"):
        await client.post_chat({"messages": []})


@pytest.mark.asyncio
async def test_complete_extracts_and_cleans(make_client, no_sleep):
    server = FakeServer(chat_response('  "Corrected sentence."  '))
    client = make_client(server)

    text = await client.complete([ChatMessage(role="user", content="corrected sentence")])

    assert text == "Corrected sentence."
    sent = json.loads(server.requests[0].content)
    assert sent["messages"][-1]["content"] == "corrected sentence"
