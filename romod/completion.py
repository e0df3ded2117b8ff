"""Chat-completion requests against the local llama.cpp server."""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Literal, Optional, Sequence, Tuple

import httpx
from pydantic import BaseModel, ConfigDict

from .errors import (
    ResponseShapeError,
    RetriesExhaustedError,
    ServerResponseError,
    TransientServerError,
)

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

# "Temporarily unavailable": the server is up but still loading the model
RETRYABLE_STATUS = 503

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant running locally on the user's computer. "
    "Answer concisely and do not add commentary."
)


class ChatMessage(BaseModel):
    """One role-tagged message of a chat request."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str


class SamplingParams(BaseModel):
    """Per-use-case generation parameters."""

    model_config = ConfigDict(frozen=True)

    max_tokens: int = 500
    temperature: float = 0.1
    top_p: float = 0.5


# Refinement must not add content, so sampling is kept tight
REFINEMENT = SamplingParams(max_tokens=500, temperature=0.1, top_p=0.5)
AGENT = SamplingParams(max_tokens=800, temperature=0.7, top_p=0.9)
QUESTION = SamplingParams(max_tokens=400, temperature=0.3, top_p=0.8)
SUMMARY = SamplingParams(max_tokens=600, temperature=0.3, top_p=0.8)


def build_chat_request(
    messages: Sequence[ChatMessage], params: Optional[SamplingParams] = None
) -> Dict[str, Any]:
    """Build the JSON body for a chat-completions request."""
    params = params or REFINEMENT
    return {
        "model": "local",
        "messages": [message.model_dump() for message in messages],
        "max_tokens": params.max_tokens,
        "temperature": params.temperature,
        "top_p": params.top_p,
        "stream": False,
    }


def _first_choice(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    choices = data.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return None


def _message_content(data: Dict[str, Any]) -> Optional[str]:
    choice = _first_choice(data)
    if choice is not None and isinstance(choice.get("message"), dict):
        return choice["message"].get("content")
    return None


def _choice_text(data: Dict[str, Any]) -> Optional[str]:
    choice = _first_choice(data)
    return choice.get("text") if choice is not None else None


def _bare_text(data: Dict[str, Any]) -> Optional[str]:
    return data.get("text")


def _native_content(data: Dict[str, Any]) -> Optional[str]:
    # llama.cpp's own /completion shape
    return data.get("content")


EXTRACTION_STRATEGIES: Tuple[Tuple[str, Callable[[Dict[str, Any]], Optional[str]]], ...] = (
    ("choices[0].message.content", _message_content),
    ("choices[0].text", _choice_text),
    ("text", _bare_text),
    ("content", _native_content),
)


def extract_content(data: Any) -> str:
    """Pull the answer text out of a successful response body.

    Strategies are tried in order and the first one that finds a string wins.

    Raises:
        ResponseShapeError: If no strategy matches.
    """
    if not isinstance(data, dict):
        raise ResponseShapeError(f"Unexpected response type: {type(data).__name__}")

    for name, strategy in EXTRACTION_STRATEGIES:
        value = strategy(data)
        if isinstance(value, str):
            logger.debug(f"Extracted content via {name}")
            return value

    raise ResponseShapeError(f"Unrecognized response shape (keys: {sorted(data)})")


QUOTE_PAIRS = (('"', '"'), ("'", "'"), ("“", "”"))


def clean_content(text: str) -> str:
    """Trim whitespace and strip one layer of wrapping quotes."""
    text = text.strip()
    for opening, closing in QUOTE_PAIRS:
        if len(text) >= 2 and text.startswith(opening) and text.endswith(closing):
            return text[1:-1].strip()
    return text


def backoff_delay(attempt: int, base: float) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    return base * 2 ** (attempt - 1)


async def _backoff_sleep(delay: float) -> None:
    await asyncio.sleep(delay)


class CompletionClient:
    """HTTP transport to the server with bounded retry on transient failures."""

    def __init__(
        self,
        base_url: str,
        max_retries: int = 3,
        backoff_base: float = 2.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Server root, e.g. http://127.0.0.1:8080.
            max_retries: Total attempts for transient failures.
            backoff_base: Delay after the first failed attempt; doubles after each.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout, transport=transport
        )

    async def post_chat(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a chat-completions request and return the decoded body.

        503 responses and transport errors are retried with exponential
        backoff up to ``max_retries`` attempts in total.

        Raises:
            RetriesExhaustedError: If every attempt failed transiently.
            ServerResponseError: On any other non-success status.
            ResponseShapeError: If a success body is not JSON.
        """
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.post(CHAT_COMPLETIONS_PATH, json=payload)
            except httpx.TransportError as e:
                last_error = e
                logger.warning(
                    f"Request failed (attempt {attempt}/{self.max_retries}): {e!r}"
                )
            else:
                if response.status_code == RETRYABLE_STATUS:
                    last_error = TransientServerError(response.status_code, attempt)
                    logger.warning(
                        f"Server returned {RETRYABLE_STATUS} "
                        f"(attempt {attempt}/{self.max_retries})"
                    )
                elif not response.is_success:
                    raise ServerResponseError(response.status_code, response.text)
                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise ResponseShapeError(
                            f"Response body is not JSON: {response.text[:200]}"
                        ) from e

            if attempt < self.max_retries:
                delay = backoff_delay(attempt, self.backoff_base)
                logger.debug(f"Retrying in {delay:.1f}s")
                await _backoff_sleep(delay)

        raise RetriesExhaustedError(self.max_retries, last_error)

    async def complete(
        self, messages: List[ChatMessage], params: Optional[SamplingParams] = None
    ) -> str:
        """Send messages and return the cleaned answer text."""
        data = await self.post_chat(build_chat_request(messages, params))
        return clean_content(extract_content(data))

    async def aclose(self) -> None:
        await self._client.aclose()
