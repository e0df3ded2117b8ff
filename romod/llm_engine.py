"""Language-model engine run as a persistent llama.cpp HTTP server."""

import asyncio
import logging
from collections import deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import httpx

from .completion import (
    AGENT,
    DEFAULT_SYSTEM_PROMPT,
    QUESTION,
    REFINEMENT,
    SUMMARY,
    ChatMessage,
    CompletionClient,
    SamplingParams,
)
from .config import AppConfig
from .content import ContentResult, classify_content_type, instruction_for
from .errors import EngineProcessError, ResponseShapeError
from .process import terminate_process, wait_for_port
from .resolver import ResourceResolver
from .state import EngineKind
from .supervisor import EngineSupervisor

logger = logging.getLogger(__name__)

REFINE_SYSTEM_PROMPT = (
    "You correct dictated text. Fix grammar, punctuation and capitalization. "
    "Do not add, remove or reword content. Reply with the corrected text only."
)

QUESTION_SYSTEM_PROMPT = (
    "You answer questions about a meeting using only the transcript below. "
    "If the transcript does not contain the answer, say so."
)

SUMMARY_SYSTEM_PROMPT = (
    "You summarize meetings. Using the transcript below, list the main topics, "
    "decisions and action items."
)

SUMMARY_REQUEST = "Summarize this meeting."

SELF_TEST_PROMPT = "Reply with the single word: ready"
SELF_TEST_PARAMS = SamplingParams(max_tokens=16, temperature=0.0, top_p=1.0)

ContextDocument = Union[str, Mapping[str, Any]]


def format_context(documents: Sequence[ContextDocument]) -> str:
    """Render context documents (plain strings or transcript segments) as text."""
    lines = []
    for document in documents:
        if isinstance(document, Mapping):
            text = str(document.get("text") or "").strip()
            speaker = document.get("speaker_name") or document.get("speaker")
            if text:
                lines.append(f"{speaker}: {text}" if speaker else text)
        elif document:
            lines.append(str(document).strip())
    return "\n".join(lines)


class LanguageModelEngine(EngineSupervisor):
    """Supervises llama-server and issues completions against it."""

    kind = EngineKind.LANGUAGE_MODEL

    def __init__(
        self,
        config: AppConfig,
        resolver: ResourceResolver,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the engine.

        Args:
            config: Application configuration.
            resolver: Resolver used to locate the binary and model.
            transport: Optional httpx transport for the completion client.
        """
        super().__init__(config, resolver)
        self.llama_config = config.llama
        self._transport = transport

        self._server_process: Optional[asyncio.subprocess.Process] = None
        self._log_tasks: List[asyncio.Task] = []
        self._client: Optional[CompletionClient] = None
        self._histories: Dict[str, Deque[Tuple[str, str]]] = {}

    def _build_server_args(self) -> List[str]:
        cfg = self.llama_config
        return [
            "-m",
            str(self.descriptor.model_path),
            "--host",
            cfg.host,
            "--port",
            str(cfg.port),
            "--ctx-size",
            str(cfg.ctx_size),
            "--threads",
            str(cfg.threads),
            "--n-gpu-layers",
            str(cfg.gpu_layers),
            "--repeat-penalty",
            str(cfg.repeat_penalty),
            "--temp",
            str(cfg.temperature),
        ]

    async def _setup(self) -> None:
        cfg = self.llama_config
        binary = self.descriptor.binary_path
        args = self._build_server_args()
        logger.info(f"Starting server: {binary} {' '.join(args)}")

        try:
            self._server_process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise EngineProcessError(f"Failed to spawn {binary}: {e}") from e

        process = self._server_process
        self._log_tasks = [
            asyncio.create_task(self._drain_output(stream, name))
            for stream, name in ((process.stdout, "stdout"), (process.stderr, "stderr"))
            if stream is not None
        ]

        attempts = await wait_for_port(
            cfg.host,
            cfg.port,
            attempts=cfg.wait_attempts,
            connect_timeout=cfg.connect_timeout_s,
            interval=cfg.wait_interval_s,
            process=process,
        )
        logger.info(
            f"Server (PID {process.pid}) listening after {attempts} attempt(s), "
            f"warming up for {cfg.warmup_s}s"
        )
        if cfg.warmup_s > 0:
            await asyncio.sleep(cfg.warmup_s)

        self._client = CompletionClient(
            cfg.base_url,
            max_retries=cfg.max_retries,
            backoff_base=cfg.backoff_base_s,
            timeout=cfg.request_timeout_s,
            transport=self._transport,
        )

    async def _drain_output(self, stream: asyncio.StreamReader, name: str) -> None:
        """Forward server output to the log so its pipe never fills up."""
        try:
            async for raw_line in stream:
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.debug(f"llama-server {name}: {line}")
        except Exception as e:
            logger.debug(f"Stopped reading llama-server {name}: {e}")

    async def _self_test(self) -> None:
        text = await self._send(
            [
                ChatMessage(role="system", content=DEFAULT_SYSTEM_PROMPT),
                ChatMessage(role="user", content=SELF_TEST_PROMPT),
            ],
            SELF_TEST_PARAMS,
        )
        if not text:
            raise ResponseShapeError("Self-test completion returned no text")
        logger.debug(f"Self-test completion: {text[:50]}")

    async def _teardown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

        process = self._server_process
        self._server_process = None
        await terminate_process(process, timeout=self.llama_config.shutdown_timeout_s)

        for task in self._log_tasks:
            task.cancel()
        await asyncio.gather(*self._log_tasks, return_exceptions=True)
        self._log_tasks = []

        self._histories.clear()

    async def _send(
        self, messages: List[ChatMessage], params: Optional[SamplingParams]
    ) -> str:
        if self._client is None:
            raise EngineProcessError("Completion client is not open")
        return await self._client.complete(messages, params)

    def _with_history(
        self, messages: List[ChatMessage], conversation_id: Optional[str]
    ) -> List[ChatMessage]:
        """Insert prior exchanges after the leading system messages."""
        exchanges = self._histories.get(conversation_id) if conversation_id else None
        if not exchanges:
            return messages

        split = 0
        while split < len(messages) and messages[split].role == "system":
            split += 1

        turns: List[ChatMessage] = []
        for prompt, response in exchanges:
            turns.append(ChatMessage(role="user", content=prompt))
            turns.append(ChatMessage(role="assistant", content=response))

        return messages[:split] + turns + messages[split:]

    def _remember(self, conversation_id: str, prompt: str, response: str) -> None:
        exchanges = self._histories.get(conversation_id)
        if exchanges is None:
            exchanges = deque(maxlen=self.llama_config.history_limit)
            self._histories[conversation_id] = exchanges
        exchanges.append((prompt, response))

    async def complete(
        self,
        prompt_or_messages: Union[str, Sequence[ChatMessage]],
        params: Optional[SamplingParams] = None,
        conversation_id: Optional[str] = None,
    ) -> str:
        """Run one completion.

        Args:
            prompt_or_messages: A bare prompt (sent with the default system
                instruction) or a full message list.
            params: Sampling parameters; refinement defaults when omitted.
            conversation_id: If given, prior exchanges for this id are sent
                as context and this exchange is remembered afterwards.

        Returns:
            The extracted and cleaned answer text.

        Raises:
            NotInitializedError: If the engine is not ready.
            RetriesExhaustedError: If the server stayed unavailable.
            ServerResponseError: On a non-retryable error status.
            ResponseShapeError: If the answer could not be extracted.
        """
        self.ensure_initialized("completion")

        if isinstance(prompt_or_messages, str):
            messages = [
                ChatMessage(role="system", content=DEFAULT_SYSTEM_PROMPT),
                ChatMessage(role="user", content=prompt_or_messages),
            ]
        else:
            messages = list(prompt_or_messages)

        user_turns = [m.content for m in messages if m.role == "user"]
        prompt = user_turns[-1] if user_turns else ""

        response = await self._send(self._with_history(messages, conversation_id), params)

        if conversation_id:
            self._remember(conversation_id, prompt, response)
        return response

    async def refine_text(self, text: str) -> str:
        """Correct grammar and punctuation of dictated text.

        Returns an empty string for blank input without contacting the server.
        """
        if not text or not text.strip():
            return ""

        self.ensure_initialized("refinement")
        logger.info(f"Refining transcript ({len(text)} chars)")
        return await self.complete(
            [
                ChatMessage(role="system", content=REFINE_SYSTEM_PROMPT),
                ChatMessage(role="user", content=text.strip()),
            ],
            REFINEMENT,
        )

    async def answer_with_context(
        self,
        question: str,
        conversation_id: Optional[str] = None,
        context_documents: Sequence[ContextDocument] = (),
    ) -> str:
        """Answer a question about the given documents, remembering the exchange."""
        context = format_context(context_documents)
        system = QUESTION_SYSTEM_PROMPT
        if context:
            system = f"{system}\n\nTranscript:\n{context}"

        return await self.complete(
            [
                ChatMessage(role="system", content=system),
                ChatMessage(role="user", content=question),
            ],
            QUESTION,
            conversation_id=conversation_id,
        )

    async def generate_summary(
        self,
        context_documents: Sequence[ContextDocument],
        conversation_id: Optional[str] = None,
    ) -> str:
        """Summarize the given documents. Returns "" when there is nothing to summarize."""
        context = format_context(context_documents)
        if not context:
            return ""

        return await self.complete(
            [
                ChatMessage(
                    role="system", content=f"{SUMMARY_SYSTEM_PROMPT}\n\nTranscript:\n{context}"
                ),
                ChatMessage(role="user", content=SUMMARY_REQUEST),
            ],
            SUMMARY,
            conversation_id=conversation_id,
        )

    async def generate_content(self, request: str) -> ContentResult:
        """Generate content for a free-form request. Never raises.

        Any failure produces a failed ContentResult whose fallback content
        is the original request.
        """
        try:
            if not isinstance(request, str) or not request.strip():
                raise ValueError("Content request is empty")

            content_type = classify_content_type(request)
            logger.info(f"Generating {content_type.value} content")

            generated = await self.complete(
                [
                    ChatMessage(role="system", content=instruction_for(content_type)),
                    ChatMessage(role="user", content=request.strip()),
                ],
                AGENT,
            )
            if not generated:
                raise ResponseShapeError("Model returned no content")

            return ContentResult.ok(content_type, generated)

        except Exception as e:
            logger.error(f"Content generation failed: {e}")
            fallback = "" if request is None else str(request)
            return ContentResult.failure(str(e), fallback)

    def clear_history(self, conversation_id: Optional[str] = None) -> None:
        """Forget one conversation, or all of them when no id is given."""
        if conversation_id is None:
            self._histories.clear()
            logger.info("Cleared all conversation history")
        else:
            self._histories.pop(conversation_id, None)
            logger.info(f"Cleared conversation history for {conversation_id}")

    def history(self, conversation_id: str) -> List[Tuple[str, str]]:
        return list(self._histories.get(conversation_id, ()))
