"""Application context owning the resolver and both engines."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Union

import httpx
from pydantic import BaseModel

from .config import AppConfig
from .content import ContentResult
from .llm_engine import ContextDocument, LanguageModelEngine
from .resolver import ResourceResolver
from .speech_engine import SpeechEngine
from .state import EngineKind, EngineState, StateObserver
from .supervisor import EngineStatus, EngineSupervisor
from .transcript import TranscriptResult

logger = logging.getLogger(__name__)


class InitResult(BaseModel):
    """Outcome of an initialize request."""

    ready: bool
    error: Optional[str] = None


class EngineService:
    """Stable call surface used by the IPC layer.

    Errors follow the per-operation policy: chunk transcription and
    content generation never raise, initialization reports failures in
    its result, everything else propagates.
    """

    def __init__(
        self, config: AppConfig, transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """Initialize the service.

        Args:
            config: Application configuration.
            transport: Optional httpx transport for the language-model client.
        """
        self.config = config
        self.resolver = ResourceResolver(config)
        self.speech = SpeechEngine(config, self.resolver)
        self.language_model = LanguageModelEngine(
            config, self.resolver, transport=transport
        )
        self._engines: Dict[EngineKind, EngineSupervisor] = {
            EngineKind.SPEECH: self.speech,
            EngineKind.LANGUAGE_MODEL: self.language_model,
        }

    def engine(self, kind: Union[EngineKind, str]) -> EngineSupervisor:
        return self._engines[EngineKind(kind)]

    def add_state_observer(self, observer: StateObserver) -> None:
        for engine in self._engines.values():
            engine.state_manager.add_observer(observer)

    def remove_state_observer(self, observer: StateObserver) -> None:
        for engine in self._engines.values():
            engine.state_manager.remove_observer(observer)

    async def initialize_engine(self, kind: Union[EngineKind, str]) -> InitResult:
        """Initialize one engine, reporting failure instead of raising."""
        engine = self.engine(kind)
        try:
            ready = await engine.initialize()
        except Exception as e:
            logger.error(f"Failed to initialize {engine.name} engine: {e}")
            return InitResult(ready=False, error=str(e))

        if ready:
            return InitResult(ready=True)
        if engine.state_manager.current_state == EngineState.INITIALIZING:
            return InitResult(ready=False, error="Initialization already in progress")
        return InitResult(ready=False, error=engine.state_manager.last_error)

    async def initialize_all(self) -> Dict[EngineKind, InitResult]:
        """Initialize both engines at startup.

        Failures are only logged; each engine can be initialized again on demand.
        """
        kinds = list(self._engines)
        results = await asyncio.gather(*(self.initialize_engine(k) for k in kinds))

        for kind, result in zip(kinds, results):
            if not result.ready:
                logger.warning(
                    f"{kind.value} engine unavailable at startup: {result.error}"
                )
        return dict(zip(kinds, results))

    async def transcribe_chunk(
        self, audio: Any, sample_rate: Optional[int] = None
    ) -> TranscriptResult:
        """Transcribe a live audio segment. Never raises."""
        try:
            return await self.speech.transcribe_chunk(audio, sample_rate)
        except Exception as e:
            logger.warning(f"Chunk transcription unavailable: {e}")
            return TranscriptResult.empty(error=str(e))

    async def transcribe_file(self, path: Union[str, Path]) -> TranscriptResult:
        return await self.speech.transcribe_file(path)

    async def refine_text(self, text: str) -> str:
        return await self.language_model.refine_text(text)

    async def answer_with_context(
        self,
        question: str,
        conversation_id: Optional[str] = None,
        context_documents: Sequence[ContextDocument] = (),
    ) -> str:
        return await self.language_model.answer_with_context(
            question, conversation_id, context_documents
        )

    async def generate_summary(
        self,
        context_documents: Sequence[ContextDocument],
        conversation_id: Optional[str] = None,
    ) -> str:
        return await self.language_model.generate_summary(
            context_documents, conversation_id
        )

    async def generate_content(self, request: str) -> ContentResult:
        return await self.language_model.generate_content(request)

    def clear_history(self, conversation_id: Optional[str] = None) -> None:
        self.language_model.clear_history(conversation_id)

    def get_status(self, kind: Union[EngineKind, str]) -> EngineStatus:
        return self.engine(kind).get_status()

    async def shutdown_engine(self, kind: Union[EngineKind, str]) -> None:
        await self.engine(kind).shutdown()

    async def shutdown_all(self) -> None:
        logger.info("Shutting down all engines...")
        results = await asyncio.gather(
            *(engine.shutdown() for engine in self._engines.values()),
            return_exceptions=True,
        )
        for engine, result in zip(self._engines.values(), results):
            if isinstance(result, Exception):
                logger.error(f"Error shutting down {engine.name} engine: {result}")
