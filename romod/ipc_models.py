"""IPC command and response models for romod daemon."""

import json
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, RootModel

from .content import ContentResult
from .state import EngineKind, EngineState
from .supervisor import EngineStatus
from .transcript import TranscriptResult

ContextDocumentModel = Union[str, Dict[str, Any]]


class InitializeEngineCommand(BaseModel):
    """Command to initialize one engine."""

    command: Literal["initialize_engine"] = "initialize_engine"
    engine: EngineKind


class TranscribeChunkCommand(BaseModel):
    """Command to transcribe a live audio segment."""

    command: Literal["transcribe_chunk"] = "transcribe_chunk"
    # Hex-encoded 16-bit mono PCM, or a hex-encoded WAV file
    audio: str
    sample_rate: Optional[int] = Field(default=None, gt=0)


class TranscribeFileCommand(BaseModel):
    """Command to transcribe an audio file on disk."""

    command: Literal["transcribe_file"] = "transcribe_file"
    path: Path


class RefineTextCommand(BaseModel):
    """Command to correct grammar and punctuation of a transcript."""

    command: Literal["refine_text"] = "refine_text"
    text: str


class AnswerWithContextCommand(BaseModel):
    """Command to answer a question about a set of documents."""

    command: Literal["answer_with_context"] = "answer_with_context"
    question: str
    conversation_id: Optional[str] = None
    context_documents: List[ContextDocumentModel] = Field(default_factory=list)


class GenerateSummaryCommand(BaseModel):
    """Command to summarize a set of documents."""

    command: Literal["generate_summary"] = "generate_summary"
    conversation_id: Optional[str] = None
    context_documents: List[ContextDocumentModel] = Field(default_factory=list)


class GenerateContentCommand(BaseModel):
    """Command to generate content from a free-form request."""

    command: Literal["generate_content"] = "generate_content"
    request: str


class ClearHistoryCommand(BaseModel):
    """Command to forget one conversation, or all of them."""

    command: Literal["clear_history"] = "clear_history"
    conversation_id: Optional[str] = None


class GetStatusCommand(BaseModel):
    """Command to get engine status. No engine means both."""

    command: Literal["get_status"] = "get_status"
    engine: Optional[EngineKind] = None


class ShutdownEngineCommand(BaseModel):
    """Command to shut down one engine."""

    command: Literal["shutdown_engine"] = "shutdown_engine"
    engine: EngineKind


class SubscribeCommand(BaseModel):
    """Command to subscribe to engine state change events."""

    command: Literal["subscribe"] = "subscribe"


class ShutdownCommand(BaseModel):
    """Command to shut down the daemon."""

    command: Literal["shutdown"] = "shutdown"


# Use discriminated union for command parsing
DaemonCommand = Annotated[
    Union[
        InitializeEngineCommand,
        TranscribeChunkCommand,
        TranscribeFileCommand,
        RefineTextCommand,
        AnswerWithContextCommand,
        GenerateSummaryCommand,
        GenerateContentCommand,
        ClearHistoryCommand,
        GetStatusCommand,
        ShutdownEngineCommand,
        SubscribeCommand,
        ShutdownCommand,
    ],
    Field(discriminator="command"),
]


class CommandWrapper(RootModel[DaemonCommand]):
    """Wrapper model for parsing incoming commands."""

    root: DaemonCommand

    def __getattr__(self, name: str):
        """Delegate attribute access to the root command."""
        try:
            return super().__getattr__(name)
        except AttributeError:
            return getattr(self.root, name)


class AckResponse(BaseModel):
    """Simple acknowledgment response."""

    response_type: Literal["ack"] = "ack"


class ErrorResponse(BaseModel):
    """Response indicating an error."""

    response_type: Literal["error"] = "error"
    message: str


class InitResponse(BaseModel):
    """Response to initialize_engine."""

    response_type: Literal["init"] = "init"
    engine: EngineKind
    ready: bool
    error: Optional[str] = None


class TranscriptResponse(BaseModel):
    """Response carrying a transcript."""

    response_type: Literal["transcript"] = "transcript"
    transcript: TranscriptResult


class TextResponse(BaseModel):
    """Response carrying generated text."""

    response_type: Literal["text"] = "text"
    text: str


class ContentResponse(BaseModel):
    """Response to generate_content."""

    response_type: Literal["content"] = "content"
    content: ContentResult


class StatusResponse(BaseModel):
    """Response containing engine status."""

    response_type: Literal["status"] = "status"
    engines: List[EngineStatus]


class StateNotification(BaseModel):
    """Notification broadcast when an engine's state changes."""

    response_type: Literal["state_change"] = "state_change"
    engine: EngineKind
    state: EngineState
    last_error: Optional[str] = None


# Use discriminated union for response serialization
DaemonResponse = Annotated[
    Union[
        AckResponse,
        ErrorResponse,
        InitResponse,
        TranscriptResponse,
        TextResponse,
        ContentResponse,
        StatusResponse,
        StateNotification,
    ],
    Field(discriminator="response_type"),
]


class ResponseWrapper(RootModel[DaemonResponse]):
    """Wrapper model for serializing outgoing responses."""

    root: DaemonResponse

    def __getattr__(self, name: str):
        """Delegate attribute access to the root response."""
        try:
            return super().__getattr__(name)
        except AttributeError:
            return getattr(self.root, name)

    def model_dump_json(self, **kwargs) -> str:
        """Override to unwrap the response for serialization."""
        return self.root.model_dump_json(**kwargs)

    @classmethod
    def model_validate_json(cls, json_data: Union[str, bytes], **kwargs):
        """Parse a response line, rejecting non-JSON and unknown types early."""
        try:
            data = json.loads(json_data)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON: {e}") from e

        if not isinstance(data, dict) or not data.get("response_type"):
            raise ValueError("Missing response_type field")

        return cls.model_validate(data, **kwargs)
