"""Exception hierarchy for engine orchestration."""

from pathlib import Path
from typing import Optional, Sequence, Union

from .state import EngineKind


class RomoError(Exception):
    """Base class for all romod errors."""


class ResourceNotFoundError(RomoError):
    """No candidate location yielded a usable binary or model file."""

    def __init__(
        self,
        kind: EngineKind,
        resource: str,
        searched: Sequence[Union[str, Path]] = (),
    ):
        self.kind = kind
        self.resource = resource
        self.searched = [str(s) for s in searched]
        super().__init__(
            f"No {resource} found for {kind.value} engine "
            f"(searched {len(self.searched)} locations)"
        )


class AudioFormatError(RomoError):
    """Caller supplied audio that cannot be turned into a WAV container."""


class EmptyAudioError(AudioFormatError):
    """The normalized audio buffer has zero length."""


class InvalidContainerError(AudioFormatError):
    """A buffer failed WAV container validation."""


class EngineError(RomoError):
    """Base class for failures while talking to an engine."""


class NotInitializedError(EngineError):
    """An operation was attempted before the engine became ready."""

    def __init__(self, kind: EngineKind, operation: str):
        self.kind = kind
        self.operation = operation
        super().__init__(f"{kind.value} engine not initialized for {operation}")


class EngineProcessError(EngineError):
    """A one-shot engine invocation failed."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ""):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(message)


class ServerStartupTimeoutError(EngineError):
    """The engine server never started accepting connections."""


class TransientServerError(EngineError):
    """The server answered with a retryable 'temporarily unavailable' status."""

    def __init__(self, status_code: int, attempt: int):
        self.status_code = status_code
        self.attempt = attempt
        super().__init__(
            f"Server temporarily unavailable ({status_code}) - attempt {attempt}"
        )


class RetriesExhaustedError(EngineError):
    """Every retry attempt failed; carries the last underlying cause."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"All {attempts} attempts failed. Last error: {last_error}")


class ServerResponseError(EngineError):
    """The server answered with a non-retryable error status."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Server request failed: {status_code} {body}")


class ResponseShapeError(EngineError):
    """A successful response did not match any known answer shape."""
