"""Shared lifecycle template for the managed engines."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from .config import AppConfig
from .errors import NotInitializedError
from .resolver import ResourceResolver
from .state import EngineKind, EngineState, EngineStateManager

logger = logging.getLogger(__name__)


@dataclass
class EngineDescriptor:
    """Resolved resources and readiness of one engine."""

    kind: EngineKind
    binary_path: Optional[str] = None
    model_path: Optional[Path] = None
    ready: bool = False

    def clear(self) -> None:
        self.binary_path = None
        self.model_path = None
        self.ready = False


class EngineStatus(BaseModel):
    """Status snapshot returned to collaborators."""

    engine: EngineKind
    state: EngineState
    initialized: bool
    ready: bool
    binary_path: Optional[str] = None
    model_path: Optional[str] = None
    last_error: Optional[str] = None
    failed_step: Optional[str] = None
    streaming: Optional[bool] = None


class EngineSupervisor(ABC):
    """Initialize / status / shutdown template shared by both engines.

    Subclasses set ``kind`` and implement the hooks:
    - ``_setup``: engine-specific work after resources are resolved
      (e.g. start a server and wait for it)
    - ``_self_test``: verify the engine actually works
    - ``_teardown``: release engine-specific resources (child processes)
    """

    kind: EngineKind

    def __init__(self, config: AppConfig, resolver: ResourceResolver):
        """Initialize the supervisor.

        Args:
            config: Application configuration.
            resolver: Resolver used to locate the binary and model.
        """
        self.config = config
        self.resolver = resolver
        self.state_manager = EngineStateManager(self.kind)
        self.descriptor = EngineDescriptor(kind=self.kind)
        self.failed_step: Optional[str] = None

        # Guards the check-and-set of lifecycle transitions
        self._transition_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return self.kind.value

    @property
    def is_ready(self) -> bool:
        return (
            self.descriptor.ready
            and self.state_manager.current_state == EngineState.READY
        )

    async def initialize(self) -> bool:
        """Resolve resources, run setup and self-test.

        Returns the current readiness without doing anything if the engine
        is already ready or another initialization is in progress.

        Returns:
            True once the engine is ready.

        Raises:
            Exception: The originating error of the failing step, with a
                note naming the step. The engine is left FAILED, never
                half-ready.
        """
        async with self._transition_lock:
            state = self.state_manager.current_state
            if state in (EngineState.READY, EngineState.INITIALIZING):
                logger.debug(f"{self.name} engine already {state.value}")
                return self.is_ready
            if state == EngineState.SHUTTING_DOWN:
                logger.warning(f"Cannot initialize {self.name} engine while shutting down")
                return False

            self.state_manager.set_state(EngineState.INITIALIZING)
            self.failed_step = None

        logger.info(f"Initializing {self.name} engine...")
        step = "binary"
        try:
            self.descriptor.binary_path = await self.resolver.resolve_binary(self.kind)

            step = "model"
            self.descriptor.model_path = await self.resolver.resolve_model(self.kind)

            step = "setup"
            await self._setup()

            step = "self_test"
            await self._self_test()

        except asyncio.CancelledError:
            await self._discard_partial_state()
            self.state_manager.set_state(EngineState.UNINITIALIZED)
            raise

        except Exception as e:
            self.failed_step = step
            logger.error(f"Failed to initialize {self.name} engine during {step}: {e}")
            await self._discard_partial_state()
            self.state_manager.set_error(f"{step}: {e}")
            e.add_note(f"{self.name} engine initialization failed during {step}")
            raise

        self.descriptor.ready = True
        self.state_manager.set_state(EngineState.READY)
        logger.info(f"{self.name} engine initialized successfully")
        return True

    async def _discard_partial_state(self) -> None:
        try:
            await self._teardown()
        except Exception:
            logger.exception(f"Error discarding partial {self.name} engine state")
        finally:
            self.descriptor.clear()

    async def shutdown(self) -> None:
        """Tear down the engine.

        Safe to call when never initialized or already shut down.
        """
        async with self._transition_lock:
            state = self.state_manager.current_state
            if state in (EngineState.UNINITIALIZED, EngineState.SHUTTING_DOWN):
                logger.debug(f"{self.name} engine not running, nothing to shut down")
                return
            if state == EngineState.INITIALIZING:
                logger.warning(f"Cannot shut down {self.name} engine during initialization")
                return

            self.state_manager.set_state(EngineState.SHUTTING_DOWN)

        logger.info(f"Shutting down {self.name} engine...")
        try:
            await self._teardown()
        except Exception:
            logger.exception(f"Error during {self.name} engine teardown")
        finally:
            self.descriptor.clear()
            self.failed_step = None
            self.state_manager.set_state(EngineState.UNINITIALIZED)

        logger.info(f"{self.name} engine shutdown complete")

    def ensure_initialized(self, operation: str) -> None:
        """Fail immediately if the engine is not ready.

        Raises:
            NotInitializedError: If readiness is false.
        """
        if not self.is_ready:
            raise NotInitializedError(self.kind, operation)

    def get_status(self) -> EngineStatus:
        """Snapshot of the engine's lifecycle and resolved resources."""
        state, last_error = self.state_manager.get_status()
        model_path = self.descriptor.model_path
        return EngineStatus(
            engine=self.kind,
            state=state,
            initialized=self.is_ready,
            ready=self.is_ready
            and self.descriptor.binary_path is not None
            and model_path is not None,
            binary_path=self.descriptor.binary_path,
            model_path=str(model_path) if model_path else None,
            last_error=last_error,
            failed_step=self.failed_step,
        )

    async def _setup(self) -> None:
        """Engine-specific setup after resources are resolved."""

    @abstractmethod
    async def _self_test(self) -> None:
        """Verify the engine works; raise on failure."""

    async def _teardown(self) -> None:
        """Release engine-specific resources."""
