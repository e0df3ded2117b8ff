"""Locates engine binaries and model files across install layouts."""

import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import AppConfig
from .errors import ResourceNotFoundError
from .process import probe_command
from .state import EngineKind

logger = logging.getLogger(__name__)

# Checkout / resource directory name per engine
ENGINE_DIRS: Dict[EngineKind, str] = {
    EngineKind.SPEECH: "whisper.cpp",
    EngineKind.LANGUAGE_MODEL: "llama.cpp",
}

# Relative to the packaged resources directory
PACKAGED_BINARIES: Dict[EngineKind, Tuple[str, ...]] = {
    EngineKind.SPEECH: (
        "whisper.cpp/build/bin/whisper-cli",
        "whisper.cpp/build/bin/main",
    ),
    EngineKind.LANGUAGE_MODEL: ("llama.cpp/build/bin/llama-server",),
}

# Relative to the development tree
DEV_BINARIES: Dict[EngineKind, Tuple[str, ...]] = {
    EngineKind.SPEECH: (
        "whisper.cpp/build/bin/whisper-cli",
        "whisper.cpp/build/bin/main",
        "whisper.cpp/main",
    ),
    EngineKind.LANGUAGE_MODEL: (
        "llama.cpp/build/bin/llama-server",
        "llama.cpp/build/bin/server",
        "llama.cpp/server",
    ),
}

SYSTEM_BINARIES: Dict[EngineKind, Tuple[str, ...]] = {
    EngineKind.SPEECH: ("/usr/local/bin/whisper-cli", "/opt/homebrew/bin/whisper-cli"),
    EngineKind.LANGUAGE_MODEL: (
        "/usr/local/bin/llama-server",
        "/opt/homebrew/bin/llama-server",
    ),
}

# Looked up on PATH
COMMAND_NAMES: Dict[EngineKind, Tuple[str, ...]] = {
    EngineKind.SPEECH: ("whisper-cli",),
    EngineKind.LANGUAGE_MODEL: ("llama-server",),
}

SYSTEM_MODEL_ROOTS = (Path("/opt/homebrew/share"), Path("/usr/local/share"))


def is_bare_command(candidate: str) -> bool:
    """True for names meant for PATH lookup rather than filesystem paths."""
    return "/" not in candidate and os.sep not in candidate


def is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


class ResourceResolver:
    """Resolves the binary and model file for each engine."""

    def __init__(self, config: AppConfig):
        """Initialize the resolver.

        Args:
            config: Application configuration.
        """
        self.resolver_config = config.resolver
        self._model_names: Dict[EngineKind, List[str]] = {
            EngineKind.SPEECH: list(config.whisper.preferred_models),
            EngineKind.LANGUAGE_MODEL: list(config.llama.preferred_models),
        }

    def _resources_path(self) -> Optional[Path]:
        if not self.resolver_config.is_packaged:
            return None
        if self.resolver_config.resources_path is None:
            logger.warning("Packaged mode enabled but no resources_path configured")
        return self.resolver_config.resources_path

    def binary_candidates(self, kind: EngineKind) -> List[str]:
        """Ordered binary candidates for an engine."""
        dev_root = self.resolver_config.computed_dev_root
        candidates: List[str] = []

        resources = self._resources_path()
        if resources is not None:
            candidates.extend(str(resources / rel) for rel in PACKAGED_BINARIES[kind])

        candidates.extend(str(dev_root / rel) for rel in DEV_BINARIES[kind])
        candidates.extend(SYSTEM_BINARIES[kind])
        candidates.extend(COMMAND_NAMES[kind])
        return candidates

    def model_directories(self, kind: EngineKind) -> List[Path]:
        """Ordered model directories for an engine."""
        engine_dir = ENGINE_DIRS[kind]
        directories: List[Path] = []

        resources = self._resources_path()
        if resources is not None:
            directories.append(resources / engine_dir / "models")

        directories.append(self.resolver_config.computed_dev_root / engine_dir / "models")
        directories.append(self.resolver_config.computed_data_dir / "models")
        directories.extend(root / engine_dir / "models" for root in SYSTEM_MODEL_ROOTS)
        return directories

    def model_names(self, kind: EngineKind) -> List[str]:
        return list(self._model_names[kind])

    async def resolve_binary(self, kind: EngineKind) -> str:
        """Find the first usable binary for an engine.

        Raises:
            ResourceNotFoundError: If no candidate resolves.
        """
        candidates = self.binary_candidates(kind)

        for candidate in candidates:
            if is_bare_command(candidate):
                found, error = await probe_command(
                    candidate, timeout=self.resolver_config.probe_timeout_s
                )
                if found:
                    logger.info(f"Found {kind.value} binary in PATH: {candidate}")
                    return candidate
                logger.debug(f"PATH probe failed: {error}")
                continue

            if is_executable_file(Path(candidate)):
                logger.info(f"Found {kind.value} binary at: {candidate}")
                return candidate

        raise ResourceNotFoundError(kind, "binary", candidates)

    async def resolve_model(self, kind: EngineKind) -> Path:
        """Find the first existing model file for an engine.

        Directories are searched in order, and within each directory the
        ranked filenames are tried best first.

        Raises:
            ResourceNotFoundError: If no model file exists.
        """
        searched: List[Path] = []

        for model_dir in self.model_directories(kind):
            for model_name in self._model_names[kind]:
                model_path = model_dir / model_name
                searched.append(model_path)
                if model_path.is_file():
                    logger.info(f"Found {kind.value} model: {model_name} at {model_path}")
                    return model_path

        raise ResourceNotFoundError(kind, "model", searched)

    async def resolve(self, kind: EngineKind) -> Tuple[str, Path]:
        """Resolve both the binary and the model for an engine."""
        binary = await self.resolve_binary(kind)
        model = await self.resolve_model(kind)
        return binary, model
