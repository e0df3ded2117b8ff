"""Configuration handling for romod daemon."""

import getpass
import os
import tomllib
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

# The conversation history window is never allowed to grow past this
MAX_HISTORY_LIMIT = 10


def get_default_config_path() -> Path:
    """Get the default config file path following XDG spec."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / "romo" / "config.toml"


def get_default_socket_path() -> Path:
    """Get the default socket path following XDG spec."""
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        sock_dir = Path(xdg_runtime_dir) / "romo"
        try:
            sock_dir.mkdir(parents=True, exist_ok=True)
            if not os.access(sock_dir, os.W_OK | os.X_OK):
                raise OSError("Insufficient permissions for XDG runtime dir.")
            return sock_dir / "daemon.sock"
        except (OSError, PermissionError) as e:
            print(
                f"Warning: Could not use XDG_RUNTIME_DIR ({e}), falling back to /tmp."
            )

    # Fallback if XDG_RUNTIME_DIR not set or unusable
    uid = getpass.getuser()
    return Path(f"/tmp/romo-{uid}.sock")


def get_default_log_path() -> Path:
    """Get the default log file path following XDG spec."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / "romo"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "romod.log"


def get_default_data_dir() -> Path:
    """Get the user data directory (downloaded models live below it)."""
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base_dir = Path(xdg_data)
    else:
        base_dir = Path.home() / ".local" / "share"

    return base_dir / "romo"


def is_packaged_from_env() -> Optional[bool]:
    """Read the ROMO_PACKAGED override, if set."""
    value = os.environ.get("ROMO_PACKAGED")
    if value is None:
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


class ResolverConfig(BaseModel):
    """Where engine binaries and model files are searched for."""

    packaged: bool = Field(
        default=False,
        description="Running from a packaged build (resource paths are searched first).",
    )
    resources_path: Optional[Path] = Field(
        default=None, description="Packaged-app resource directory."
    )
    dev_root: Optional[Path] = Field(
        default=None,
        description="Development tree holding whisper.cpp/ and llama.cpp/ checkouts.",
    )
    data_dir: Optional[Path] = Field(
        default=None, description="User data directory (models/ below it)."
    )
    probe_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for the --help probe of bare command names (s).",
    )

    @property
    def is_packaged(self) -> bool:
        override = is_packaged_from_env()
        return self.packaged if override is None else override

    @property
    def computed_dev_root(self) -> Path:
        return self.dev_root or Path.cwd()

    @property
    def computed_data_dir(self) -> Path:
        return self.data_dir or get_default_data_dir()


class WhisperConfig(BaseModel):
    """Speech engine (whisper.cpp) configuration."""

    language: str = Field(default="en", description="Language hint passed to -l.")
    threads: int = Field(default=4, ge=1, description="Thread count passed to -t.")
    best_of: int = Field(
        default=5,
        ge=1,
        description="Candidates kept for file transcription (--best-of).",
    )
    preferred_models: List[str] = Field(
        default_factory=lambda: [
            "ggml-base.en.bin",
            "ggml-base.bin",
            "ggml-small.en.bin",
            "ggml-tiny.en.bin",
        ],
        description="Acceptable model filenames, best first.",
    )
    sample_rate: int = Field(
        default=16000, gt=0, description="Default sample rate for raw chunks (Hz)."
    )
    temp_dir: Optional[Path] = Field(
        default=None, description="Directory for temporary WAV files."
    )
    stream_step_ms: int = Field(default=3000, gt=0, description="Streaming step (ms).")
    stream_length_ms: int = Field(
        default=5000, gt=0, description="Streaming context window (ms)."
    )
    stream_audio_ctx: int = Field(
        default=512, ge=0, description="Streaming audio-context size."
    )

    @field_validator("preferred_models")
    @classmethod
    def check_models_not_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one preferred Whisper model is required")
        return v


class LlamaConfig(BaseModel):
    """Language-model engine (llama.cpp server) configuration."""

    host: str = Field(default="127.0.0.1", description="Address the server binds to.")
    port: int = Field(default=8080, gt=0, lt=65536, description="Server port.")
    ctx_size: int = Field(default=4096, gt=0, description="Context size (--ctx-size).")
    threads: int = Field(default=4, ge=1, description="Thread count (--threads).")
    gpu_layers: int = Field(
        default=1, ge=0, description="Layers offloaded to an accelerator."
    )
    repeat_penalty: float = Field(default=1.1, gt=0)
    temperature: float = Field(default=0.7, ge=0, description="Server default temperature.")
    preferred_models: List[str] = Field(
        default_factory=lambda: [
            "phi-2.Q4_K_M.gguf",
            "tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf",
            "mistral-7b-instruct-v0.2.Q4_K_M.gguf",
            "llama-2-7b-chat.Q4_K_M.gguf",
        ],
        description="Acceptable model filenames, best first.",
    )
    wait_attempts: int = Field(
        default=60, ge=1, description="Connection attempts while the server starts."
    )
    connect_timeout_s: float = Field(
        default=2.0, gt=0, description="Per-attempt connection timeout (s)."
    )
    wait_interval_s: float = Field(
        default=1.0, ge=0, description="Delay between connection attempts (s)."
    )
    warmup_s: float = Field(
        default=2.0, ge=0, description="Extra delay before the first request (s)."
    )
    max_retries: int = Field(
        default=3, ge=1, description="Attempts for a request answered with 503."
    )
    backoff_base_s: float = Field(
        default=2.0, gt=0, description="First retry delay; doubles per attempt (s)."
    )
    request_timeout_s: float = Field(
        default=30.0, gt=0, description="HTTP request timeout (s)."
    )
    shutdown_timeout_s: float = Field(
        default=5.0, gt=0, description="Grace period before the server is killed (s)."
    )
    history_limit: int = Field(
        default=MAX_HISTORY_LIMIT,
        ge=1,
        le=MAX_HISTORY_LIMIT,
        description="Exchanges remembered per conversation.",
    )

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


class DaemonConfig(BaseModel):
    """Daemon runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )
    socket_path: Optional[Path] = Field(
        default=None, description="Optional custom socket path for IPC."
    )
    initialize_on_start: bool = Field(
        default=True, description="Initialize both engines when the daemon starts."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()

    @property
    def computed_socket_path(self) -> Path:
        return self.socket_path or get_default_socket_path()


class AppConfig(BaseModel):
    """Root configuration."""

    resolver: ResolverConfig = Field(default_factory=ResolverConfig)
    whisper: WhisperConfig = Field(default_factory=WhisperConfig)
    llama: LlamaConfig = Field(default_factory=LlamaConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in standard locations.
    If no config file is found, returns default configuration.

    Args:
        path: Optional path to config file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ValueError: If config file exists but has invalid format/content.
        OSError: If config file exists but can't be read.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        return AppConfig()  # Use defaults

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e

    try:
        return AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
