"""Speech recognition engine driven as a one-shot whisper.cpp process."""

import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Union

from .config import AppConfig
from .errors import EngineProcessError, InvalidContainerError
from .process import run_process, terminate_process
from .resolver import ResourceResolver
from .state import EngineKind
from .supervisor import EngineStatus, EngineSupervisor
from .transcript import TranscriptResult, convert_output, find_json_output_path
from .wav import encode_wav, normalize_audio, validate_wav, wav_duration

logger = logging.getLogger(__name__)

TEMP_FILE_PREFIX = "romo_chunk_"

# Hex-encoded audio as sent over IPC; any other string is taken as a path
HEX_AUDIO_RE = re.compile(r"[0-9a-fA-F\s]*")

# Grace period for the streaming process after stdin is closed
STREAM_STOP_TIMEOUT = 5.0


def _is_file_reference(value: Any) -> bool:
    if isinstance(value, os.PathLike):
        return True
    if isinstance(value, str):
        return os.path.isfile(value) or HEX_AUDIO_RE.fullmatch(value) is None
    return False


class SpeechEngine(EngineSupervisor):
    """Runs whisper.cpp once per audio segment.

    Chunk transcription (the live dictation path) never raises once the
    engine is ready: failures come back as an empty result carrying an
    ``error``. File transcription is a deliberate user action and
    propagates its errors.
    """

    kind = EngineKind.SPEECH

    def __init__(self, config: AppConfig, resolver: ResourceResolver):
        super().__init__(config, resolver)
        self.whisper_config = config.whisper

        self._request_id = 0
        self._stream_process: Optional[asyncio.subprocess.Process] = None
        self._stream_reader: Optional[asyncio.Task] = None

    @property
    def temp_dir(self) -> Path:
        return self.whisper_config.temp_dir or Path(tempfile.gettempdir())

    @property
    def is_streaming(self) -> bool:
        return self._stream_process is not None and self._stream_process.returncode is None

    async def _self_test(self) -> None:
        result = await run_process(self.descriptor.binary_path, ["--help"])
        if not result.ok:
            raise EngineProcessError(
                f"Speech binary self-test failed with code {result.returncode}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.debug("Speech binary self-test passed")

    async def _teardown(self) -> None:
        await self.stop_streaming()

    def _build_args(
        self,
        audio_file: Path,
        output_json: bool = False,
        best_of: Optional[int] = None,
        language: Optional[str] = None,
    ) -> List[str]:
        args = ["-m", str(self.descriptor.model_path), "-f", str(audio_file)]
        if output_json:
            args.append("--output-json")
        args.extend(["-l", language or self.whisper_config.language])
        args.extend(["-t", str(self.whisper_config.threads)])
        if best_of:
            args.extend(["--best-of", str(best_of)])
        args.append("--no-prints")
        return args

    async def _invoke(self, audio_file: Path, output_json: bool, **kwargs) -> TranscriptResult:
        """Run the engine once on a file and convert its output.

        Raises:
            EngineProcessError: If the engine could not be spawned or exited
                with a non-zero code.
        """
        args = self._build_args(audio_file, output_json=output_json, **kwargs)
        result = await run_process(self.descriptor.binary_path, args)

        json_path = self._json_output_path(result.stderr, audio_file) if output_json else None

        if not result.ok:
            if json_path is not None:
                self._read_and_remove(json_path)
            raise EngineProcessError(
                f"Speech engine failed with code {result.returncode}: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr,
            )

        structured = self._read_and_remove(json_path) if json_path is not None else None
        return convert_output(result.stdout, structured=structured, expect_json=output_json)

    @staticmethod
    def _json_output_path(stderr: str, audio_file: Path) -> Path:
        path = find_json_output_path(stderr)
        if path is None:
            # Announcement missing; whisper.cpp writes next to the input
            path = Path(f"{audio_file}.json")
        return path

    def _read_and_remove(self, path: Path) -> Optional[str]:
        """Read a structured result file, then delete it."""
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug(f"No structured output at {path}")
            return None
        except OSError as e:
            logger.warning(f"Failed to read structured output {path}: {e}")
            return None

        try:
            path.unlink()
        except OSError as e:
            logger.warning(f"Failed to clean up structured output {path}: {e}")
        return content

    async def transcribe_file(
        self, path: Union[str, Path], language: Optional[str] = None
    ) -> TranscriptResult:
        """Transcribe an audio file already on disk.

        Args:
            path: WAV file to transcribe.
            language: Optional language override.

        Returns:
            The transcript, parsed from the engine's plain-text output.

        Raises:
            NotInitializedError: If the engine is not ready.
            FileNotFoundError: If the file does not exist.
            EngineProcessError: If the engine fails.
        """
        self.ensure_initialized("file transcription")

        audio_file = Path(path)
        if not audio_file.is_file():
            raise FileNotFoundError(f"Audio file not found: {audio_file}")

        logger.info(f"Transcribing file: {audio_file}")
        result = await self._invoke(
            audio_file,
            output_json=False,
            best_of=self.whisper_config.best_of,
            language=language,
        )
        logger.info(f"Transcribed file {audio_file.name}: {result.text[:100]}")
        return result

    def _write_temp_wav(self, wav: bytes) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(
            prefix=TEMP_FILE_PREFIX, suffix=".wav", dir=self.temp_dir
        )
        with os.fdopen(fd, "wb") as f:
            f.write(wav)
        return Path(name)

    async def transcribe_chunk(
        self, audio: Any, sample_rate: Optional[int] = None
    ) -> TranscriptResult:
        """Transcribe one captured audio segment.

        Args:
            audio: Raw 16-bit mono PCM (bytes, hex string or numpy array), or
                a complete WAV buffer.
            sample_rate: Sample rate of raw PCM; defaults to the configured rate.

        Returns:
            The transcript. Empty input gives the empty result; any other
            failure gives the empty result with ``error`` set.

        Raises:
            NotInitializedError: If the engine is not ready.
        """
        self.ensure_initialized("chunk transcription")

        self._request_id += 1
        request_id = self._request_id

        if audio is None or (hasattr(audio, "__len__") and len(audio) == 0):
            logger.warning(f"Audio chunk {request_id} is empty, skipping")
            return TranscriptResult.empty()

        temp_file: Optional[Path] = None
        try:
            wav = encode_wav(audio, sample_rate or self.whisper_config.sample_rate)
            valid, reason = validate_wav(wav)
            if not valid:
                raise InvalidContainerError(reason)

            logger.debug(f"Chunk {request_id}: {wav_duration(wav):.2f}s of audio")
            temp_file = self._write_temp_wav(wav)

            result = await self._invoke(temp_file, output_json=True)
            logger.debug(f"Chunk {request_id} transcribed: {result.text[:100]}")
            return result

        except Exception as e:
            logger.error(f"Error processing audio chunk {request_id}: {e}")
            return TranscriptResult.empty(error=str(e))

        finally:
            if temp_file is not None:
                try:
                    temp_file.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"Failed to remove temp file {temp_file}: {e}")

    async def transcribe(
        self, audio_or_path: Any, sample_rate: Optional[int] = None
    ) -> TranscriptResult:
        """Transcribe either a file path or an in-memory audio segment.

        Path objects, and strings that name an existing file or are not
        hex-encoded audio, are transcribed as files.
        """
        if _is_file_reference(audio_or_path):
            return await self.transcribe_file(audio_or_path)
        return await self.transcribe_chunk(audio_or_path, sample_rate)

    async def start_streaming(self, result_queue: asyncio.Queue) -> bool:
        """Start the engine in long-lived streaming mode.

        Raw PCM written with stream_audio is transcribed continuously and
        each non-empty result is put on ``result_queue``.

        Returns:
            True if a streaming process is running.

        Raises:
            NotInitializedError: If the engine is not ready.
            EngineProcessError: If the process could not be spawned.
        """
        self.ensure_initialized("streaming")

        if self.is_streaming:
            logger.warning("Streaming already started")
            return True

        cfg = self.whisper_config
        args = [
            "-m",
            str(self.descriptor.model_path),
            "--stream",
            "--step",
            str(cfg.stream_step_ms),
            "--length",
            str(cfg.stream_length_ms),
            "--audio-ctx",
            str(cfg.stream_audio_ctx),
            "--no-prints",
        ]
        try:
            self._stream_process = await asyncio.create_subprocess_exec(
                self.descriptor.binary_path,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise EngineProcessError(f"Failed to spawn streaming process: {e}") from e

        self._stream_reader = asyncio.create_task(self._read_stream(result_queue))
        logger.info(f"Streaming started (PID {self._stream_process.pid})")
        return True

    async def _read_stream(self, result_queue: asyncio.Queue) -> None:
        process = self._stream_process
        assert process is not None and process.stdout is not None

        try:
            async for raw_line in process.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue

                result = convert_output(line, expect_json=line.startswith("{"))
                if result.text:
                    await result_queue.put(result)

        except asyncio.CancelledError:
            logger.debug("Stream reader cancelled")
            raise

        except Exception as e:
            logger.exception(f"Error reading streaming output: {e}")

        logger.info(f"Streaming process exited with code {process.returncode}")

    async def stream_audio(self, chunk: Any) -> bool:
        """Feed raw PCM to the streaming process.

        Returns:
            False if no streaming process is running.
        """
        if not self.is_streaming or self._stream_process.stdin is None:
            logger.debug("No streaming process, dropping audio")
            return False

        try:
            self._stream_process.stdin.write(normalize_audio(chunk))
            await self._stream_process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Streaming process stopped accepting audio: {e}")
            return False
        return True

    async def stop_streaming(self) -> None:
        """Stop the streaming process. No-op when not streaming."""
        process = self._stream_process
        reader = self._stream_reader
        self._stream_process = None
        self._stream_reader = None

        if process is None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()

        await terminate_process(process, timeout=STREAM_STOP_TIMEOUT)

        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        logger.info("Streaming stopped")

    def get_status(self) -> EngineStatus:
        status = super().get_status()
        return status.model_copy(update={"streaming": self.is_streaming})
