"""Tests for the speech engine."""

import asyncio

import numpy as np
import pytest
import pytest_asyncio

from romod.errors import EngineProcessError, NotInitializedError
from romod.resolver import ResourceResolver
from romod.speech_engine import TEMP_FILE_PREFIX, SpeechEngine
from romod.state import EngineState
from romod.transcript import TranscriptResult
from romod.wav import encode_wav

PCM = b"\x01\x00\xff\xff" * 800  # 0.1 s of 16 kHz audio


@pytest_asyncio.fixture
async def engine(app_config, whisper_install):
    """An initialized speech engine backed by the fake whisper-cli."""
    engine = SpeechEngine(app_config, ResourceResolver(app_config))
    await engine.initialize()
    try:
        yield engine
    finally:
        await engine.shutdown()


def leftover_files(app_config):
    temp_dir = app_config.whisper.temp_dir
    if not temp_dir.exists():
        return []
    return list(temp_dir.glob(f"{TEMP_FILE_PREFIX}*"))


@pytest.mark.asyncio
async def test_initialize(engine, whisper_install):
    binary, model = whisper_install

    assert engine.is_ready
    status = engine.get_status()
    assert status.binary_path == str(binary)
    assert status.model_path == str(model)
    assert status.streaming is False


@pytest.mark.asyncio
async def test_self_test_failure(app_config, dev_root, make_script):
    """Test that a binary whose --help fails leaves the engine FAILED."""
    make_script(dev_root / "whisper.cpp/build/bin/whisper-cli", "exit 2\n")
    model = dev_root / "whisper.cpp/models/ggml-base.en.bin"
    model.parent.mkdir(parents=True)
    model.write_bytes(b"x")
    engine = SpeechEngine(app_config, ResourceResolver(app_config))

    with pytest.raises(EngineProcessError, match="self-test"):
        await engine.initialize()

    assert engine.state_manager.current_state == EngineState.FAILED
    assert engine.failed_step == "self_test"


@pytest.mark.asyncio
async def test_transcribe_chunk(engine, app_config):
    """Test that the announced structured file wins over stdout."""
    result = await engine.transcribe_chunk(PCM, 16000)

    assert result.text == "hello from json"
    assert result.error is None
    assert result.segments[0].end == pytest.approx(1.2)
    assert result.language == "en"
    # Neither the temp WAV nor the announced JSON file is left behind
    assert leftover_files(app_config) == []


@pytest.mark.asyncio
async def test_transcribe_chunk_unannounced_json(
    engine, app_config, whisper_install, make_script
):
    """Test that the file next to the input is read when no path is announced."""
    binary, _ = whisper_install
    make_script(
        binary,
        'while [ $# -gt 0 ]; do [ "$1" = "-f" ] && file="$2"; shift; done\n'
        "printf '%s' '{\"text\": \"next to input\"}' > \"$file.json\"\n"
        'echo "[00:00:00.000 --> 00:00:01.000]  from stdout"\n',
    )

    result = await engine.transcribe_chunk(PCM)

    assert result.text == "next to input"
    assert leftover_files(app_config) == []


@pytest.mark.asyncio
async def test_transcribe_chunk_failure_removes_json(
    engine, app_config, whisper_install, make_script
):
    """Test that a structured file written before a crash is cleaned up."""
    binary, _ = whisper_install
    make_script(
        binary,
        'while [ $# -gt 0 ]; do [ "$1" = "-f" ] && file="$2"; shift; done\n'
        "printf '{}' > \"$file.partial.json\"\n"
        "echo \"output_json: saving output to '$file.partial.json'\" >&2\n"
        "exit 1\n",
    )

    result = await engine.transcribe_chunk(PCM)

    assert result.text == ""
    assert "code 1" in result.error
    assert leftover_files(app_config) == []


@pytest.mark.asyncio
async def test_transcribe_chunk_accepts_hex_and_arrays(engine):
    assert (await engine.transcribe_chunk(PCM.hex())).text == "hello from json"

    samples = np.zeros(1600, dtype=np.float32)
    assert (await engine.transcribe_chunk(samples)).text == "hello from json"


@pytest.mark.asyncio
async def test_transcribe_chunk_accepts_wav(engine):
    result = await engine.transcribe_chunk(encode_wav(PCM, 16000))
    assert result.text == "hello from json"


@pytest.mark.asyncio
async def test_transcribe_chunk_empty(engine):
    assert await engine.transcribe_chunk(b"") == TranscriptResult.empty()
    assert await engine.transcribe_chunk("") == TranscriptResult.empty()


@pytest.mark.asyncio
async def test_transcribe_chunk_invalid_input(engine, app_config):
    """Test that bad input becomes an empty result with an error."""
    result = await engine.transcribe_chunk("zz-not-hex")

    assert result.text == ""
    assert result.segments == []
    assert "hex" in result.error
    assert leftover_files(app_config) == []


@pytest.mark.asyncio
async def test_transcribe_chunk_truncated_wav(engine):
    result = await engine.transcribe_chunk(b"RIFF\x00\x00")

    assert result.text == ""
    assert "too small" in result.error


@pytest.mark.asyncio
async def test_transcribe_chunk_engine_failure(engine, app_config, whisper_install, make_script):
    """Test that a crashing engine is absorbed and the temp file removed."""
    binary, _ = whisper_install
    make_script(binary, 'echo "model load failed" >&2\nexit 1\n')

    result = await engine.transcribe_chunk(PCM)

    assert result.text == ""
    assert "code 1" in result.error
    assert "model load failed" in result.error
    assert leftover_files(app_config) == []


@pytest.mark.asyncio
async def test_transcribe_chunk_without_json_file(engine, whisper_install, make_script):
    """Test the fallback to plain-text output when no JSON file appears."""
    binary, _ = whisper_install
    make_script(binary, 'echo "[00:00:00.000 --> 00:00:00.800]  plain fallback"\n')

    result = await engine.transcribe_chunk(PCM)

    assert result.text == "plain fallback"
    assert result.error is None


@pytest.mark.asyncio
async def test_transcribe_chunk_not_initialized(app_config):
    engine = SpeechEngine(app_config, ResourceResolver(app_config))

    with pytest.raises(NotInitializedError):
        await engine.transcribe_chunk(PCM)


@pytest.mark.asyncio
async def test_transcribe_file(engine, tmp_path):
    audio_file = tmp_path / "recording.wav"
    audio_file.write_bytes(encode_wav(PCM, 16000))

    result = await engine.transcribe_file(audio_file)

    assert result.text == "hello world"
    assert result.segments[0].start == 0.0
    # Plain-text mode never writes a structured file next to the input
    assert not (tmp_path / "recording.wav.json").exists()


@pytest.mark.asyncio
async def test_transcribe_file_missing(engine, tmp_path):
    with pytest.raises(FileNotFoundError):
        await engine.transcribe_file(tmp_path / "missing.wav")


@pytest.mark.asyncio
async def test_transcribe_file_engine_failure(engine, tmp_path, whisper_install, make_script):
    binary, _ = whisper_install
    make_script(binary, 'echo "bad audio" >&2\nexit 3\n')
    audio_file = tmp_path / "recording.wav"
    audio_file.write_bytes(encode_wav(PCM, 16000))

    with pytest.raises(EngineProcessError) as exc_info:
        await engine.transcribe_file(audio_file)

    assert exc_info.value.returncode == 3
    assert "bad audio" in exc_info.value.stderr


@pytest.mark.asyncio
async def test_transcribe_dispatch(engine, tmp_path):
    audio_file = tmp_path / "recording.wav"
    audio_file.write_bytes(encode_wav(PCM, 16000))

    # File transcription parses stdout, chunk transcription the JSON file
    assert (await engine.transcribe(audio_file)).text == "hello world"
    assert (await engine.transcribe(str(audio_file))).text == "hello world"
    assert (await engine.transcribe(PCM)).text == "hello from json"
    assert (await engine.transcribe(PCM.hex())).text == "hello from json"


@pytest.mark.asyncio
async def test_transcribe_missing_path_string_raises(engine, tmp_path):
    """Test that a path string is never decoded as audio."""
    with pytest.raises(FileNotFoundError):
        await engine.transcribe(str(tmp_path / "missing.wav"))


@pytest.mark.asyncio
async def test_streaming(engine, whisper_install, make_script):
    """Test that streamed output lines become queued results."""
    binary, _ = whisper_install
    make_script(
        binary,
        'echo "[00:00:00.000 --> 00:00:03.000]  streamed words"\n'
        'echo ""\n'
        "exec cat > /dev/null\n",
    )
    queue: asyncio.Queue = asyncio.Queue()

    assert await engine.start_streaming(queue) is True
    assert engine.is_streaming
    assert engine.get_status().streaming is True
    assert await engine.stream_audio(PCM) is True

    result = await asyncio.wait_for(queue.get(), timeout=5.0)
    assert result.text == "streamed words"

    await engine.stop_streaming()
    assert not engine.is_streaming
    assert await engine.stream_audio(PCM) is False


@pytest.mark.asyncio
async def test_shutdown_stops_streaming(engine, whisper_install, make_script):
    binary, _ = whisper_install
    make_script(binary, "exec cat > /dev/null\n")

    await engine.start_streaming(asyncio.Queue())
    await engine.shutdown()

    assert not engine.is_streaming
    assert engine.state_manager.current_state == EngineState.UNINITIALIZED
