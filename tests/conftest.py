"""Shared fixtures for romod tests."""

from pathlib import Path

import pytest

from romod.config import AppConfig, LlamaConfig, ResolverConfig, WhisperConfig

# Mimics whisper-cli: --output-json writes a structured file and announces its
# path on stderr. The file's text differs from stdout so tests can tell which
# source a result came from.
FAKE_WHISPER = """#!/bin/sh
file=""
json=0
while [ $# -gt 0 ]; do
  case "$1" in
    --help) echo "usage: whisper-cli [options] file0.wav"; exit 0 ;;
    -f) file="$2"; shift ;;
    --output-json) json=1 ;;
  esac
  shift
done
if [ "$json" = 1 ]; then
  printf '%s' '{"result":{"language":"en"},"transcription":[{"offsets":{"from":0,"to":1200},"text":" hello from json"}]}' > "$file.out.json"
  echo "output_json: saving output to '$file.out.json'" >&2
fi
echo "[00:00:00.000 --> 00:00:01.500]   hello world"
"""


def write_script(path: Path, body: str) -> Path:
    """Write an executable shell script."""
    path.parent.mkdir(parents=True, exist_ok=True)
    if not body.startswith("#!"):
        body = "#!/bin/sh\n" + body
    path.write_text(body)
    path.chmod(0o755)
    return path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the packaged-mode override out of the tests."""
    monkeypatch.delenv("ROMO_PACKAGED", raising=False)


@pytest.fixture
def make_script():
    return write_script


@pytest.fixture
def dev_root(tmp_path):
    root = tmp_path / "dev"
    root.mkdir()
    return root


@pytest.fixture
def app_config(tmp_path, dev_root):
    """Config pointing at a temporary development tree with fast timings."""
    return AppConfig(
        resolver=ResolverConfig(
            dev_root=dev_root, data_dir=tmp_path / "data", probe_timeout_s=2.0
        ),
        whisper=WhisperConfig(temp_dir=tmp_path / "tmp"),
        llama=LlamaConfig(
            wait_attempts=3,
            connect_timeout_s=0.2,
            wait_interval_s=0.01,
            warmup_s=0,
            backoff_base_s=0.01,
            shutdown_timeout_s=1.0,
        ),
    )


@pytest.fixture
def whisper_install(dev_root):
    """A fake whisper.cpp checkout with binary and model."""
    binary = write_script(dev_root / "whisper.cpp" / "build" / "bin" / "whisper-cli", FAKE_WHISPER)
    model = dev_root / "whisper.cpp" / "models" / "ggml-base.en.bin"
    model.parent.mkdir(parents=True, exist_ok=True)
    model.write_bytes(b"model")
    return binary, model


@pytest.fixture
def llama_install(dev_root):
    """A fake llama.cpp checkout whose server just idles."""
    binary = write_script(
        dev_root / "llama.cpp" / "build" / "bin" / "llama-server", "exec sleep 30\n"
    )
    model = dev_root / "llama.cpp" / "models" / "phi-2.Q4_K_M.gguf"
    model.parent.mkdir(parents=True, exist_ok=True)
    model.write_bytes(b"model")
    return binary, model
