"""Tests for binary and model resolution."""

import pytest

from romod import resolver as resolver_module
from romod.config import AppConfig, ResolverConfig
from romod.errors import ResourceNotFoundError
from romod.resolver import ResourceResolver
from romod.state import EngineKind


@pytest.fixture(autouse=True)
def isolated_system(monkeypatch, tmp_path):
    """Hide system-wide installs and PATH so only the test tree is searched."""
    monkeypatch.setitem(resolver_module.SYSTEM_BINARIES, EngineKind.SPEECH, ())
    monkeypatch.setitem(resolver_module.SYSTEM_BINARIES, EngineKind.LANGUAGE_MODEL, ())
    monkeypatch.setattr(resolver_module, "SYSTEM_MODEL_ROOTS", ())
    empty_bin = tmp_path / "empty-bin"
    empty_bin.mkdir()
    monkeypatch.setenv("PATH", str(empty_bin))


@pytest.fixture
def resolver(app_config):
    return ResourceResolver(app_config)


def test_binary_candidate_order(app_config, dev_root):
    candidates = ResourceResolver(app_config).binary_candidates(EngineKind.SPEECH)

    assert candidates[0] == str(dev_root / "whisper.cpp/build/bin/whisper-cli")
    assert candidates[-1] == "whisper-cli"


def test_packaged_candidates_come_first(tmp_path, dev_root):
    config = AppConfig(
        resolver=ResolverConfig(
            packaged=True, resources_path=tmp_path / "resources", dev_root=dev_root
        )
    )
    resolver = ResourceResolver(config)

    binaries = resolver.binary_candidates(EngineKind.LANGUAGE_MODEL)
    directories = resolver.model_directories(EngineKind.LANGUAGE_MODEL)

    assert binaries[0] == str(tmp_path / "resources/llama.cpp/build/bin/llama-server")
    assert directories[0] == tmp_path / "resources/llama.cpp/models"
    assert directories[1] == dev_root / "llama.cpp/models"


def test_development_mode_skips_resources(tmp_path, dev_root):
    config = AppConfig(
        resolver=ResolverConfig(resources_path=tmp_path / "resources", dev_root=dev_root)
    )

    binaries = ResourceResolver(config).binary_candidates(EngineKind.SPEECH)

    assert not any("resources" in b for b in binaries)


def test_model_directories_include_user_data(app_config, tmp_path):
    directories = ResourceResolver(app_config).model_directories(EngineKind.SPEECH)
    assert tmp_path / "data" / "models" in directories


@pytest.mark.asyncio
async def test_resolve_dev_binary(resolver, whisper_install):
    binary, _ = whisper_install
    assert await resolver.resolve_binary(EngineKind.SPEECH) == str(binary)


@pytest.mark.asyncio
async def test_resolve_skips_non_executable(resolver, dev_root, make_script):
    """Test that a non-executable file is passed over for the next candidate."""
    first = dev_root / "whisper.cpp/build/bin/whisper-cli"
    first.parent.mkdir(parents=True)
    first.write_text("not executable")
    second = make_script(dev_root / "whisper.cpp/build/bin/main", "exit 0\n")

    assert await resolver.resolve_binary(EngineKind.SPEECH) == str(second)


@pytest.mark.asyncio
async def test_resolve_bare_command_on_path(resolver, tmp_path, monkeypatch, make_script):
    bin_dir = tmp_path / "bin"
    make_script(bin_dir / "llama-server", 'echo "usage: llama-server"\n')
    monkeypatch.setenv("PATH", str(bin_dir))

    assert await resolver.resolve_binary(EngineKind.LANGUAGE_MODEL) == "llama-server"


@pytest.mark.asyncio
async def test_resolve_binary_not_found(resolver):
    with pytest.raises(ResourceNotFoundError) as exc_info:
        await resolver.resolve_binary(EngineKind.SPEECH)

    error = exc_info.value
    assert error.kind == EngineKind.SPEECH
    assert error.resource == "binary"
    assert "whisper-cli" in error.searched


@pytest.mark.asyncio
async def test_resolve_model_ranking(resolver, dev_root):
    """Test that the best-ranked filename wins within a directory."""
    models = dev_root / "whisper.cpp" / "models"
    models.mkdir(parents=True)
    (models / "ggml-tiny.en.bin").write_bytes(b"x")
    (models / "ggml-base.bin").write_bytes(b"x")

    assert await resolver.resolve_model(EngineKind.SPEECH) == models / "ggml-base.bin"


@pytest.mark.asyncio
async def test_resolve_model_from_user_data(resolver, tmp_path):
    models = tmp_path / "data" / "models"
    models.mkdir(parents=True)
    (models / "tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf").write_bytes(b"x")

    model = await resolver.resolve_model(EngineKind.LANGUAGE_MODEL)

    assert model.name == "tinyllama-1.1b-chat-v1.0.Q4_K_M.gguf"


@pytest.mark.asyncio
async def test_resolve_model_not_found_is_not_cached(resolver, dev_root):
    with pytest.raises(ResourceNotFoundError, match="No model found"):
        await resolver.resolve_model(EngineKind.SPEECH)

    models = dev_root / "whisper.cpp" / "models"
    models.mkdir(parents=True)
    (models / "ggml-small.en.bin").write_bytes(b"x")

    assert await resolver.resolve_model(EngineKind.SPEECH) == models / "ggml-small.en.bin"


@pytest.mark.asyncio
async def test_resolve_both(resolver, whisper_install):
    binary, model = whisper_install
    assert await resolver.resolve(EngineKind.SPEECH) == (str(binary), model)
