import tomllib
from pathlib import Path

from openplane import __version__
from openplane.config import OpenPlaneConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "openplane.toml"
    config = OpenPlaneConfig.default()
    config.workspace.id = "docs"
    config.workspace.root = "workspace"
    config.execution.step_runner = "worker"
    config.worker.python = "/usr/bin/python3"
    config.worker.request_timeout_seconds = 15.5
    config.backend.primary = "openai"
    config.backend.fallback = "claude"
    config.backend.max_retries = 3
    config.backend.openai_base_url = "https://models.internal.example/v1"
    config.connectors.startup_grace_seconds = 1.0
    config.logging.console = True

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.workspace.id == "docs"
    assert loaded.workspace.root == "workspace"
    assert loaded.execution.step_runner == "worker"
    assert loaded.worker.python == "/usr/bin/python3"
    assert loaded.worker.request_timeout_seconds == 15.5
    assert loaded.worker.stream_limit_bytes == 8 * 1024 * 1024
    assert loaded.backend.primary == "openai"
    assert loaded.backend.fallback == "claude"
    assert loaded.backend.max_retries == 3
    assert loaded.backend.openai_base_url == "https://models.internal.example/v1"
    assert loaded.connectors.startup_grace_seconds == 1.0
    assert loaded.logging.console is True
    assert loaded.storage.lock_timeout_seconds == 3.0


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded == OpenPlaneConfig.default()


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(OpenPlaneConfig.default())

    for section in (
        "[workspace]",
        "[storage]",
        "[execution]",
        "[worker]",
        "[connectors]",
        "[backend]",
        "[logging]",
    ):
        assert section in rendered
    assert "max_retries" in rendered
    assert "retry_backoff_seconds" in rendered
    assert "step_runner" in rendered
    assert "lock_timeout_seconds = 3.0" in rendered
    assert tomllib.loads(rendered)["backend"]["timeout_seconds"] == 90.0


def test_relative_paths_resolve_against_config_directory(tmp_path: Path) -> None:
    config = OpenPlaneConfig.default()

    assert config.workspace_root(tmp_path) == tmp_path.resolve()
    assert config.state_dir(tmp_path) == (tmp_path / ".openplane" / "state").resolve()


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
