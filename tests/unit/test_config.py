"""Tests for configuration loading."""

from fixflow.config import FixflowConfig, load_config
from fixflow.contracts import OutputMode, StepName
from fixflow.persistence import InMemorySessionStore, SQLiteSessionStore, get_store


def test_defaults_include_every_step_profile():
    config = FixflowConfig()

    assert set(config.steps) == set(StepName)
    fix = config.profile_for("fix")
    assert fix.allowed_tools == ["Read", "Edit", "Glob", "Grep"]
    assert fix.max_turns == 10
    assert fix.timeout == 180.0
    assert fix.output_mode == OutputMode.JSON
    assert config.executor.offload_threshold == 6000
    assert config.executor.binary == "claude"


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
workspace_root: /srv/repo
executor:
  binary: /opt/tool/bin/claude
  max_concurrent_processes: 2
steps:
  scan:
    max_turns: 30
  document:
    output_mode: text
"""
    )
    monkeypatch.setenv("FIXFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.workspace_root == "/srv/repo"
    assert config.executor.binary == "/opt/tool/bin/claude"
    assert config.executor.max_concurrent_processes == 2

    scan = config.profile_for(StepName.SCAN)
    assert scan.max_turns == 30
    assert scan.allowed_tools == ["Read", "Glob", "Grep"]
    assert scan.timeout == 300.0
    assert config.profile_for("document").output_mode == OutputMode.TEXT


def test_env_overrides_take_precedence(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
storage:
  database_url: sqlite://sessions.db
executor:
  binary: from-file
"""
    )
    monkeypatch.setenv("FIXFLOW_DATABASE_URL", "memory://")
    monkeypatch.setenv("FIXFLOW_TOOL_BINARY", "from-env")

    config = load_config(str(config_path))
    assert config.storage.database_url == "memory://"
    assert config.executor.binary == "from-env"


def test_missing_config_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("FIXFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("FIXFLOW_TOOL_BINARY", raising=False)

    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.storage.database_url == "sqlite://.fixflow/sessions.db"
    assert config.system_prompt is None


def test_get_store_uses_config(tmp_path, monkeypatch):
    monkeypatch.delenv("FIXFLOW_DATABASE_URL", raising=False)
    config = FixflowConfig(
        workspace_root=str(tmp_path), storage={"database_url": "sqlite://state/sessions.db"}
    )

    store = get_store(config=config)
    assert isinstance(store, SQLiteSessionStore)
    assert (tmp_path / "state" / "sessions.db").exists()
    store.close()

    memory = get_store(database_url="memory://", config=config)
    assert isinstance(memory, InMemorySessionStore)
    assert get_store() is memory
