from pathlib import Path

from coderunner.settings import load_settings, read_yaml_config


def _write(tmp_path: Path, text: str) -> Path:
    p = tmp_path / "coderunner.yaml"
    p.write_text(text)
    return p


def test_sections_are_flattened(tmp_path):
    p = _write(tmp_path, "master:\n  port: 9000\nsandbox:\n  executor: host\n")
    assert read_yaml_config(p) == {"port": 9000, "executor": "host"}


def test_missing_file_gives_defaults(tmp_path):
    s = load_settings(tmp_path / "nope.yaml")
    assert s.port == 8080
    assert s.max_attempts == 3
    assert s.default_time_limit_ms == 2000


def test_yaml_fills_defaults(tmp_path):
    p = _write(tmp_path, "master:\n  max_attempts: 5\nlimits:\n  max_memory_limit_mb: 2048\n")
    s = load_settings(p)
    assert s.max_attempts == 5
    assert s.max_memory_limit_mb == 2048


def test_environment_wins_over_yaml(tmp_path, monkeypatch):
    monkeypatch.setenv("CODERUNNER_MAX_ATTEMPTS", "7")
    p = _write(tmp_path, "master:\n  max_attempts: 5\n  port: 9001\n")
    s = load_settings(p)
    assert s.max_attempts == 7
    assert s.port == 9001


def test_overrides_win(tmp_path, monkeypatch):
    monkeypatch.setenv("CODERUNNER_PORT", "7000")
    s = load_settings(tmp_path / "nope.yaml", port=7001)
    assert s.port == 7001


def test_conf_path_from_env(tmp_path, monkeypatch):
    p = _write(tmp_path, "worker:\n  worker_capacity: 3\n")
    monkeypatch.setenv("CODERUNNER_CONF", str(p))
    assert load_settings().worker_capacity == 3
