"""Unit tests for config loading, validation and environment overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from emrgate.config import Config, is_production_environment, load_config
from emrgate.constants import ACCESS_TOKEN_TTL_SECONDS, DEFAULT_MAX_BODY_DEPTH


def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestDefaults:
    def test_no_file_returns_defaults(self) -> None:
        config = load_config()
        assert config.path is None
        assert config.server.port == 5000
        assert config.transport.enforce_https is False
        assert config.waf.enabled is True
        assert config.waf.max_body_depth == DEFAULT_MAX_BODY_DEPTH
        assert "/health" in config.waf.skip_paths
        assert config.session.access_token_ttl_seconds == ACCESS_TOKEN_TTL_SECONDS
        assert config.session.refresh_interval_seconds < config.session.access_token_ttl_seconds
        assert config.audit.retention_days == 90

    def test_defaults_are_independent_copies(self) -> None:
        first = Config.defaults()
        second = Config.defaults()
        first.waf.skip_paths.append("/metrics")
        assert "/metrics" not in second.waf.skip_paths


class TestFileLoading:
    def test_values_merged_onto_defaults(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "version: 1\n"
            "server:\n  port: 8443\n"
            "transport:\n  enforce_https: true\n"
            "waf:\n  skip_paths: ['/health', '/metrics']\n  scan_headers: false\n"
            "session:\n  inactivity_seconds: 600\n",
        )
        config = load_config(path)
        assert config.path == path
        assert config.server.port == 8443
        assert config.server.host == "127.0.0.1"
        assert config.transport.enforce_https is True
        assert config.waf.skip_paths == ["/health", "/metrics"]
        assert config.waf.scan_headers is False
        assert config.session.inactivity_seconds == 600
        assert config.session.access_token_ttl_seconds == ACCESS_TOKEN_TTL_SECONDS

    def test_session_timers_and_allowed_hosts(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "version: 1\n"
            "transport:\n  allowed_hosts: ['emr.example.org', '*.emr.example.org']\n"
            "session:\n  idle_timeout_seconds: 600\n  refresh_interval_seconds: 120\n"
            "  idle_check_interval_seconds: 10\n",
        )
        config = load_config(path)
        assert config.transport.allowed_hosts == ["emr.example.org", "*.emr.example.org"]
        assert config.session.idle_timeout_seconds == 600
        assert config.session.refresh_interval_seconds == 120
        assert config.session.idle_check_interval_seconds == 10

    def test_env_config_path_used(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, "version: 1\nserver:\n  port: 7001\n")
        monkeypatch.setenv("EMRGATE_CONFIG", path)
        assert load_config().server.port == 7001

    def test_unknown_keys_ignored(self, tmp_path: Path) -> None:
        config = load_config(_write(tmp_path, "version: 1\nsomething_else: true\n"))
        assert config.version == 1


class TestValidation:
    @pytest.mark.parametrize(
        "text",
        [
            "",
            "server:\n  port: 1\n",
            "version: 2\n",
            "- just\n- a list\n",
            "version: 1\nserver: [unclosed\n",
            "version: 1\nwaf:\n  max_body_depth: 0\n",
            "version: 1\nwaf:\n  max_body_depth: deep\n",
            "version: 1\nsession:\n  refresh_interval_seconds: 300\n  access_token_ttl_seconds: 300\n",
            "version: 1\nwaf:\n  enabled: \"false\"\n",
            "version: 1\nwaf:\n  scan_headers: 0\n",
            "version: 1\ntransport:\n  enforce_https: \"yes\"\n",
            "version: 1\naudit:\n  enabled: off-ish\n",
            "version: 1\nsession:\n  idle_timeout_seconds: 0\n",
            "version: 1\nsession:\n  idle_check_interval_seconds: fast\n",
            "version: 1\nsession:\n  idle_timeout_seconds: 60\n  idle_check_interval_seconds: 120\n",
            "version: 1\ntransport:\n  allowed_hosts: emr.example.org\n",
            "version: 1\ntransport:\n  allowed_hosts: []\n",
        ],
    )
    def test_invalid_config_exits(self, tmp_path: Path, text: str) -> None:
        with pytest.raises(SystemExit) as exc_info:
            load_config(_write(tmp_path, text))
        assert exc_info.value.code == 1

    def test_error_written_to_stderr(self, tmp_path: Path, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit):
            load_config(_write(tmp_path, "server:\n  port: 1\n"))
        assert "version" in capsys.readouterr().err


class TestEnvironmentOverrides:
    def test_port_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EMRGATE_PORT", "9100")
        assert load_config().server.port == 9100

    def test_invalid_port_exits(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EMRGATE_PORT", "not-a-port")
        with pytest.raises(SystemExit):
            load_config()

    @pytest.mark.parametrize("value", ["production", "PROD", " production "])
    def test_production_forces_https(self, monkeypatch: pytest.MonkeyPatch, value: str) -> None:
        monkeypatch.setenv("EMRGATE_ENV", value)
        assert is_production_environment()
        assert load_config().transport.enforce_https is True

    def test_production_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EMRGATE_ENV", "production")
        path = _write(tmp_path, "version: 1\ntransport:\n  enforce_https: false\n")
        assert load_config(path).transport.enforce_https is True

    def test_development_keeps_file_value(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("EMRGATE_ENV", "development")
        assert not is_production_environment()
        assert load_config().transport.enforce_https is False
