"""配置加载测试：YAML、环境变量覆盖、文件发现、标签解析。"""
import pytest

from errorwatch_metrics import config as config_module
from errorwatch_metrics.config import (
    DEFAULT_CONFIG_TEMPLATE,
    AgentConfig,
    find_config_file,
    load_config,
    load_from_env,
    load_with_defaults,
    mask_api_key,
    merge_with_env,
    parse_tags,
    reset_config_files,
    resolve_config,
    write_default_config,
)
from errorwatch_metrics.exceptions import ConfigError

YAML = """\
endpoint: "https://errorwatch.example.com/"
api_key: "ew_file_key_abcdef"
host_id: "host-7"
collection_interval: 1m
tags:
  env: staging
  team: infra
transport:
  retry_interval: 3
"""


@pytest.fixture
def config_file(tmp_path):
    p = tmp_path / "sdk-metrics.yaml"
    p.write_text(YAML)
    return p


class TestLoadConfig:
    def test_loads_yaml(self, config_file):
        cfg = load_config(str(config_file))
        assert cfg.endpoint == "https://errorwatch.example.com"
        assert cfg.api_key == "ew_file_key_abcdef"
        assert cfg.host_id == "host-7"
        assert cfg.hostname == ""
        assert cfg.collection_interval == 60
        assert cfg.tags == {"env": "staging", "team": "infra"}
        assert cfg.transport.retry_interval == 3
        assert cfg.transport.max_retries == 10
        assert cfg.transport.buffer_size == 100

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_non_mapping(self, tmp_path):
        p = tmp_path / "list.yaml"
        p.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(p))

    def test_invalid_yaml(self, tmp_path):
        p = tmp_path / "broken.yaml"
        p.write_text("endpoint: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(str(p))

    def test_empty_file_gets_defaults(self, tmp_path):
        p = tmp_path / "empty.yaml"
        p.write_text("")
        cfg = load_config(str(p))
        assert cfg.endpoint == "http://localhost:3333"
        assert cfg.collection_interval == 10
        assert cfg.tags == {}

    def test_template_is_loadable(self, tmp_path):
        p = tmp_path / "t.yaml"
        p.write_text(DEFAULT_CONFIG_TEMPLATE)
        cfg = load_config(str(p))
        assert cfg.api_key == "your_api_key_here"
        assert cfg.tags == {"env": "production"}

    def test_transport_not_a_mapping(self, tmp_path):
        p = tmp_path / "bad.yaml"
        p.write_text("api_key: k\ntransport: [1, 2]\n")
        with pytest.raises(ConfigError, match="transport"):
            load_config(str(p))

    def test_transport_not_a_mapping_falls_back_to_env(self, tmp_path):
        p = tmp_path / "bad.yaml"
        p.write_text("transport: fast\n")
        cfg = load_with_defaults(str(p), {"METRICS_API_KEY": "ew_env_key"})
        assert cfg.api_key == "ew_env_key"

    @pytest.mark.parametrize("raw,expected", [
        ("false", False),
        ('"false"', False),
        ('"true"', True),
        ("true", True),
        ("1", True),
    ])
    def test_use_sse_values(self, tmp_path, raw, expected):
        p = tmp_path / "sse.yaml"
        p.write_text(f"transport:\n  use_sse: {raw}\n")
        assert load_config(str(p)).transport.use_sse is expected

    def test_negative_interval_uses_default(self, tmp_path):
        p = tmp_path / "neg.yaml"
        p.write_text("collection_interval: -5\n")
        assert load_config(str(p)).collection_interval == 10


class TestEnv:
    def test_load_from_env(self):
        cfg = load_from_env({
            "METRICS_ENDPOINT": "http://collector:3333",
            "METRICS_API_KEY": "ew_env_key",
            "METRICS_COLLECTION_INTERVAL": "30",
            "METRICS_TAGS": "env:prod, dc:fra1",
            "METRICS_USE_SSE": "1",
        })
        assert cfg.endpoint == "http://collector:3333"
        assert cfg.api_key == "ew_env_key"
        assert cfg.collection_interval == 30
        assert cfg.tags == {"env": "prod", "dc": "fra1"}
        assert cfg.transport.use_sse is True

    def test_load_from_env_defaults(self):
        cfg = load_from_env({})
        assert cfg == AgentConfig()

    @pytest.mark.parametrize("raw", ["-5", "0"])
    def test_non_positive_env_interval_uses_default(self, raw, config_file):
        assert load_from_env({"METRICS_COLLECTION_INTERVAL": raw}).collection_interval == 10
        merged = merge_with_env(load_config(str(config_file)), {"METRICS_COLLECTION_INTERVAL": raw})
        assert merged.collection_interval == 10

    def test_invalid_interval_falls_back(self):
        assert load_from_env({"METRICS_COLLECTION_INTERVAL": "soon"}).collection_interval == 10

    def test_merge_overrides_non_empty_only(self, config_file):
        cfg = merge_with_env(load_config(str(config_file)), {
            "METRICS_API_KEY": "ew_env_key",
            "METRICS_HOSTNAME": "",
            "METRICS_TAGS": "role:db",
        })
        assert cfg.api_key == "ew_env_key"
        assert cfg.host_id == "host-7"
        assert cfg.tags == {"role": "db"}

    def test_load_with_defaults_falls_back_to_env(self, tmp_path):
        cfg = load_with_defaults(str(tmp_path / "missing.yaml"), {"METRICS_API_KEY": "k"})
        assert cfg.api_key == "k"


class TestDiscovery:
    def test_first_existing_wins(self, tmp_path):
        second = tmp_path / "second.yaml"
        third = tmp_path / "third.yaml"
        second.write_text("")
        third.write_text("")
        paths = [str(tmp_path / "first.yaml"), str(second), str(third)]
        assert find_config_file(paths) == str(second)

    def test_nothing_found(self, tmp_path):
        assert find_config_file([str(tmp_path / "x.yaml")]) == ""

    def test_reset_removes_existing(self, tmp_path):
        present = tmp_path / "present.yaml"
        present.write_text("api_key: x\n")
        removed = reset_config_files([str(present), str(tmp_path / "absent.yaml")])
        assert removed == [str(present)]
        assert not present.exists()


class TestResolve:
    def test_explicit_path_and_hostname_fallback(self, config_file, monkeypatch):
        monkeypatch.setattr(config_module.socket, "gethostname", lambda: "box-1")
        cfg = resolve_config(str(config_file), environ={})
        assert cfg.host_id == "host-7"
        assert cfg.hostname == "box-1"

    def test_discovered_file(self, config_file, monkeypatch):
        monkeypatch.setattr(config_module, "config_paths", lambda: [str(config_file)])
        cfg = resolve_config(environ={})
        assert cfg.api_key == "ew_file_key_abcdef"

    def test_env_only(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config_module, "config_paths", lambda: [str(tmp_path / "none.yaml")])
        monkeypatch.setattr(config_module.socket, "gethostname", lambda: "box-2")
        cfg = resolve_config(environ={"METRICS_API_KEY": "ew_env_key"})
        assert cfg.api_key == "ew_env_key"
        assert cfg.host_id == "box-2"
        assert cfg.hostname == "box-2"


class TestHelpers:
    @pytest.mark.parametrize("raw,expected", [
        ("", {}),
        ("env:prod", {"env": "prod"}),
        (" env : prod ,team:core", {"env": "prod", "team": "core"}),
        ("broken,also:bad:pair,ok:1", {"ok": "1"}),
    ])
    def test_parse_tags(self, raw, expected):
        assert parse_tags(raw) == expected

    @pytest.mark.parametrize("key,expected", [
        ("", "***"),
        ("12345678", "***"),
        ("ew_live_0123456789", "ew_live_***"),
    ])
    def test_mask_api_key(self, key, expected):
        assert mask_api_key(key) == expected

    def test_write_default_config_refuses_overwrite(self, tmp_path):
        target = tmp_path / "sdk-metrics.yaml"
        write_default_config(str(target))
        assert target.read_text() == DEFAULT_CONFIG_TEMPLATE
        with pytest.raises(ConfigError, match="already exists"):
            write_default_config(str(target))
        write_default_config(str(target), force=True)
