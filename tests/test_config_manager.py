import json
import logging
import os

import pytest

from hostprobe.config import ConfigManager, ConfigSchema, ScanConfig, create_default_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith(ConfigManager.ENV_PREFIX):
            monkeypatch.delenv(key)


def test_defaults_validate():
    manager = ConfigManager()
    assert manager.validate()
    assert manager.get("scan.timeout") == 0.2
    assert manager.get("rate.max_rate") == 1000
    assert manager.get("missing.key", "fallback") == "fallback"


def test_to_scan_config_defaults_match_dataclass():
    assert ConfigManager().to_scan_config() == ScanConfig()


def test_load_merges_over_defaults(tmp_path):
    path = tmp_path / "hostprobe.json"
    path.write_text(json.dumps({"scan": {"timeout": 0.5, "scan_type": "udp"}, "rate": {"max_rate": 400}}))

    manager = ConfigManager(str(path))
    assert manager.load()
    config = manager.to_scan_config()
    assert config.timeout == 0.5
    assert config.scan_type == "udp"
    assert config.max_rate == 400
    assert config.concurrency == 1000


def test_invalid_file_falls_back_to_defaults(tmp_path, caplog):
    path = tmp_path / "hostprobe.json"
    path.write_text(json.dumps({"scan": {"end_port": 70000}}))

    manager = ConfigManager(str(path))
    with caplog.at_level(logging.WARNING, logger="hostprobe"):
        assert manager.load() is False
    assert manager.get("scan.end_port") == 1024
    assert "scan.end_port" in caplog.text


def test_inverted_rate_bounds_rejected(tmp_path):
    path = tmp_path / "hostprobe.json"
    path.write_text(json.dumps({"rate": {"min_rate": 500, "max_rate": 100}}))
    manager = ConfigManager(str(path))
    assert manager.load() is False
    assert manager.get("rate.min_rate") == 100


def test_unparseable_and_missing_files(tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")
    assert ConfigManager(str(bad)).load() is False
    assert ConfigManager(str(tmp_path / "missing.json")).load() is False


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("HOSTPROBE_SCAN_CONCURRENCY", "250")
    monkeypatch.setenv("HOSTPROBE_SCAN_REUSE_CONNECTIONS", "yes")
    monkeypatch.setenv("HOSTPROBE_SERVICE_TIMEOUT", "1.5")
    manager = ConfigManager()
    config = manager.to_scan_config()
    assert config.concurrency == 250
    assert config.reuse_connections is True
    assert config.service_timeout == 1.5


def test_set_and_save_roundtrip(tmp_path):
    path = tmp_path / "out.json"
    manager = ConfigManager(str(path))
    manager.set("service.fingerprint_source", "/etc/hostprobe/fingerprints.json")
    assert manager.modified
    assert manager.save()
    assert not manager.modified

    reloaded = ConfigManager(str(path))
    assert reloaded.load()
    assert reloaded.to_scan_config().fingerprint_source == "/etc/hostprobe/fingerprints.json"


def test_create_default_config(tmp_path):
    path = tmp_path / "default.json"
    assert create_default_config(str(path))
    assert json.loads(path.read_text()) == ConfigSchema.get_defaults()


def test_undecodable_file_falls_back_to_defaults(tmp_path, caplog):
    path = tmp_path / "hostprobe.json"
    path.write_bytes(b'{"version": "\xff"}')

    manager = ConfigManager(str(path))
    with caplog.at_level(logging.WARNING, logger="hostprobe"):
        assert manager.load() is False
    assert manager.to_scan_config() == ScanConfig()
    assert "Config parse error" in caplog.text
