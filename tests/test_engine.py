import asyncio

import pytest

import hostprobe
from hostprobe.config import ConfigManager, ScanConfig
from hostprobe.core.models import InvalidPortRangeError, OSInfo, PortRange
from hostprobe.engine import ReconEngine, as_port_range, create_engine, detect_service, scan


def test_as_port_range():
    assert as_port_range((1, 10)) == PortRange(1, 10)
    assert as_port_range(PortRange(5, 6)) == PortRange(5, 6)
    with pytest.raises(InvalidPortRangeError):
        as_port_range((1, 70000))


def test_public_api_exports():
    assert hostprobe.__version__ == "1.0.0"
    for name in ("scan", "detect_service", "detect_os", "ReconEngine", "PortRange", "OSInfo"):
        assert hasattr(hostprobe, name)


def test_scan_finds_http_listener_and_labels_it(listener, http_response):
    async def run():
        async with listener(response=http_response) as port:
            open_ports = await scan("127.0.0.1", (port, port), "tcp", timeout=1.0, concurrency=10)
            service = await detect_service("127.0.0.1", port, timeout=0.3)
            return port, open_ports, service

    port, open_ports, service = asyncio.run(run())
    assert open_ports == [port]
    assert service == "HTTP"


def test_scan_inverted_range_is_empty():
    assert asyncio.run(scan("127.0.0.1", (200, 100))) == []


def test_create_engine_from_config_manager(monkeypatch):
    monkeypatch.setenv("HOSTPROBE_RATE_MAX_RATE", "300")
    engine = create_engine(ConfigManager())
    assert isinstance(engine, ReconEngine)
    assert engine.rate_controller.max_rate == 300
    assert engine.rate_controller.current_rate == 300


def test_engine_make_scanner_uses_config():
    engine = ReconEngine(ScanConfig(start_port=20, end_port=25, batch_size=2, reuse_connections=True))
    scanner = engine.make_scanner("127.0.0.1")
    assert scanner.port_range == PortRange(20, 25)
    assert scanner.batch_size == 2
    assert scanner.rate_controller is engine.rate_controller
    assert scanner.connection_pool is not None


def test_engine_recon_report(listener, http_response):
    config = ScanConfig(timeout=1.0, service_timeout=0.3, os_timeout=0.3)
    engine = ReconEngine(config)

    async def run():
        async with listener(response=http_response) as port:
            report = await engine.recon("127.0.0.1", (port, port))
            again = await engine.detect_service("127.0.0.1", port)
            return port, report, again

    port, report, again = asyncio.run(run())
    assert report.alive is True
    assert report.open_ports == [port]
    assert report.services == [(port, "HTTP")]
    assert again == "HTTP"
    assert isinstance(report.os_info, OSInfo)

    data = report.to_dict()
    assert data["services"] == [{"port": port, "service": "HTTP"}]
    assert engine.get_stats()["services_cached"] == 1


def test_engine_recon_skips_dead_host(monkeypatch):
    engine = ReconEngine(ScanConfig(timeout=0.2))

    async def not_alive(target):
        return False

    monkeypatch.setattr(engine, "is_alive", not_alive)
    report = asyncio.run(engine.recon("127.0.0.1", (1, 10), check_alive=True))
    assert report.alive is False
    assert report.open_ports == []
