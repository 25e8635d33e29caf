import asyncio
import socket

from hostprobe.core import liveness
from hostprobe.core.liveness import discover_hosts, icmp_echo, is_alive


def test_listener_on_probe_port_means_alive(listener):
    async def run():
        async with listener() as port:
            return await is_alive("127.0.0.1", timeout=0.5, ports=(port,))

    assert asyncio.run(run()) is True


def test_unresolvable_target_is_not_alive():
    assert asyncio.run(is_alive("no-such-host.invalid", timeout=0.2)) is False


def test_ipv6_skips_icmp():
    assert asyncio.run(icmp_echo("::1", timeout=0.2)) is False


def test_missing_raw_socket_privilege_is_not_alive(monkeypatch):
    def denied(*args, **kwargs):
        raise PermissionError("Operation not permitted")

    async def run():
        # Patched inside the loop so the loop's own sockets are unaffected
        monkeypatch.setattr(socket, "socket", denied)
        try:
            # No TCP ports to try, so the ICMP fallback decides
            return await is_alive("127.0.0.1", timeout=0.2, ports=())
        finally:
            monkeypatch.undo()

    assert asyncio.run(run()) is False


def test_discover_hosts_sorted_and_deduplicated(monkeypatch):
    alive = {"10.0.0.10", "10.0.0.2", "10.0.0.9"}

    async def fake_is_alive(address, timeout):
        return address in alive

    monkeypatch.setattr(liveness, "is_alive", fake_is_alive)
    result = asyncio.run(discover_hosts(
        ["10.0.0.10", "10.0.0.3", "10.0.0.2", "10.0.0.9", "10.0.0.2"], timeout=0.1, concurrency=2
    ))
    assert result == ["10.0.0.2", "10.0.0.9", "10.0.0.10"]
