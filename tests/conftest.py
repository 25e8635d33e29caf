"""Shared fixtures: loopback listeners, free ports and a fake clock."""

import asyncio
import contextlib
import socket

import pytest


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ConnectionCounter:
    """open_connection double that counts connects and delegates to asyncio."""

    def __init__(self):
        self.calls = []

    async def __call__(self, host, port, **kwargs):
        self.calls.append((host, port))
        return await asyncio.open_connection(host, port, **kwargs)

    def count(self, port=None) -> int:
        if port is None:
            return len(self.calls)
        return sum(1 for _, p in self.calls if p == port)


def _free_port(kind=socket.SOCK_STREAM) -> int:
    with socket.socket(socket.AF_INET, kind) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@contextlib.asynccontextmanager
async def tcp_listener(response: bytes = b"", banner: bytes = b""):
    """
    Loopback TCP server.

    Sends ``banner`` on connect; after the first chunk received from the
    client, sends ``response`` and closes.
    """

    async def handle(reader, writer):
        try:
            if banner:
                writer.write(banner)
                await writer.drain()
            if response:
                await reader.read(1024)
                writer.write(response)
                await writer.drain()
            else:
                await reader.read(1024)
        except (ConnectionError, OSError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        server.close()
        await server.wait_closed()


class _EchoProtocol(asyncio.DatagramProtocol):
    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data, addr):
        self.transport.sendto(b"pong", addr)


@contextlib.asynccontextmanager
async def udp_responder():
    """Loopback UDP server answering every datagram with b'pong'."""
    loop = asyncio.get_running_loop()
    transport, _ = await loop.create_datagram_endpoint(
        _EchoProtocol, local_addr=("127.0.0.1", 0)
    )
    port = transport.get_extra_info("sockname")[1]
    try:
        yield port
    finally:
        transport.close()


HTTP_RESPONSE = (
    b"HTTP/1.0 200 OK\r\n"
    b"Server: Apache/2.4.41 (Ubuntu)\r\n"
    b"Content-Length: 2\r\n"
    b"\r\n"
    b"ok"
)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def connection_counter():
    return ConnectionCounter()


@pytest.fixture
def free_port():
    return _free_port


@pytest.fixture
def listener():
    return tcp_listener


@pytest.fixture
def udp_listener():
    return udp_responder


@pytest.fixture
def http_response():
    return HTTP_RESPONSE
