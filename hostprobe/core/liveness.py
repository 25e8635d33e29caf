"""
Host Liveness Module for hostprobe
==================================

Cheap "is anything there?" check run before a full sweep.

1. TCP connect to a handful of common ports
2. If none accepts and the target is IPv4, one ICMP echo over a raw socket

Raw sockets need privileges. Without them the ICMP step is skipped and the
host is reported as not alive, never as an error.
"""

import asyncio
import ipaddress
import logging
import os
import socket
import time
from typing import Iterable, List, Optional

from .checksum import build_icmp_echo, parse_icmp_echo_reply
from .models import InvalidTargetError, resolve_target

logger = logging.getLogger(__name__)


LIVENESS_PORTS = (80, 443, 22, 3389)
DEFAULT_TIMEOUT = 1.0
DEFAULT_CONCURRENCY = 64
RECV_SIZE = 1024


async def _tcp_answers(address: str, port: int, timeout: float) -> bool:
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(address, port),
            timeout=timeout
        )
    except (asyncio.TimeoutError, OSError):
        return False

    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass
    return True


async def icmp_echo(address: str, timeout: float, sequence: int = 1) -> bool:
    """
    Send one ICMP echo request and wait for the matching reply.

    Returns:
        True on an echo reply from ``address``; False on timeout, on a
        non-IPv4 address or when raw sockets are not permitted
    """
    try:
        target = ipaddress.ip_address(address)
    except ValueError:
        return False
    if target.version != 4:
        return False

    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
    except (OSError, PermissionError) as e:
        logger.debug(f"ICMP echo to {address} skipped: {e}")
        return False

    identifier = os.getpid() & 0xFFFF
    loop = asyncio.get_running_loop()
    deadline = time.monotonic() + timeout
    try:
        sock.setblocking(False)
        sock.sendto(build_icmp_echo(identifier, sequence), (address, 0))

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            packet = await asyncio.wait_for(loop.sock_recv(sock, RECV_SIZE), timeout=remaining)
            if len(packet) < 20 or socket.inet_ntoa(packet[12:16]) != address:
                continue
            if parse_icmp_echo_reply(packet) == (identifier, sequence):
                return True
    except asyncio.TimeoutError:
        return False
    except OSError as e:
        logger.debug(f"ICMP echo to {address} failed: {e}")
        return False
    finally:
        sock.close()


async def is_alive(target: str, timeout: float = DEFAULT_TIMEOUT,
                   ports: Iterable[int] = LIVENESS_PORTS) -> bool:
    """
    Decide whether a host is reachable.

    Args:
        target: IP address or hostname
        timeout: Per-attempt timeout in seconds
        ports: TCP ports tried before falling back to ICMP

    Returns:
        True if any port accepts a connection or the host answers an echo
    """
    try:
        address = resolve_target(target)
    except InvalidTargetError as e:
        logger.debug(f"Liveness check skipped: {e}")
        return False

    answers = await asyncio.gather(*(_tcp_answers(address, port, timeout) for port in ports))
    if any(answers):
        return True
    return await icmp_echo(address, timeout)


async def discover_hosts(addresses: Iterable[str],
                         timeout: float = DEFAULT_TIMEOUT,
                         concurrency: int = DEFAULT_CONCURRENCY) -> List[str]:
    """
    Check many hosts concurrently.

    Returns:
        Live hosts, sorted by address
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    candidates = list(dict.fromkeys(addresses))

    async def check(address: str) -> Optional[str]:
        async with semaphore:
            return address if await is_alive(address, timeout) else None

    results = await asyncio.gather(*(check(address) for address in candidates))
    alive = [address for address in results if address is not None]
    logger.info(f"Host discovery: {len(alive)}/{len(candidates)} hosts alive")
    return sorted(alive, key=_address_key)


def _address_key(address: str):
    try:
        ip = ipaddress.ip_address(address)
        return (ip.version, int(ip), address)
    except ValueError:
        return (99, 0, address)


__all__ = [
    'is_alive',
    'icmp_echo',
    'discover_hosts',
    'LIVENESS_PORTS',
]
