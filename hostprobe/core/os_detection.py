"""
OS Detection Module for hostprobe
=================================

Best-effort operating system estimate from three independent signals:

1. HTTP headers    - Server / X-Powered-By tokens on port 80
2. TCP TTL         - time-to-live of connections to common ports
3. Service presence - SSH vs SMB/RDP availability

The heuristics run concurrently. Each produces an OSInfo; the pure
``merge_os_evidence`` reducer keeps the most confident (name, version)
and the union of every heuristic's evidence. Confidence is heuristic and
explicitly partial.
"""

import asyncio
import logging
import re
import socket
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .models import OSInfo

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 2.0
HTTP_PORT = 80
MAX_RESPONSE = 4096

TTL_PORTS: Tuple[int, ...] = (22, 23, 80, 443, 445, 3389)
SERVICE_PORTS: Tuple[Tuple[int, str], ...] = ((22, "SSH"), (445, "SMB"), (3389, "RDP"))

LINUX_UNIX = "Linux/Unix"
WINDOWS = "Windows"
SOLARIS_AIX = "Solaris/AIX"

# Canonical initial TTLs
TTL_FAMILIES = {
    64: LINUX_UNIX,
    128: WINDOWS,
    255: SOLARIS_AIX,
}
TTL_CONFIDENCE = 0.7

# (token, OS family, base confidence) for the Server header
SERVER_TOKENS: List[Tuple[str, str, float]] = [
    ("Microsoft-IIS", WINDOWS, 0.9),
    ("nginx", LINUX_UNIX, 0.85),
    ("Apache", LINUX_UNIX, 0.8),
]
VERSION_BOOST = 0.1

# (token, confidence boost) for the X-Powered-By header
POWERED_BY_TOKENS: List[Tuple[str, float]] = [
    ("ASP.NET", 0.1),
    ("PHP", 0.05),
]

SERVICE_FAMILIES = {
    "SSH": (LINUX_UNIX, 0.8),
    "SMB": (WINDOWS, 0.9),
    "RDP": (WINDOWS, 0.9),
}

_SERVER_RE = re.compile(r"^Server:[ \t]*([^\r\n]*)", re.IGNORECASE | re.MULTILINE)
_POWERED_BY_RE = re.compile(r"^X-Powered-By:[ \t]*([^\r\n]*)", re.IGNORECASE | re.MULTILINE)
_VERSION_RE = re.compile(r"\d+\.\d+(?:\.\d+)*")


def _clamp(confidence: float) -> float:
    return round(max(0.0, min(1.0, confidence)), 4)


# =============================================================================
# PURE HEURISTICS
# =============================================================================

def extract_version(text: str) -> Optional[str]:
    found = _VERSION_RE.search(text or "")
    return found.group(0) if found else None


def analyze_http_headers(response: str) -> OSInfo:
    """
    Infer the OS family from HTTP response headers.

    Args:
        response: Raw HTTP response text (status line and headers)

    Returns:
        OSInfo; confidence 0.0 when no known token was present
    """
    features: List[str] = []
    name = "Unknown"
    version = None
    confidence = 0.0

    server_match = _SERVER_RE.search(response or "")
    if server_match:
        server = server_match.group(1).strip()
        features.append(f"Server: {server}")
        for token, family, base in SERVER_TOKENS:
            if token.lower() in server.lower():
                name = family
                confidence = base
                version = extract_version(server)
                if version:
                    confidence += VERSION_BOOST
                break

    powered_match = _POWERED_BY_RE.search(response or "")
    if powered_match:
        powered_by = powered_match.group(1).strip()
        features.append(f"Powered by: {powered_by}")
        for token, boost in POWERED_BY_TOKENS:
            if token.lower() in powered_by.lower():
                confidence += boost
                break

    # A powered-by hint alone does not name an OS
    if name == "Unknown":
        confidence = 0.0

    return OSInfo(name=name, version=version, confidence=_clamp(confidence), features=features)


def classify_ttl(samples: Sequence[Tuple[int, int]]) -> OSInfo:
    """
    Infer the OS family from (port, ttl) samples.

    The family with the most canonical-TTL votes wins; ties go to the
    family seen first.
    """
    features = [f"TTL: {ttl} (port {port})" for port, ttl in samples]
    votes = {}
    for _, ttl in samples:
        family = TTL_FAMILIES.get(ttl)
        if family:
            votes[family] = votes.get(family, 0) + 1

    if not votes:
        return OSInfo(features=features)

    best = max(votes, key=lambda family: votes[family])
    return OSInfo(name=best, confidence=TTL_CONFIDENCE, features=features)


def classify_services(present: Sequence[Tuple[int, str]]) -> OSInfo:
    """
    Infer the OS family from which well-known services answered.

    Args:
        present: (port, service name) pairs that accepted a connection
    """
    features = [f"Service: {service} (port {port})" for port, service in present]
    name = "Unknown"
    confidence = 0.0
    for _, service in present:
        family, score = SERVICE_FAMILIES.get(service, ("Unknown", 0.0))
        if score > confidence:
            name, confidence = family, score

    return OSInfo(name=name, confidence=confidence, features=features)


def merge_os_evidence(results: Iterable[OSInfo]) -> OSInfo:
    """
    Merge heuristic outputs into one estimate.

    The highest-confidence (name, version) wins (first one on ties).
    Evidence from every input is kept, de-duplicated in first-seen order.
    """
    best: Optional[OSInfo] = None
    features: List[str] = []
    seen = set()

    for info in results:
        if info is None:
            continue
        if info.confidence > 0.0 and (best is None or info.confidence > best.confidence):
            best = info
        for feature in info.features:
            if feature not in seen:
                seen.add(feature)
                features.append(feature)

    if best is None:
        return OSInfo(features=features)
    return OSInfo(
        name=best.name,
        version=best.version,
        confidence=best.confidence,
        features=features,
    )


# =============================================================================
# DETECTOR
# =============================================================================

class OSDetector:
    """
    Runs the three OS heuristics against a target and merges them.

    Usage:
        detector = OSDetector(timeout=2.0)
        info = await detector.detect("192.0.2.10")
    """

    def __init__(self,
                 timeout: float = DEFAULT_TIMEOUT,
                 open_connection: Callable = asyncio.open_connection,
                 http_port: int = HTTP_PORT,
                 ttl_ports: Sequence[int] = TTL_PORTS,
                 service_ports: Sequence[Tuple[int, str]] = SERVICE_PORTS):
        self.timeout = timeout
        self._open_connection = open_connection
        self.http_port = http_port
        self.ttl_ports = tuple(ttl_ports)
        self.service_ports = tuple(service_ports)

    async def detect(self, target: str) -> OSInfo:
        """
        Estimate the target's OS.

        Returns:
            Merged OSInfo; OSInfo("Unknown", None, 0.0, []) when nothing answered
        """
        results = await asyncio.gather(
            self.detect_via_http(target),
            self.detect_via_tcp(target),
            self.detect_via_services(target),
            return_exceptions=True,
        )

        infos = []
        for heuristic, result in zip(("http", "tcp", "services"), results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.debug(f"OS heuristic {heuristic} failed for {target}: {result!r}")
                continue
            infos.append(result)

        merged = merge_os_evidence(infos)
        logger.info(f"OS estimate for {target}: {merged.name} ({merged.confidence:.2f})")
        return merged

    async def _connect(self, target: str, port: int):
        return await asyncio.wait_for(
            self._open_connection(target, port),
            timeout=self.timeout
        )

    @staticmethod
    async def _close(writer) -> None:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    async def detect_via_http(self, target: str) -> OSInfo:
        """Issue a minimal GET on the HTTP port and analyse the headers."""
        try:
            reader, writer = await self._connect(target, self.http_port)
        except (asyncio.TimeoutError, OSError):
            return OSInfo()

        try:
            writer.write(f"GET / HTTP/1.1\r\nHost: {target}\r\nConnection: close\r\n\r\n".encode())
            await asyncio.wait_for(writer.drain(), timeout=self.timeout)
            response = await asyncio.wait_for(reader.read(MAX_RESPONSE), timeout=self.timeout)
        except (asyncio.TimeoutError, OSError):
            return OSInfo()
        finally:
            await self._close(writer)

        return analyze_http_headers(response.decode('utf-8', errors='replace'))

    @staticmethod
    def read_ttl(writer) -> Optional[int]:
        """
        TTL (or IPv6 hop limit) of a connected stream's socket.

        This is the local socket's outgoing value, not the TTL of packets
        received from the target, so it reflects the scanning host's stack
        unless the route or socket options change it.
        """
        sock = writer.get_extra_info('socket')
        if sock is None:
            return None
        try:
            if sock.family == socket.AF_INET6:
                return sock.getsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS)
            return sock.getsockopt(socket.IPPROTO_IP, socket.IP_TTL)
        except (OSError, AttributeError):
            return None

    async def _sample_ttl(self, target: str, port: int) -> Optional[Tuple[int, int]]:
        try:
            _, writer = await self._connect(target, port)
        except (asyncio.TimeoutError, OSError):
            return None
        try:
            ttl = self.read_ttl(writer)
        finally:
            await self._close(writer)
        return (port, ttl) if ttl is not None else None

    async def detect_via_tcp(self, target: str) -> OSInfo:
        """Sample TTLs from the common ports in parallel."""
        samples = await asyncio.gather(*(self._sample_ttl(target, port) for port in self.ttl_ports))
        return classify_ttl([s for s in samples if s is not None])

    async def _service_present(self, target: str, port: int, service: str) -> Optional[Tuple[int, str]]:
        try:
            _, writer = await self._connect(target, port)
        except (asyncio.TimeoutError, OSError):
            return None
        await self._close(writer)
        return (port, service)

    async def detect_via_services(self, target: str) -> OSInfo:
        """Check which OS-typical services accept connections."""
        present = await asyncio.gather(
            *(self._service_present(target, port, service) for port, service in self.service_ports)
        )
        return classify_services([p for p in present if p is not None])


async def detect_os_async(target: str, timeout: float = DEFAULT_TIMEOUT) -> OSInfo:
    """Convenience function: run OS detection once against a target."""
    return await OSDetector(timeout=timeout).detect(target)


__all__ = [
    'OSDetector',
    'analyze_http_headers',
    'classify_ttl',
    'classify_services',
    'merge_os_evidence',
    'extract_version',
    'detect_os_async',
    'TTL_PORTS',
    'SERVICE_PORTS',
]
