"""
Service Detection Module for hostprobe

Resolves a best-effort service label for an open port. Three tiers are
tried in order and the first one that produces a label wins:

1. Fingerprint match against the ServiceFingerprintDB
2. Protocol-specific active probe (HTTP request, banner read, ...)
3. Static port -> service name table

Results are cached per (address, port). Network failures fall through to
the next tier and are never raised to the caller.
"""

import asyncio
import logging
import re
import ssl
import struct
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from .service_fingerprints import ServiceFingerprintDB

logger = logging.getLogger(__name__)


DEFAULT_TIMEOUT = 2.0
DEFAULT_CONCURRENCY = 100
PROTOCOL_SUFFIX_WEIGHT = 0.8
MAX_RESPONSE = 4096

# Recoverable failures while talking to a service
PROBE_ERRORS = (asyncio.TimeoutError, OSError, ssl.SSLError, EOFError, ValueError)


class ProbeType(Enum):
    """Types of protocol-specific probes"""
    HTTP = "http"
    HTTPS = "https"
    SSH = "ssh"
    FTP = "ftp"
    SMTP = "smtp"
    POP3 = "pop3"
    IMAP = "imap"
    MYSQL = "mysql"
    POSTGRESQL = "postgresql"
    REDIS = "redis"
    GENERIC = "generic"


# Ports that get a protocol-specific probe
PORT_PROBES: Dict[int, ProbeType] = {
    80: ProbeType.HTTP,
    8000: ProbeType.HTTP,
    8008: ProbeType.HTTP,
    8080: ProbeType.HTTP,
    8888: ProbeType.HTTP,
    443: ProbeType.HTTPS,
    8443: ProbeType.HTTPS,
    21: ProbeType.FTP,
    22: ProbeType.SSH,
    25: ProbeType.SMTP,
    587: ProbeType.SMTP,
    110: ProbeType.POP3,
    143: ProbeType.IMAP,
    3306: ProbeType.MYSQL,
    5432: ProbeType.POSTGRESQL,
    6379: ProbeType.REDIS,
}

# Last-resort labels by well-known port
STATIC_PORT_SERVICES: Dict[int, str] = {
    20: "FTP-Data",
    21: "FTP",
    22: "SSH",
    23: "Telnet",
    25: "SMTP",
    53: "DNS",
    67: "DHCP",
    69: "TFTP",
    80: "HTTP",
    88: "Kerberos",
    110: "POP3",
    111: "RPCBind",
    123: "NTP",
    135: "MSRPC",
    137: "NetBIOS-NS",
    138: "NetBIOS-DGM",
    139: "NetBIOS-SSN",
    143: "IMAP",
    161: "SNMP",
    389: "LDAP",
    443: "HTTPS",
    445: "SMB",
    465: "SMTPS",
    514: "Syslog",
    587: "SMTP",
    636: "LDAPS",
    873: "Rsync",
    993: "IMAPS",
    995: "POP3S",
    1433: "MSSQL",
    1521: "Oracle",
    1883: "MQTT",
    2049: "NFS",
    2181: "Zookeeper",
    3306: "MySQL",
    3389: "RDP",
    5432: "PostgreSQL",
    5672: "AMQP",
    5900: "VNC",
    6379: "Redis",
    8080: "HTTP-Proxy",
    9092: "Kafka",
    9200: "Elasticsearch",
    11211: "Memcached",
    27017: "MongoDB",
}

# Banner signatures used by the generic probe on ports without a dedicated probe
BANNER_SIGNATURES: List[Tuple[str, str]] = [
    (r"^SSH-\d", "SSH"),
    (r"^HTTP/\d", "HTTP"),
    (r"^220[ -].*FTP", "FTP"),
    (r"^220[ -].*(SMTP|ESMTP|Postfix|Exim|Sendmail)", "SMTP"),
    (r"^\+OK", "POP3"),
    (r"^\* OK", "IMAP"),
    (r"^-(ERR|NOAUTH|DENIED)", "Redis"),
    (r"^RFB \d{3}\.\d{3}", "VNC"),
    (r"mysql_native_password|caching_sha2_password", "MySQL"),
]

_COMPILED_SIGNATURES = [(re.compile(p, re.IGNORECASE), name) for p, name in BANNER_SIGNATURES]


def classify_banner(banner: str) -> Optional[str]:
    """
    Map a raw banner to a service label using BANNER_SIGNATURES.

    Args:
        banner: Decoded banner text

    Returns:
        Service label or None
    """
    if not banner:
        return None
    text = banner.lstrip()
    for regex, name in _COMPILED_SIGNATURES:
        if regex.search(text):
            return name
    return None


class DetectionCache:
    """
    (address, port) -> service label cache.

    Written once per pair and read many times. A plain mutex stands in for a
    reader-preferring lock: callers share one event loop, so contention is
    limited to the odd worker thread and each critical section is a single
    dict lookup or insert.
    """

    def __init__(self):
        self._entries: Dict[Tuple[str, int], str] = {}
        self._lock = threading.Lock()

    def get(self, address: str, port: int) -> Optional[str]:
        with self._lock:
            return self._entries.get((address, port))

    def put(self, address: str, port: int, service: str) -> str:
        """Store a label unless one is already present; return the stored label."""
        with self._lock:
            return self._entries.setdefault((address, port), service)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: Tuple[str, int]) -> bool:
        with self._lock:
            return key in self._entries


class ServiceDetector:
    """
    Service detection class for fingerprinting, banner probing and fallback.

    Args:
        timeout: Per-step connection/read timeout in seconds
        concurrency: Maximum simultaneous identification connections
        fingerprint_db: Fingerprint table (loaded from fingerprint_source if None)
        fingerprint_source: Optional JSON path or record list for the table
        open_connection: Coroutine function used for every connection
        metrics: Optional ScanMetrics to update
    """

    def __init__(self,
                 timeout: float = DEFAULT_TIMEOUT,
                 concurrency: int = DEFAULT_CONCURRENCY,
                 fingerprint_db: Optional[ServiceFingerprintDB] = None,
                 fingerprint_source: Optional[Union[str, Path, List[Mapping[str, Any]]]] = None,
                 open_connection: Callable = asyncio.open_connection,
                 metrics=None):
        self.timeout = timeout
        self.concurrency = max(1, concurrency)
        self._open_connection = open_connection
        self.fingerprint_db = fingerprint_db or ServiceFingerprintDB.load(
            fingerprint_source, open_connection=open_connection
        )
        self.cache = DetectionCache()
        self.metrics = metrics

        self._semaphore: Optional[asyncio.Semaphore] = None
        self._semaphore_loop = None

    def _limiter(self) -> asyncio.Semaphore:
        """Identification limiter bound to the running event loop."""
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def detect(self, address: str, port: int) -> Optional[str]:
        """
        Detect the service on a port.

        Args:
            address: Target IP address
            port: Target port

        Returns:
            Service label or None when nothing could be determined
        """
        cached = self.cache.get(address, port)
        if cached is not None:
            return cached

        async with self._limiter():
            # Another task may have resolved it while we waited for a slot
            cached = self.cache.get(address, port)
            if cached is not None:
                return cached
            service = await self._resolve(address, port)

        if service is None:
            logger.debug(f"No service identified on {address}:{port}")
            return None

        service = self.cache.put(address, port, service)
        if self.metrics is not None:
            self.metrics.service_identified()
        return service

    async def detect_batch(self, address: str,
                           ports: List[int]) -> List[Tuple[int, Optional[str]]]:
        """
        Detect services on several ports concurrently.

        Returns:
            (port, label) pairs in the order the ports were given; a port whose
            detection raised gets None
        """
        results = await asyncio.gather(
            *(self.detect(address, port) for port in ports), return_exceptions=True
        )
        labels = []
        for port, result in zip(ports, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.debug(f"Service detection failed on {address}:{port}: {result}")
                result = None
            labels.append(result)
        return list(zip(ports, labels))

    def get_probe_type_for_port(self, port: int) -> ProbeType:
        return PORT_PROBES.get(port, ProbeType.GENERIC)

    # =========================================================================
    # RESOLUTION TIERS
    # =========================================================================

    async def _resolve(self, address: str, port: int) -> Optional[str]:
        service = await self._from_fingerprint(address, port)
        if service:
            return service

        try:
            service = await self._probe_service(address, port)
        except PROBE_ERRORS as e:
            logger.debug(f"Active probe of {address}:{port} failed: {e!r}")
            service = None
        if service:
            return service

        return STATIC_PORT_SERVICES.get(port)

    async def _from_fingerprint(self, address: str, port: int) -> Optional[str]:
        try:
            match = await self.fingerprint_db.probe(address, port, self.timeout)
        except PROBE_ERRORS as e:
            logger.debug(f"Fingerprint probe of {address}:{port} failed: {e!r}")
            return None
        if match is None:
            return None

        fp = match.fingerprint
        logger.debug(
            f"{address}:{port} matched fingerprint {fp.name} "
            f"(weight {fp.weight:.2f}, version {match.version})"
        )
        if fp.weight > PROTOCOL_SUFFIX_WEIGHT:
            return f"{fp.name} ({fp.protocol})"
        return fp.name

    async def _probe_service(self, address: str, port: int) -> Optional[str]:
        probe_map = {
            ProbeType.HTTP: self.probe_http,
            ProbeType.HTTPS: self.probe_https,
            ProbeType.SSH: self.probe_ssh,
            ProbeType.FTP: self.probe_ftp,
            ProbeType.SMTP: self.probe_smtp,
            ProbeType.POP3: self.probe_pop3,
            ProbeType.IMAP: self.probe_imap,
            ProbeType.MYSQL: self.probe_mysql,
            ProbeType.POSTGRESQL: self.probe_postgresql,
            ProbeType.REDIS: self.probe_redis,
        }
        probe_func = probe_map.get(self.get_probe_type_for_port(port), self.probe_generic)
        return await probe_func(address, port)

    # =========================================================================
    # PROBE FUNCTIONS
    # =========================================================================

    async def _exchange(self, host: str, port: int, payload: Optional[bytes] = None,
                        read_banner: bool = False, **connect_kwargs) -> Tuple[bytes, bytes]:
        """
        Connect, optionally read a banner, optionally send a payload and read the reply.

        Returns:
            (banner, response) bytes; either may be empty
        """
        reader, writer = await asyncio.wait_for(
            self._open_connection(host, port, **connect_kwargs),
            timeout=self.timeout
        )
        banner = b""
        response = b""
        try:
            if read_banner:
                try:
                    banner = await asyncio.wait_for(reader.read(MAX_RESPONSE), timeout=self.timeout)
                except asyncio.TimeoutError:
                    banner = b""
            if payload is not None:
                writer.write(payload)
                await asyncio.wait_for(writer.drain(), timeout=self.timeout)
                try:
                    response = await asyncio.wait_for(reader.read(MAX_RESPONSE), timeout=self.timeout)
                except asyncio.TimeoutError:
                    response = b""
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError, ssl.SSLError):
                pass
        return banner, response

    @staticmethod
    def _http_request(host: str) -> bytes:
        return f"GET / HTTP/1.1\r\nHost: {host}\r\nConnection: close\r\n\r\n".encode()

    @staticmethod
    def _text(data: bytes) -> str:
        return data.decode('utf-8', errors='replace')

    async def probe_http(self, host: str, port: int) -> Optional[str]:
        """Sends: GET / HTTP/1.1 and expects an HTTP status line."""
        _, response = await self._exchange(host, port, payload=self._http_request(host))
        if self._text(response).startswith("HTTP/"):
            return "HTTP"
        return None

    async def probe_https(self, host: str, port: int) -> Optional[str]:
        """TLS handshake (no verification); falls back to plain HTTP."""
        context = ssl.create_default_context()
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        try:
            await self._exchange(host, port, payload=self._http_request(host), ssl=context)
            return "HTTPS"
        except ssl.SSLError:
            pass
        return await self.probe_http(host, port)

    async def probe_ssh(self, host: str, port: int) -> Optional[str]:
        """SSH servers send their banner immediately on connection."""
        banner, _ = await self._exchange(host, port, read_banner=True)
        if self._text(banner).startswith("SSH-"):
            return "SSH"
        return None

    async def probe_ftp(self, host: str, port: int) -> Optional[str]:
        banner, _ = await self._exchange(host, port, read_banner=True)
        if self._text(banner).startswith("220"):
            return "FTP"
        return None

    async def probe_smtp(self, host: str, port: int) -> Optional[str]:
        """Reads the 220 greeting, then confirms with EHLO."""
        banner, response = await self._exchange(
            host, port, payload=b"EHLO hostprobe\r\n", read_banner=True
        )
        text = self._text(banner)
        if text.startswith("220") or self._text(response).startswith("250"):
            return "SMTP"
        return None

    async def probe_pop3(self, host: str, port: int) -> Optional[str]:
        banner, _ = await self._exchange(host, port, read_banner=True)
        if self._text(banner).startswith("+OK"):
            return "POP3"
        return None

    async def probe_imap(self, host: str, port: int) -> Optional[str]:
        banner, _ = await self._exchange(host, port, read_banner=True)
        if self._text(banner).startswith("* OK"):
            return "IMAP"
        return None

    async def probe_mysql(self, host: str, port: int) -> Optional[str]:
        """Reads the MySQL greeting packet (protocol version 10)."""
        greeting, _ = await self._exchange(host, port, read_banner=True)
        if len(greeting) > 4 and greeting[4] == 0x0A:
            return "MySQL"
        if b"mysql" in greeting.lower():
            return "MySQL"
        return None

    async def probe_postgresql(self, host: str, port: int) -> Optional[str]:
        """Sends an SSLRequest; PostgreSQL answers with a single 'S' or 'N'."""
        ssl_request = struct.pack("!II", 8, 80877103)
        _, response = await self._exchange(host, port, payload=ssl_request)
        if response[:1] in (b"S", b"N"):
            return "PostgreSQL"
        return None

    async def probe_redis(self, host: str, port: int) -> Optional[str]:
        """Sends PING; Redis answers +PONG or an auth error."""
        _, response = await self._exchange(host, port, payload=b"*1\r\n$4\r\nPING\r\n")
        text = self._text(response)
        if text.startswith("+PONG") or text.startswith("-NOAUTH") or text.startswith("-ERR"):
            return "Redis"
        return None

    async def probe_generic(self, host: str, port: int) -> Optional[str]:
        """Read whatever is sent; if the service is silent, try an HTTP request."""
        banner, _ = await self._exchange(host, port, read_banner=True)
        service = classify_banner(self._text(banner))
        if service or banner:
            return service

        _, response = await self._exchange(host, port, payload=self._http_request(host))
        return classify_banner(self._text(response))


async def detect_service_async(host: str, port: int,
                               timeout: float = DEFAULT_TIMEOUT) -> Optional[str]:
    """
    Convenience function to detect a single service.

    Args:
        host: Target host
        port: Target port
        timeout: Connection timeout in seconds

    Returns:
        Service label or None
    """
    detector = ServiceDetector(timeout=timeout)
    return await detector.detect(host, port)


__all__ = [
    'ServiceDetector',
    'DetectionCache',
    'ProbeType',
    'PORT_PROBES',
    'STATIC_PORT_SERVICES',
    'BANNER_SIGNATURES',
    'classify_banner',
    'detect_service_async',
]
