"""
Service Fingerprint Database for hostprobe

Port-keyed table of service fingerprints plus the single connect-and-read
probe that matches a live response against them.

Fingerprints are loaded once, either from an external JSON source or from
the built-in defaults, and never mutated afterwards. Patterns are compiled
on first use and cached by pattern text.
"""

import asyncio
import json
import logging
import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Pattern, Tuple, Union

import jsonschema

logger = logging.getLogger(__name__)


DEFAULT_READ_SIZE = 1024
# Sent when a port's fingerprints expect a response rather than a banner
DEFAULT_TRIGGER = b"HEAD / HTTP/1.0\r\n\r\n"


class FingerprintSourceError(Exception):
    """Raised when an external fingerprint source is malformed."""
    pass


@dataclass(frozen=True)
class ServiceFingerprint:
    """
    Service fingerprint record.

    Attributes:
        name: Service label (e.g. "SSH")
        protocol: Transport protocol label (e.g. "TCP")
        port: Port this fingerprint is registered under
        banner_pattern: Regex tested against unsolicited banner bytes
        response_pattern: Regex tested against the reply to a trigger request
        weight: Confidence weight 0.0 - 1.0
        description: Free-form description
        version_pattern: Regex whose first group (or whole match) is the version
    """
    name: str
    protocol: str
    port: int
    banner_pattern: Optional[str] = None
    response_pattern: Optional[str] = None
    weight: float = 1.0
    description: Optional[str] = None
    version_pattern: Optional[str] = None

    @property
    def patterns(self) -> Tuple[str, ...]:
        return tuple(p for p in (self.banner_pattern, self.response_pattern) if p)


@dataclass(frozen=True)
class FingerprintMatch:
    """A fingerprint that matched, with the text it matched against."""
    fingerprint: ServiceFingerprint
    banner: str
    version: Optional[str] = None


FINGERPRINT_SCHEMA: Dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "required": ["name", "port"],
        "properties": {
            "name": {"type": "string", "minLength": 1},
            "protocol": {"type": "string", "minLength": 1},
            "port": {"type": "integer", "minimum": 0, "maximum": 65535},
            "banner_pattern": {"type": ["string", "null"]},
            "response_pattern": {"type": ["string", "null"]},
            "weight": {"type": "number", "minimum": 0.0, "maximum": 1.0},
            "description": {"type": ["string", "null"]},
            "version_pattern": {"type": ["string", "null"]},
        },
        "additionalProperties": False,
    },
}


# Built-in default fingerprint set
DEFAULT_FINGERPRINTS: List[ServiceFingerprint] = [
    # Remote management
    ServiceFingerprint(
        name="SSH", protocol="TCP", port=22,
        banner_pattern=r"SSH-\d\.\d",
        weight=0.95,
        description="Secure Shell",
        version_pattern=r"SSH-[\d.]+-(\S+)",
    ),
    ServiceFingerprint(
        name="Telnet", protocol="TCP", port=23,
        banner_pattern=r"(?i)login:|username:",
        weight=0.7,
    ),
    ServiceFingerprint(
        name="RDP", protocol="TCP", port=3389,
        weight=0.95,
        description="Remote Desktop Protocol",
    ),

    # File transfer / sharing
    ServiceFingerprint(
        name="FTP", protocol="TCP", port=21,
        banner_pattern=r"^220[ -].*FTP",
        weight=0.9,
        version_pattern=r"\(([^)]+)\)",
    ),
    ServiceFingerprint(
        name="SMB", protocol="TCP", port=445,
        weight=0.9,
    ),

    # Web
    ServiceFingerprint(
        name="HTTP", protocol="TCP", port=80,
        banner_pattern=r"HTTP/\d\.\d",
        response_pattern=r"HTTP/\d\.\d",
        weight=1.0,
        version_pattern=r"Server: ([^\r\n]+)",
    ),
    ServiceFingerprint(
        name="HTTPS", protocol="TCP", port=443,
        weight=1.0,
    ),
    ServiceFingerprint(
        name="HTTP", protocol="TCP", port=8080,
        response_pattern=r"HTTP/\d\.\d",
        weight=0.8,
        version_pattern=r"Server: ([^\r\n]+)",
    ),

    # Mail
    ServiceFingerprint(
        name="SMTP", protocol="TCP", port=25,
        banner_pattern=r"220.*SMTP",
        weight=0.85,
        version_pattern=r"220 \S+ (?:E?SMTP )?([^\r\n]+)",
    ),
    ServiceFingerprint(
        name="POP3", protocol="TCP", port=110,
        banner_pattern=r"^\+OK",
        weight=0.85,
    ),
    ServiceFingerprint(
        name="IMAP", protocol="TCP", port=143,
        banner_pattern=r"^\* OK",
        weight=0.85,
    ),

    # Databases
    ServiceFingerprint(
        name="MySQL", protocol="TCP", port=3306,
        banner_pattern=r"mysql_native_password|caching_sha2_password",
        weight=0.9,
        version_pattern=r"(\d+\.\d+\.\d+[\w.-]*)",
    ),
    ServiceFingerprint(
        name="PostgreSQL", protocol="TCP", port=5432,
        banner_pattern=r"PostgreSQL",
        weight=0.9,
    ),
    ServiceFingerprint(
        name="Redis", protocol="TCP", port=6379,
        response_pattern=r"-ERR|\+PONG|redis_version",
        weight=0.8,
        version_pattern=r"redis_version:([^\r\n]+)",
    ),
]


class ServiceFingerprintDB:
    """
    In-memory fingerprint table with a connect-and-read identification probe.

    Args:
        fingerprints: Records to load (built-in defaults if None)
        open_connection: Coroutine function used to connect; replaceable in tests
        read_size: Maximum bytes read per response
        trigger: Bytes sent when a banner alone does not identify the service
    """

    def __init__(self,
                 fingerprints: Optional[Iterable[ServiceFingerprint]] = None,
                 open_connection: Callable = asyncio.open_connection,
                 read_size: int = DEFAULT_READ_SIZE,
                 trigger: bytes = DEFAULT_TRIGGER):
        self._fingerprints: Dict[int, Tuple[ServiceFingerprint, ...]] = {}
        grouped: Dict[int, List[ServiceFingerprint]] = {}
        for fp in (DEFAULT_FINGERPRINTS if fingerprints is None else fingerprints):
            grouped.setdefault(fp.port, []).append(fp)
        for port, fps in grouped.items():
            self._fingerprints[port] = tuple(fps)

        self._open_connection = open_connection
        self.read_size = read_size
        self.trigger = trigger

        self._pattern_cache: Dict[str, Optional[Pattern[str]]] = {}
        self._cache_lock = threading.Lock()

    # =========================================================================
    # LOADING
    # =========================================================================

    @staticmethod
    def parse_records(records: Any) -> List[ServiceFingerprint]:
        """
        Validate raw records and turn them into fingerprints.

        Raises:
            FingerprintSourceError: On schema violations or invalid regexes
        """
        try:
            jsonschema.validate(instance=records, schema=FINGERPRINT_SCHEMA)
        except jsonschema.ValidationError as e:
            raise FingerprintSourceError(f"Invalid fingerprint record: {e.message}") from e

        fingerprints = []
        for record in records:
            fp = ServiceFingerprint(
                name=record["name"],
                protocol=record.get("protocol", "TCP"),
                port=record["port"],
                banner_pattern=record.get("banner_pattern"),
                response_pattern=record.get("response_pattern"),
                weight=float(record.get("weight", 1.0)),
                description=record.get("description"),
                version_pattern=record.get("version_pattern"),
            )
            for pattern in fp.patterns + ((fp.version_pattern,) if fp.version_pattern else ()):
                try:
                    re.compile(pattern)
                except re.error as e:
                    raise FingerprintSourceError(
                        f"Fingerprint {fp.name!r} (port {fp.port}): bad pattern {pattern!r}: {e}"
                    ) from e
            fingerprints.append(fp)
        return fingerprints

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> "ServiceFingerprintDB":
        """
        Load fingerprints from a JSON file holding a list of records.

        Raises:
            FingerprintSourceError: If the file is missing, unreadable or invalid
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                records = json.load(f)
        except (OSError, ValueError) as e:
            raise FingerprintSourceError(f"Cannot read fingerprint file {path}: {e}") from e
        return cls(cls.parse_records(records), **kwargs)

    @classmethod
    def load(cls,
             source: Optional[Union[str, Path, List[Mapping[str, Any]]]] = None,
             **kwargs) -> "ServiceFingerprintDB":
        """
        Build a database from an optional external source.

        A malformed source is logged and replaced by the built-in defaults.

        Args:
            source: JSON file path, list of record dicts, or None for defaults
        """
        if source is None:
            return cls(**kwargs)

        try:
            if isinstance(source, (str, Path)):
                db = cls.from_file(source, **kwargs)
            else:
                try:
                    records = list(source)
                except TypeError as e:
                    raise FingerprintSourceError(
                        f"Fingerprint source must be a path or a list of records, got {type(source).__name__}"
                    ) from e
                db = cls(cls.parse_records(records), **kwargs)
        except FingerprintSourceError as e:
            logger.warning(f"{e}; falling back to built-in fingerprints")
            return cls(**kwargs)

        logger.info(f"Loaded {db.count} fingerprints for {len(db.ports)} ports")
        return db

    # =========================================================================
    # LOOKUP
    # =========================================================================

    @property
    def ports(self) -> List[int]:
        return sorted(self._fingerprints)

    @property
    def count(self) -> int:
        return sum(len(fps) for fps in self._fingerprints.values())

    def fingerprints_for(self, port: int) -> Tuple[ServiceFingerprint, ...]:
        return self._fingerprints.get(port, ())

    def compiled(self, pattern: str) -> Optional[Pattern[str]]:
        """Compile a pattern once and reuse it; invalid patterns yield None."""
        with self._cache_lock:
            if pattern in self._pattern_cache:
                return self._pattern_cache[pattern]

        try:
            regex: Optional[Pattern[str]] = re.compile(pattern, re.MULTILINE)
        except re.error as e:
            logger.warning(f"Skipping invalid fingerprint pattern {pattern!r}: {e}")
            regex = None

        with self._cache_lock:
            return self._pattern_cache.setdefault(pattern, regex)

    def match(self, port: int, text: str) -> Optional[ServiceFingerprint]:
        """
        Return the first fingerprint of a port whose pattern matches text.

        Args:
            port: Port the text was captured from
            text: Decoded banner/response
        """
        if not text:
            return None

        for fp in self.fingerprints_for(port):
            for pattern in fp.patterns:
                regex = self.compiled(pattern)
                if regex is not None and regex.search(text):
                    return fp
        return None

    def extract_version(self, fingerprint: ServiceFingerprint, text: str) -> Optional[str]:
        if not fingerprint.version_pattern or not text:
            return None
        regex = self.compiled(fingerprint.version_pattern)
        if regex is None:
            return None
        found = regex.search(text)
        if not found:
            return None
        version = found.group(1) if found.groups() else found.group(0)
        return version.strip() or None

    # =========================================================================
    # PROBING
    # =========================================================================

    @staticmethod
    def decode(data: bytes) -> str:
        return data.decode('utf-8', errors='replace') if data else ""

    async def _read(self, reader: asyncio.StreamReader, timeout: float) -> bytes:
        try:
            return await asyncio.wait_for(reader.read(self.read_size), timeout=timeout)
        except (asyncio.TimeoutError, OSError):
            return b""

    async def probe(self, address: str, port: int,
                    timeout: float) -> Optional[FingerprintMatch]:
        """
        Connect, capture the response and match it against the port's fingerprints.

        Args:
            address: Target IP address
            port: Target port
            timeout: Per-step timeout in seconds

        Returns:
            FingerprintMatch or None (no fingerprints, no connection, no match)
        """
        fingerprints = self.fingerprints_for(port)
        if not fingerprints:
            return None

        try:
            reader, writer = await asyncio.wait_for(
                self._open_connection(address, port),
                timeout=timeout
            )
        except (asyncio.TimeoutError, OSError) as e:
            logger.debug(f"Fingerprint connect to {address}:{port} failed: {e!r}")
            return None

        try:
            text = self.decode(await self._read(reader, timeout))
            fingerprint = self.match(port, text)

            if fingerprint is None and any(fp.response_pattern for fp in fingerprints):
                try:
                    writer.write(self.trigger)
                    await asyncio.wait_for(writer.drain(), timeout=timeout)
                    text += self.decode(await self._read(reader, timeout))
                except (asyncio.TimeoutError, OSError):
                    pass
                fingerprint = self.match(port, text)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

        if fingerprint is None:
            return None

        return FingerprintMatch(
            fingerprint=fingerprint,
            banner=text,
            version=self.extract_version(fingerprint, text),
        )

    async def identify(self, address: str, port: int,
                       timeout: float) -> Optional[ServiceFingerprint]:
        """Return the first matching fingerprint for address:port, or None."""
        result = await self.probe(address, port, timeout)
        return result.fingerprint if result else None


__all__ = [
    'ServiceFingerprint',
    'ServiceFingerprintDB',
    'FingerprintMatch',
    'FingerprintSourceError',
    'FINGERPRINT_SCHEMA',
    'DEFAULT_FINGERPRINTS',
]
