"""
Core data model for hostprobe.

Plain value types shared by the scanner, the service detector and the
OS detector. Callers render or persist these themselves.
"""

import ipaddress
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional


MIN_PORT = 0
MAX_PORT = 65535


class ScanConfigError(ValueError):
    """Raised when a scan cannot be set up from its inputs."""
    pass


class InvalidTargetError(ScanConfigError):
    """Raised when a target address cannot be parsed or resolved."""
    pass


class InvalidPortRangeError(ScanConfigError):
    """Raised when a port bound falls outside the 16-bit port space."""
    pass


class ScanType(Enum):
    """Probe strategy for a sweep."""
    TCP = "tcp"
    UDP = "udp"

    @classmethod
    def parse(cls, value) -> "ScanType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ScanConfigError(f"Unknown scan type: {value!r}") from None


@dataclass(frozen=True)
class PortRange:
    """
    Inclusive range of ports to sweep.

    A reversed range (start > end) is valid and simply empty.

    Attributes:
        start_port: First port of the range
        end_port: Last port of the range (inclusive)
    """
    start_port: int
    end_port: int

    def __post_init__(self):
        for name in ("start_port", "end_port"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidPortRangeError(f"{name} must be an integer, got {value!r}")
            if not MIN_PORT <= value <= MAX_PORT:
                raise InvalidPortRangeError(
                    f"{name} {value} outside {MIN_PORT}-{MAX_PORT}"
                )

    @property
    def is_empty(self) -> bool:
        return self.start_port > self.end_port

    def __len__(self) -> int:
        if self.is_empty:
            return 0
        return self.end_port - self.start_port + 1

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start_port, self.end_port + 1))

    def batches(self, batch_size: int) -> Iterator[range]:
        """
        Split the range into consecutive sub-ranges of at most batch_size ports.

        Args:
            batch_size: Maximum ports per batch (must be >= 1)

        Yields:
            range objects covering the whole range in ascending order
        """
        if batch_size < 1:
            raise ScanConfigError(f"batch_size must be >= 1, got {batch_size}")
        start = self.start_port
        stop = self.end_port + 1
        while start < stop:
            end = min(start + batch_size, stop)
            yield range(start, end)
            start = end


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a single probe against one port."""
    port: int
    open: bool
    latency: Optional[float] = None


@dataclass
class OSInfo:
    """
    Best-guess operating system estimate.

    Attributes:
        name: OS family label ("Unknown" when nothing answered)
        version: Version token when one could be extracted
        confidence: 0.0 - 1.0
        features: Evidence strings collected by every heuristic
    """
    name: str = "Unknown"
    version: Optional[str] = None
    confidence: float = 0.0
    features: List[str] = field(default_factory=list)

    @classmethod
    def unknown(cls) -> "OSInfo":
        return cls()


def resolve_target(target: str) -> str:
    """
    Validate a target and return it as a literal IP address string.

    Hostnames are resolved once, up front, so every probe talks to the
    same address.

    Raises:
        InvalidTargetError: If the target is empty or cannot be resolved
    """
    if not target or not str(target).strip():
        raise InvalidTargetError("Target address is empty")

    target = str(target).strip()
    try:
        return str(ipaddress.ip_address(target))
    except ValueError:
        pass

    try:
        infos = socket.getaddrinfo(target, None, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as e:
        raise InvalidTargetError(f"Cannot resolve target {target!r}: {e}") from e

    for family, _, _, _, sockaddr in infos:
        if family == socket.AF_INET:
            return sockaddr[0]
    if infos:
        return infos[0][4][0]
    raise InvalidTargetError(f"Cannot resolve target {target!r}")


__all__ = [
    'MIN_PORT',
    'MAX_PORT',
    'ScanConfigError',
    'InvalidTargetError',
    'InvalidPortRangeError',
    'ScanType',
    'PortRange',
    'ProbeResult',
    'OSInfo',
    'resolve_target',
]
