#!/usr/bin/env python3
"""
hostprobe - Reconnaissance Engine
=================================

Public entry points tying the scanner, the service detector and the OS
detector together.

Usage:
    open_ports = await scan("127.0.0.1", (1, 1024))
    service = await detect_service("127.0.0.1", 22)
    os_info = await detect_os("127.0.0.1")

    engine = create_engine(ConfigManager("hostprobe.json"))
    report = await engine.recon("192.0.2.10")
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .config.config_manager import ConfigManager, ScanConfig
from .core.connection_pool import ConnectionPool
from .core.liveness import discover_hosts, is_alive
from .core.models import OSInfo, PortRange, ScanType
from .core.os_detection import DEFAULT_TIMEOUT as OS_DEFAULT_TIMEOUT
from .core.os_detection import OSDetector
from .core.rate_controller import RateController
from .core.scanner import DEFAULT_CONCURRENCY, DEFAULT_TIMEOUT, Scanner
from .core.service_detection import DEFAULT_TIMEOUT as SERVICE_DEFAULT_TIMEOUT
from .core.service_detection import ServiceDetector
from .core.service_fingerprints import ServiceFingerprintDB
from .output.metrics import ScanMetrics

logger = logging.getLogger(__name__)


PortRangeLike = Union[PortRange, Tuple[int, int], Sequence[int]]


def as_port_range(port_range: PortRangeLike) -> PortRange:
    """Accept a PortRange or a (start, end) pair."""
    if isinstance(port_range, PortRange):
        return port_range
    start, end = port_range
    return PortRange(start, end)


@dataclass
class ReconReport:
    """Everything learned about one target."""
    target: str
    alive: bool
    open_ports: List[int] = field(default_factory=list)
    services: List[Tuple[int, str]] = field(default_factory=list)
    os_info: OSInfo = field(default_factory=OSInfo)
    duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.target,
            "alive": self.alive,
            "open_ports": list(self.open_ports),
            "services": [{"port": port, "service": name} for port, name in self.services],
            "os": {
                "name": self.os_info.name,
                "version": self.os_info.version,
                "confidence": self.os_info.confidence,
                "features": list(self.os_info.features),
            },
            "duration": round(self.duration, 3),
        }


class ReconEngine:
    """
    Facade over the three reconnaissance components.

    One RateController is shared by every scan the engine runs, and one
    ServiceDetector (and its cache) by every identification.
    """

    def __init__(self, config: Optional[ScanConfig] = None,
                 metrics: Optional[ScanMetrics] = None):
        self.config = config or ScanConfig()
        self.metrics = metrics or ScanMetrics()
        self.rate_controller = RateController(
            max_rate=self.config.max_rate,
            min_rate=self.config.min_rate,
        )
        fingerprint_db = ServiceFingerprintDB.load(self.config.fingerprint_source)
        self.service_detector = ServiceDetector(
            timeout=self.config.service_timeout,
            concurrency=self.config.service_concurrency,
            fingerprint_db=fingerprint_db,
            metrics=self.metrics,
        )
        self.os_detector = OSDetector(timeout=self.config.os_timeout)

    def make_scanner(self, target: str,
                     port_range: Optional[PortRangeLike] = None,
                     scan_type: Optional[Union[ScanType, str]] = None) -> Scanner:
        """Build a Scanner wired to this engine's shared state."""
        cfg = self.config
        port_range = as_port_range(
            port_range if port_range is not None else (cfg.start_port, cfg.end_port)
        )
        return Scanner(
            target,
            port_range,
            scan_type=scan_type if scan_type is not None else cfg.scan_type,
            timeout=cfg.timeout,
            concurrency=cfg.concurrency,
            batch_size=cfg.batch_size,
            rate_controller=self.rate_controller,
            service_batch_size=cfg.service_batch_size,
            connection_pool=ConnectionPool() if cfg.reuse_connections else None,
            metrics=self.metrics,
        )

    async def scan(self, target: str,
                   port_range: Optional[PortRangeLike] = None,
                   scan_type: Optional[Union[ScanType, str]] = None) -> List[int]:
        """Sweep a target; returns sorted open ports."""
        async with self.make_scanner(target, port_range, scan_type) as scanner:
            return await scanner.run()

    async def scan_services(self, target: str,
                            port_range: Optional[PortRangeLike] = None,
                            scan_type: Optional[Union[ScanType, str]] = None) -> List[Tuple[int, str]]:
        """Sweep a target and label open ports; returns sorted (port, service)."""
        async with self.make_scanner(target, port_range, scan_type) as scanner:
            return await scanner.run_with_services(self.service_detector)

    async def detect_service(self, address: str, port: int) -> Optional[str]:
        return await self.service_detector.detect(address, port)

    async def detect_os(self, address: str) -> OSInfo:
        return await self.os_detector.detect(address)

    async def is_alive(self, target: str) -> bool:
        return await is_alive(target, timeout=self.config.timeout)

    async def discover(self, addresses: Sequence[str]) -> List[str]:
        return await discover_hosts(addresses, timeout=self.config.timeout)

    async def recon(self, target: str,
                    port_range: Optional[PortRangeLike] = None,
                    check_alive: bool = False) -> ReconReport:
        """
        Full pass over one target: optional liveness check, sweep with
        service labels, then OS estimate.
        """
        start = time.perf_counter()
        if check_alive and not await self.is_alive(target):
            logger.info(f"{target} did not answer the liveness check, skipping")
            return ReconReport(target=target, alive=False, duration=time.perf_counter() - start)

        async with self.make_scanner(target, port_range) as scanner:
            open_ports = await scanner.run()
            services = await scanner.identify_services(open_ports, self.service_detector)
            address = scanner.target

        os_info = await self.os_detector.detect(address)
        return ReconReport(
            target=target,
            alive=True,
            open_ports=open_ports,
            services=services,
            os_info=os_info,
            duration=time.perf_counter() - start,
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "rate": self.rate_controller.snapshot(),
            "services_cached": len(self.service_detector.cache),
            "counters": self.metrics.get_counters(),
        }


def create_engine(config: Optional[Union[ScanConfig, ConfigManager]] = None,
                  metrics: Optional[ScanMetrics] = None) -> ReconEngine:
    """
    Create a ReconEngine.

    Args:
        config: ScanConfig, a loaded ConfigManager, or None for defaults
        metrics: Optional shared ScanMetrics
    """
    if isinstance(config, ConfigManager):
        config = config.to_scan_config()
    return ReconEngine(config=config, metrics=metrics)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================

async def scan(target_address: str,
               port_range: PortRangeLike,
               scan_type: Union[ScanType, str] = ScanType.TCP,
               timeout: float = DEFAULT_TIMEOUT,
               concurrency: int = DEFAULT_CONCURRENCY) -> List[int]:
    """
    Sweep a port range on a target.

    Returns:
        Open ports sorted ascending

    Raises:
        ScanConfigError: On an invalid target or port bound
    """
    scanner = Scanner(
        target_address,
        as_port_range(port_range),
        scan_type=scan_type,
        timeout=timeout,
        concurrency=concurrency,
    )
    return await scanner.run()


async def scan_with_services(target_address: str,
                             port_range: PortRangeLike,
                             scan_type: Union[ScanType, str] = ScanType.TCP,
                             timeout: float = DEFAULT_TIMEOUT,
                             concurrency: int = DEFAULT_CONCURRENCY) -> List[Tuple[int, str]]:
    """Sweep a port range and label each open port."""
    scanner = Scanner(
        target_address,
        as_port_range(port_range),
        scan_type=scan_type,
        timeout=timeout,
        concurrency=concurrency,
    )
    return await scanner.run_with_services()


async def detect_service(address: str, port: int,
                         timeout: float = SERVICE_DEFAULT_TIMEOUT) -> Optional[str]:
    """Identify the service on one port; None when nothing is known."""
    return await ServiceDetector(timeout=timeout).detect(address, port)


async def detect_os(address: str, timeout: float = OS_DEFAULT_TIMEOUT) -> OSInfo:
    """Best-effort OS estimate for a target."""
    return await OSDetector(timeout=timeout).detect(address)


__all__ = [
    'ReconEngine',
    'ReconReport',
    'create_engine',
    'as_port_range',
    'scan',
    'scan_with_services',
    'detect_service',
    'detect_os',
]
