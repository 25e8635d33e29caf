#!/usr/bin/env python3
"""
hostprobe - Port Sweep Scanner
==============================

Concurrent TCP/UDP port sweep over asyncio.

Features:
- Batched port range with a bounded number of batches in flight
- Semaphore-controlled probe concurrency
- Adaptive rate control on every probe
- Hard per-probe timeout; a stalled probe never blocks its siblings
- Optional post-sweep service identification
- Optional connection reuse and mid-scan stop

Open ports are returned sorted and unique regardless of the order in
which batches complete.
"""

import asyncio
import ipaddress
import logging
import math
import socket
import time
from typing import Dict, Iterable, List, Optional, Set, Tuple, Any

from .connection_pool import ConnectionPool
from .models import PortRange, ProbeResult, ScanConfigError, ScanType, resolve_target
from .rate_controller import RateController
from .service_detection import ServiceDetector

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_TIMEOUT = 0.2  # seconds per probe
DEFAULT_CONCURRENCY = 1000
DEFAULT_BATCH_SIZE = 500
DEFAULT_SERVICE_BATCH_SIZE = 20
UDP_RECV_SIZE = 1024


# =============================================================================
# SCANNER
# =============================================================================

class Scanner:
    """
    Port sweep driver for a single target.

    Usage:
        scanner = Scanner("127.0.0.1", PortRange(1, 1024))
        open_ports = await scanner.run()
        labelled = await scanner.run_with_services()
        await scanner.close()
    """

    def __init__(self,
                 target: str,
                 port_range: PortRange,
                 scan_type: ScanType = ScanType.TCP,
                 timeout: float = DEFAULT_TIMEOUT,
                 concurrency: int = DEFAULT_CONCURRENCY,
                 batch_size: int = DEFAULT_BATCH_SIZE,
                 rate_controller: Optional[RateController] = None,
                 service_batch_size: int = DEFAULT_SERVICE_BATCH_SIZE,
                 connection_pool: Optional[ConnectionPool] = None,
                 reuse_connections: bool = False,
                 metrics=None):
        """
        Initialize the scanner.

        Args:
            target: Target IP address or hostname (resolved once, here)
            port_range: Inclusive port range to sweep
            scan_type: TCP connect or UDP probe-and-listen
            timeout: Hard per-probe timeout in seconds
            concurrency: Maximum probes in flight
            batch_size: Ports per batch
            rate_controller: Shared RateController (a fresh one if None)
            service_batch_size: Ports identified together after the sweep
            connection_pool: Keeps open TCP connections for reuse when given
            reuse_connections: Create a private ConnectionPool when none is given
            metrics: Optional ScanMetrics to update

        Raises:
            ScanConfigError: On an unresolvable target or invalid tuning values
        """
        if timeout <= 0:
            raise ScanConfigError(f"timeout must be > 0, got {timeout}")
        if concurrency < 1:
            raise ScanConfigError(f"concurrency must be >= 1, got {concurrency}")
        if batch_size < 1 or service_batch_size < 1:
            raise ScanConfigError("batch sizes must be >= 1")

        self.target = resolve_target(target)
        self.port_range = port_range
        self.scan_type = ScanType.parse(scan_type)
        self.timeout = timeout
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.service_batch_size = service_batch_size
        self.rate_controller = rate_controller or RateController()
        if connection_pool is None and reuse_connections:
            connection_pool = ConnectionPool()
        self.connection_pool = connection_pool
        self.metrics = metrics

        self._family = (
            socket.AF_INET6 if ipaddress.ip_address(self.target).version == 6 else socket.AF_INET
        )
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped = False
        self.running = False

        self.stats = {
            "probes_sent": 0,
            "open": 0,
            "errors": 0,
            "start_time": 0.0,
            "end_time": 0.0,
        }

    # =========================================================================
    # SWEEP
    # =========================================================================

    @property
    def max_inflight_batches(self) -> int:
        """Enough batches to keep every concurrency slot busy, plus one queued."""
        return math.ceil(self.concurrency / self.batch_size) + 1

    async def run(self) -> List[int]:
        """
        Sweep the port range.

        Returns:
            Open ports, sorted ascending, without duplicates
        """
        if self.port_range.is_empty:
            logger.debug(f"Empty port range {self.port_range}, nothing to scan")
            return []

        self._stopped = False
        self._stop_event = asyncio.Event()
        semaphore = asyncio.Semaphore(self.concurrency)
        open_ports: Set[int] = set()
        pending: Set[asyncio.Future] = set()

        self.running = True
        self.stats["start_time"] = time.time()
        if self.metrics is not None:
            self.metrics.scan_started()
        logger.info(
            f"Starting {self.scan_type.value.upper()} scan of {self.target} "
            f"ports {self.port_range.start_port}-{self.port_range.end_port} "
            f"({len(self.port_range)} ports, concurrency {self.concurrency})"
        )

        try:
            for batch in self.port_range.batches(self.batch_size):
                if self._is_stopped():
                    break
                if len(pending) >= self.max_inflight_batches:
                    done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                    self._collect(done, open_ports)
                pending.add(asyncio.ensure_future(self._scan_batch(batch, semaphore)))

            if pending:
                done, pending = await asyncio.wait(pending)
                self._collect(done, open_ports)
        finally:
            for task in pending:
                task.cancel()
            self.running = False
            self.stats["end_time"] = time.time()

        elapsed = self.stats["end_time"] - self.stats["start_time"]
        if self.metrics is not None:
            self.metrics.scan_completed(elapsed)

        result = sorted(open_ports)
        logger.info(
            f"Scan of {self.target} finished in {elapsed:.2f}s: {len(result)} open ports "
            f"(rate now {self.rate_controller.current_rate:.0f} req/s)"
        )
        return result

    def _collect(self, done: Iterable[asyncio.Future], open_ports: Set[int]) -> None:
        for task in done:
            if task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                logger.warning(f"Batch failed on {self.target}: {error!r}")
                self.stats["errors"] += 1
                continue
            open_ports.update(task.result())

    async def _scan_batch(self, ports: range, semaphore: asyncio.Semaphore) -> List[int]:
        results = await asyncio.gather(
            *(self._probe_port(port, semaphore) for port in ports),
            return_exceptions=True,
        )

        open_ports = []
        for port, result in zip(ports, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.debug(f"Probe of {self.target}:{port} failed: {result!r}")
                self.stats["errors"] += 1
                if self.metrics is not None:
                    self.metrics.error()
                continue
            if result is not None and result.open:
                open_ports.append(port)
        return open_ports

    async def _probe_port(self, port: int, semaphore: asyncio.Semaphore) -> Optional[ProbeResult]:
        """Slot -> rate wait -> probe -> feedback -> release."""
        if self._is_stopped():
            return None

        async with semaphore:
            if self._is_stopped():
                return None
            await self.rate_controller.wait()

            if self.scan_type == ScanType.UDP:
                outcome = await self._probe_udp(port)
            else:
                outcome = await self._probe_tcp(port)

            if outcome is None:
                return None
            result, definitive = outcome
            latency = result.latency if result.latency is not None else self.timeout
            self.rate_controller.record_outcome(definitive, latency)

        self.stats["probes_sent"] += 1
        if self.metrics is not None:
            self.metrics.probe_sent()
            if result.open:
                self.metrics.port_open()
            else:
                self.metrics.port_closed()
        if result.open:
            self.stats["open"] += 1
            logger.debug(f"Port {port}/{self.scan_type.value} open on {self.target}")
        return result

    async def probe(self, port: int) -> ProbeResult:
        """Probe one port outside a sweep, still under rate control."""
        await self.rate_controller.wait()
        if self.scan_type == ScanType.UDP:
            outcome = await self._probe_udp(port)
        else:
            outcome = await self._probe_tcp(port)
        if outcome is None:
            return ProbeResult(port=port, open=False)
        result, definitive = outcome
        self.rate_controller.record_outcome(
            definitive, result.latency if result.latency is not None else self.timeout
        )
        return result

    # =========================================================================
    # PROBES
    # =========================================================================

    async def _probe_tcp(self, port: int) -> Tuple[ProbeResult, bool]:
        """
        TCP connect probe.

        Returns:
            (result, definitive) where definitive means the target answered
            (accepted or refused) rather than timing out or erroring
        """
        if self.connection_pool is not None and self.connection_pool.get(port) is not None:
            return ProbeResult(port=port, open=True, latency=0.0), True

        start = time.perf_counter()
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.target, port),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            if self.metrics is not None:
                self.metrics.probe_timeout()
            return ProbeResult(port=port, open=False), False
        except ConnectionRefusedError:
            return ProbeResult(port=port, open=False, latency=time.perf_counter() - start), True
        except OSError as e:
            logger.debug(f"TCP probe {self.target}:{port} error: {e!r}")
            return ProbeResult(port=port, open=False, latency=time.perf_counter() - start), False

        latency = time.perf_counter() - start
        if self.connection_pool is not None:
            self.connection_pool.put(port, reader, writer)
        else:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
        return ProbeResult(port=port, open=True, latency=latency), True

    async def _probe_udp(self, port: int) -> Optional[Tuple[ProbeResult, bool]]:
        """
        UDP probe-and-listen.

        An empty datagram is sent on a connected socket. A reply means open,
        an ICMP port-unreachable (surfacing as a receive error) means closed,
        and silence until the timeout is reported as open: silence is not
        proof of a closed port.

        Returns:
            (result, definitive) or None when no local socket could be set up
        """
        loop = asyncio.get_running_loop()
        try:
            sock = socket.socket(self._family, socket.SOCK_DGRAM)
        except OSError as e:
            logger.warning(f"Cannot create UDP socket for {self.target}:{port}: {e}")
            self.stats["errors"] += 1
            if self.metrics is not None:
                self.metrics.error()
            return None

        start = time.perf_counter()
        try:
            sock.setblocking(False)
            try:
                await loop.sock_connect(sock, (self.target, port))
                sock.send(b"")
            except OSError as e:
                logger.warning(f"Cannot send UDP probe to {self.target}:{port}: {e}")
                self.stats["errors"] += 1
                if self.metrics is not None:
                    self.metrics.error()
                return None

            try:
                await asyncio.wait_for(loop.sock_recv(sock, UDP_RECV_SIZE), timeout=self.timeout)
            except asyncio.TimeoutError:
                if self.metrics is not None:
                    self.metrics.probe_timeout()
                return ProbeResult(port=port, open=True), True
            except OSError:
                return ProbeResult(port=port, open=False, latency=time.perf_counter() - start), True

            return ProbeResult(port=port, open=True, latency=time.perf_counter() - start), True
        finally:
            sock.close()

    # =========================================================================
    # SERVICE IDENTIFICATION
    # =========================================================================

    async def identify_services(self, open_ports: List[int],
                                detector: Optional[ServiceDetector] = None) -> List[Tuple[int, str]]:
        """
        Label open ports in small concurrent batches.

        Ports whose detection yields nothing are omitted.

        Returns:
            (port, service) pairs sorted by port
        """
        detector = detector or ServiceDetector(metrics=self.metrics)
        ports = sorted(set(open_ports))
        labelled: Dict[int, str] = {}

        for i in range(0, len(ports), self.service_batch_size):
            batch = ports[i:i + self.service_batch_size]
            for port, service in await detector.detect_batch(self.target, batch):
                if service:
                    labelled[port] = service

        return sorted(labelled.items())

    async def run_with_services(self,
                                detector: Optional[ServiceDetector] = None) -> List[Tuple[int, str]]:
        """Sweep, then identify every open port."""
        open_ports = await self.run()
        return await self.identify_services(open_ports, detector)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def _is_stopped(self) -> bool:
        return self._stopped or (self._stop_event is not None and self._stop_event.is_set())

    def stop(self) -> None:
        """Ask a running sweep to stop; probes not yet started are skipped."""
        self._stopped = True
        if self._stop_event is not None:
            self._stop_event.set()

    async def close(self) -> None:
        """Release pooled connections."""
        if self.connection_pool is not None:
            await self.connection_pool.close_all()

    def get_stats(self) -> Dict[str, Any]:
        """Get scanner statistics."""
        end = self.stats["end_time"] if not self.running else time.time()
        elapsed = end - self.stats["start_time"] if self.stats["start_time"] else 0.0
        return {
            "target": self.target,
            "probes_sent": self.stats["probes_sent"],
            "open": self.stats["open"],
            "errors": self.stats["errors"],
            "elapsed": elapsed,
            "rate_pps": self.stats["probes_sent"] / elapsed if elapsed > 0 else 0.0,
            "current_rate": self.rate_controller.current_rate,
            "running": self.running,
        }

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False


__all__ = [
    'Scanner',
    'DEFAULT_TIMEOUT',
    'DEFAULT_CONCURRENCY',
    'DEFAULT_BATCH_SIZE',
    'DEFAULT_SERVICE_BATCH_SIZE',
]
