"""
hostprobe - Scan Metrics
========================

Thread-safe counters updated by the scanner and service detector.
A progress display or monitoring exporter polls them; nothing here
renders anything.

Metrics:
- hostprobe_probes_sent_total
- hostprobe_ports_open_total
- hostprobe_ports_closed_total
- hostprobe_probe_timeouts_total
- hostprobe_probe_errors_total
- hostprobe_services_identified_total
- hostprobe_scan_duration_seconds
"""

import threading
import time
from typing import Dict, List


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class ScanMetrics:
    """
    Collects scan counters and durations.

    Usage:
        metrics = ScanMetrics()
        scanner = Scanner(target, port_range, metrics=metrics)
        await scanner.run()
        print(metrics.get_counters())
    """

    def __init__(self, namespace: str = "hostprobe"):
        self.namespace = namespace

        # Counters
        self._probes_sent = 0
        self._ports_open = 0
        self._ports_closed = 0
        self._timeouts = 0
        self._errors = 0
        self._services_identified = 0
        self._scans_started = 0
        self._scans_completed = 0

        # Gauges
        self._active_scans = 0

        # Histograms
        self._scan_durations: List[float] = []

        self._lock = threading.Lock()
        self._start_time = time.time()

    # =========================================================================
    # COUNTER METRICS
    # =========================================================================

    def probe_sent(self, count: int = 1) -> None:
        with self._lock:
            self._probes_sent += count

    def port_open(self, count: int = 1) -> None:
        with self._lock:
            self._ports_open += count

    def port_closed(self, count: int = 1) -> None:
        with self._lock:
            self._ports_closed += count

    def probe_timeout(self, count: int = 1) -> None:
        with self._lock:
            self._timeouts += count

    def error(self, count: int = 1) -> None:
        with self._lock:
            self._errors += count

    def service_identified(self, count: int = 1) -> None:
        with self._lock:
            self._services_identified += count

    def scan_started(self) -> None:
        with self._lock:
            self._scans_started += 1
            self._active_scans += 1

    def scan_completed(self, duration: float) -> None:
        with self._lock:
            self._scans_completed += 1
            self._active_scans = max(0, self._active_scans - 1)
            self._scan_durations.append(duration)

    # =========================================================================
    # GETTER METHODS
    # =========================================================================

    @property
    def probes_sent(self) -> int:
        with self._lock:
            return self._probes_sent

    @property
    def ports_open(self) -> int:
        with self._lock:
            return self._ports_open

    def get_counters(self) -> Dict[str, int]:
        """Get current counter values."""
        with self._lock:
            return {
                f"{self.namespace}_probes_sent_total": self._probes_sent,
                f"{self.namespace}_ports_open_total": self._ports_open,
                f"{self.namespace}_ports_closed_total": self._ports_closed,
                f"{self.namespace}_probe_timeouts_total": self._timeouts,
                f"{self.namespace}_probe_errors_total": self._errors,
                f"{self.namespace}_services_identified_total": self._services_identified,
                f"{self.namespace}_scans_started_total": self._scans_started,
                f"{self.namespace}_scans_completed_total": self._scans_completed,
            }

    def get_gauges(self) -> Dict[str, int]:
        with self._lock:
            return {f"{self.namespace}_active_scans": self._active_scans}

    def get_histograms(self) -> Dict[str, Dict[str, float]]:
        """Get scan duration statistics."""
        with self._lock:
            if not self._scan_durations:
                return {}

            durations = sorted(self._scan_durations)
            n = len(durations)

            return {
                f"{self.namespace}_scan_duration_seconds": {
                    "count": n,
                    "sum": sum(durations),
                    "min": durations[0],
                    "max": durations[-1],
                    "avg": sum(durations) / n,
                    "p50": durations[int(n * 0.50)],
                    "p95": durations[min(n - 1, int(n * 0.95))],
                }
            }

    # =========================================================================
    # PROMETHEUS FORMAT EXPORT
    # =========================================================================

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        help_text = {
            "probes_sent_total": "Total probes sent",
            "ports_open_total": "Ports found open",
            "ports_closed_total": "Ports found closed",
            "probe_timeouts_total": "Probes that timed out",
            "probe_errors_total": "Probes that failed with a local error",
            "services_identified_total": "Services labelled",
            "scans_started_total": "Total scans started",
            "scans_completed_total": "Total scans completed",
        }
        lines = []
        for name, value in self.get_counters().items():
            short = name[len(self.namespace) + 1:]
            lines.append(f"# HELP {name} {help_text.get(short, short)}")
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name} {value}")

        for name, value in self.get_gauges().items():
            lines.append(f"# HELP {name} Currently active scans")
            lines.append(f"# TYPE {name} gauge")
            lines.append(f"{name} {value}")

        uptime = time.time() - self._start_time
        lines.append(f"# HELP {self.namespace}_uptime_seconds Uptime in seconds")
        lines.append(f"# TYPE {self.namespace}_uptime_seconds gauge")
        lines.append(f"{self.namespace}_uptime_seconds {uptime}")

        return '\n'.join(lines)


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    'ScanMetrics',
]
