"""
Core module initialization for hostprobe.
"""

from .checksum import ChecksumError, in_cksum
from .connection_pool import ConnectionPool
from .models import (
    InvalidPortRangeError,
    InvalidTargetError,
    OSInfo,
    PortRange,
    ProbeResult,
    ScanConfigError,
    ScanType,
    resolve_target,
)
from .os_detection import OSDetector, merge_os_evidence
from .rate_controller import RateController, RateThresholds
from .scanner import Scanner
from .service_detection import DetectionCache, ServiceDetector
from .service_fingerprints import (
    FingerprintMatch,
    FingerprintSourceError,
    ServiceFingerprint,
    ServiceFingerprintDB,
)

__all__ = [
    'ChecksumError',
    'in_cksum',
    'ConnectionPool',
    'InvalidPortRangeError',
    'InvalidTargetError',
    'OSInfo',
    'PortRange',
    'ProbeResult',
    'ScanConfigError',
    'ScanType',
    'resolve_target',
    'OSDetector',
    'merge_os_evidence',
    'RateController',
    'RateThresholds',
    'Scanner',
    'DetectionCache',
    'ServiceDetector',
    'FingerprintMatch',
    'FingerprintSourceError',
    'ServiceFingerprint',
    'ServiceFingerprintDB',
]
