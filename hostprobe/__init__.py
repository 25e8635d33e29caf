"""
hostprobe v1.0.0 - Host Reconnaissance Engine
=============================================

Asynchronous port sweep, service identification and best-effort OS
estimation for a single target, governed by an adaptive rate controller.

Usage:
    from hostprobe import scan, detect_service, detect_os
    from hostprobe import ReconEngine, create_engine
    from hostprobe.config import ConfigManager
"""

__version__ = "1.0.0"
__author__ = "hostprobe Team"

from hostprobe.core.models import (
    InvalidPortRangeError,
    InvalidTargetError,
    OSInfo,
    PortRange,
    ScanConfigError,
    ScanType,
)
from hostprobe.engine import (
    ReconEngine,
    ReconReport,
    create_engine,
    detect_os,
    detect_service,
    scan,
    scan_with_services,
)

__all__ = [
    'scan',
    'scan_with_services',
    'detect_service',
    'detect_os',
    'ReconEngine',
    'ReconReport',
    'create_engine',
    'PortRange',
    'ScanType',
    'OSInfo',
    'ScanConfigError',
    'InvalidTargetError',
    'InvalidPortRangeError',
    '__version__',
]
