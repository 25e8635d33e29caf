from .console import ColoredFormatter, setup_logging
from .metrics import ScanMetrics

__all__ = [
    'ColoredFormatter',
    'setup_logging',
    'ScanMetrics',
]
