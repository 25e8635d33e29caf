from .config_manager import ConfigManager, ConfigSchema, ScanConfig, create_default_config

__all__ = [
    'ConfigManager',
    'ConfigSchema',
    'ScanConfig',
    'create_default_config',
]
