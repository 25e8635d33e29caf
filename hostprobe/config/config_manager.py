#!/usr/bin/env python3
"""
Configuration Manager for hostprobe

Features:
- JSON configuration file
- Environment variable overrides (HOSTPROBE_*)
- jsonschema validation of all parameters
- Defaults matching the scanner's built-in tuning
- Conversion to a ScanConfig for the engine
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import jsonschema

from ..core.models import MAX_PORT, MIN_PORT

logger = logging.getLogger(__name__)


# =============================================================================
# SCAN CONFIG
# =============================================================================

@dataclass
class ScanConfig:
    """Tuning for one reconnaissance run."""
    start_port: int = 1
    end_port: int = 1024
    scan_type: str = "tcp"
    timeout: float = 0.2  # Per-probe timeout
    concurrency: int = 1000  # Max probes in flight
    batch_size: int = 500  # Ports per sweep batch
    service_batch_size: int = 20  # Ports identified together
    service_timeout: float = 2.0
    service_concurrency: int = 100
    os_timeout: float = 2.0
    min_rate: float = 100.0  # Requests per second floor
    max_rate: float = 1000.0  # Requests per second ceiling (and start rate)
    fingerprint_source: Optional[str] = None  # JSON fingerprint file
    reuse_connections: bool = False


class ConfigSchema:
    """Configuration schema with validation"""

    SCHEMA = {
        "type": "object",
        "required": ["version", "general", "scan", "service", "os", "rate"],
        "properties": {
            "version": {"type": "string", "pattern": r"^\d+\.\d+\.\d+$"},
            "general": {
                "type": "object",
                "properties": {
                    "log_level": {"type": "string", "enum": ["DEBUG", "INFO", "WARNING", "ERROR"]},
                    "colors_enabled": {"type": "boolean"}
                }
            },
            "scan": {
                "type": "object",
                "required": ["start_port", "end_port", "timeout", "concurrency"],
                "properties": {
                    "start_port": {"type": "integer", "minimum": MIN_PORT, "maximum": MAX_PORT},
                    "end_port": {"type": "integer", "minimum": MIN_PORT, "maximum": MAX_PORT},
                    "scan_type": {"type": "string", "enum": ["tcp", "udp"]},
                    "timeout": {"type": "number", "exclusiveMinimum": 0, "maximum": 60.0},
                    "concurrency": {"type": "integer", "minimum": 1, "maximum": 100000},
                    "batch_size": {"type": "integer", "minimum": 1, "maximum": 65536},
                    "reuse_connections": {"type": "boolean"}
                }
            },
            "service": {
                "type": "object",
                "properties": {
                    "batch_size": {"type": "integer", "minimum": 1, "maximum": 1000},
                    "timeout": {"type": "number", "exclusiveMinimum": 0, "maximum": 60.0},
                    "concurrency": {"type": "integer", "minimum": 1, "maximum": 10000},
                    "fingerprint_source": {"type": ["string", "null"]}
                }
            },
            "os": {
                "type": "object",
                "properties": {
                    "timeout": {"type": "number", "exclusiveMinimum": 0, "maximum": 60.0}
                }
            },
            "rate": {
                "type": "object",
                "required": ["min_rate", "max_rate"],
                "properties": {
                    "min_rate": {"type": "number", "exclusiveMinimum": 0},
                    "max_rate": {"type": "number", "exclusiveMinimum": 0}
                }
            }
        }
    }

    @staticmethod
    def get_defaults() -> Dict[str, Any]:
        """Return default configuration"""
        defaults = ScanConfig()
        return {
            "version": "1.0.0",
            "general": {
                "log_level": "INFO",
                "colors_enabled": True
            },
            "scan": {
                "start_port": defaults.start_port,
                "end_port": defaults.end_port,
                "scan_type": defaults.scan_type,
                "timeout": defaults.timeout,
                "concurrency": defaults.concurrency,
                "batch_size": defaults.batch_size,
                "reuse_connections": defaults.reuse_connections
            },
            "service": {
                "batch_size": defaults.service_batch_size,
                "timeout": defaults.service_timeout,
                "concurrency": defaults.service_concurrency,
                "fingerprint_source": defaults.fingerprint_source
            },
            "os": {
                "timeout": defaults.os_timeout
            },
            "rate": {
                "min_rate": defaults.min_rate,
                "max_rate": defaults.max_rate
            }
        }


class ConfigManager:
    """
    Configuration manager with file, env, and validation support

    Usage:
        config = ConfigManager("hostprobe.json")
        config.load()
        timeout = config.get("scan.timeout")
        config.set("rate.max_rate", 500)
        config.save()
        scan_config = config.to_scan_config()
    """

    ENV_PREFIX = "HOSTPROBE_"

    def __init__(self, config_file: str = None):
        """
        Initialize configuration manager

        Args:
            config_file: Path to JSON config file (default: hostprobe.json)
        """
        self.config_file = config_file or "hostprobe.json"
        self.config = ConfigSchema.get_defaults()
        self.schema = ConfigSchema()
        self.modified = False

    def load(self, config_file: str = None) -> bool:
        """
        Load configuration from file

        Args:
            config_file: Optional path override

        Returns:
            True if loaded successfully, False otherwise (defaults stay active)
        """
        if config_file:
            self.config_file = config_file

        path = Path(self.config_file)

        if not path.exists():
            logger.warning(f"Config file not found: {self.config_file}, using defaults")
            return False

        try:
            with open(path, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"Config parse error in {self.config_file}: {e}")
            return False
        except OSError as e:
            logger.warning(f"Config load error for {self.config_file}: {e}")
            return False

        if not isinstance(loaded_config, dict):
            logger.warning(f"Config {self.config_file} is not a JSON object, using defaults")
            return False

        self._merge_config(self.config, loaded_config)

        if not self.validate():
            logger.warning("Config validation failed, using defaults")
            self.config = ConfigSchema.get_defaults()
            return False

        logger.info(f"Config loaded: {self.config_file}")
        return True

    def save(self, config_file: str = None) -> bool:
        """
        Save configuration to file

        Returns:
            True if saved successfully
        """
        if config_file:
            self.config_file = config_file

        try:
            with open(self.config_file, 'w') as f:
                json.dump(self.config, f, indent=2)
        except OSError as e:
            logger.error(f"Config save error: {e}")
            return False

        logger.info(f"Config saved: {self.config_file}")
        self.modified = False
        return True

    def _merge_config(self, base: Dict, override: Dict) -> None:
        """Deep merge configuration"""
        for key, value in override.items():
            if (key in base and
                    isinstance(base[key], dict) and
                    isinstance(value, dict)):
                self._merge_config(base[key], value)
            else:
                base[key] = value

    def validate(self) -> bool:
        """Validate configuration against schema"""
        try:
            jsonschema.validate(self.config, self.schema.SCHEMA)
        except jsonschema.ValidationError as e:
            location = ".".join(str(part) for part in e.absolute_path) or "<root>"
            logger.warning(f"Validation error at {location}: {e.message}")
            return False

        if self.config["rate"]["max_rate"] < self.config["rate"]["min_rate"]:
            logger.warning("Validation error at rate: max_rate must be >= min_rate")
            return False
        return True

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation

        Args:
            key: Configuration key (e.g., "scan.timeout")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        # Environment wins over file and defaults
        env_key = (self.ENV_PREFIX + key.upper().replace(".", "_"))
        env_value = os.environ.get(env_key)
        if env_value is not None:
            return self._parse_env_value(env_value)

        value = self.config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def _parse_env_value(self, value: str) -> Any:
        """Parse environment variable value"""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False
        if value.lower() in ("none", "null"):
            return None

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def set(self, key: str, value: Any) -> bool:
        """
        Set configuration value using dot notation

        Returns:
            True if successful
        """
        keys = key.split(".")

        current = self.config
        for k in keys[:-1]:
            if k not in current:
                current[k] = {}
            current = current[k]

        current[keys[-1]] = value
        self.modified = True
        return True

    def to_scan_config(self) -> ScanConfig:
        """Build a ScanConfig from the merged file, env and default values."""
        defaults = ScanConfig()
        mapping = {
            "start_port": "scan.start_port",
            "end_port": "scan.end_port",
            "scan_type": "scan.scan_type",
            "timeout": "scan.timeout",
            "concurrency": "scan.concurrency",
            "batch_size": "scan.batch_size",
            "reuse_connections": "scan.reuse_connections",
            "service_batch_size": "service.batch_size",
            "service_timeout": "service.timeout",
            "service_concurrency": "service.concurrency",
            "fingerprint_source": "service.fingerprint_source",
            "os_timeout": "os.timeout",
            "min_rate": "rate.min_rate",
            "max_rate": "rate.max_rate",
        }
        values = {
            field.name: self.get(mapping[field.name], getattr(defaults, field.name))
            for field in fields(ScanConfig)
        }
        return ScanConfig(**values)


def create_default_config(filename: str = "hostprobe.json") -> bool:
    """Create default configuration file"""
    config = ConfigManager(filename)
    config.config = ConfigSchema.get_defaults()
    return config.save()


__all__ = [
    'ScanConfig',
    'ConfigSchema',
    'ConfigManager',
    'create_default_config',
]
