"""
Configuration management for the resilient batch engine.
"""

import os
import threading
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict
from pathlib import Path
import json
import logging
from jsonschema import validate, ValidationError as SchemaValidationError

from resilient_batch.concurrent.models import ProcessingConfig
from resilient_batch.utils.errors import ConfigurationError, ValidationError


@dataclass
class CheckpointConfig:
    """Checkpoint store settings."""
    # Backend: "memory" or "sqlite"
    backend: str = "sqlite"
    sqlite_path: str = "data/checkpoints.db"
    timeout: float = 30.0


@dataclass
class LoggingConfig:
    """Logging settings."""
    log_level: str = "INFO"
    log_file: Optional[str] = "logs/resilient_batch.log"
    retention_days: int = 7


@dataclass
class SystemConfig:
    """Main system configuration."""
    processing: ProcessingConfig = field(default_factory=ProcessingConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# Configuration schema for validation
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "processing": {
            "type": "object",
            "properties": {
                "concurrency": {"type": "integer", "minimum": 1, "maximum": 100},
                "stop_on_error": {"type": "boolean"},
                "delay_between_requests": {"type": "number", "minimum": 0.0, "maximum": 3600.0},
                "rate_limit": {"type": ["number", "null"], "exclusiveMinimum": 0},
                "retry": {
                    "type": "object",
                    "properties": {
                        "max_attempts": {"type": "integer", "minimum": 1, "maximum": 100},
                        "base_delay": {"type": "number", "minimum": 0.0},
                        "max_delay": {"type": "number", "minimum": 0.0},
                        "jitter_ratio": {"type": "number", "minimum": 0.0, "maximum": 1.0}
                    },
                    "additionalProperties": False
                }
            },
            "additionalProperties": False
        },
        "checkpoint": {
            "type": "object",
            "properties": {
                "backend": {"type": "string", "enum": ["memory", "sqlite"]},
                "sqlite_path": {"type": "string", "minLength": 1},
                "timeout": {"type": "number", "minimum": 0.1, "maximum": 600.0}
            },
            "additionalProperties": False
        },
        "logging": {
            "type": "object",
            "properties": {
                "log_level": {
                    "type": "string",
                    "enum": ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
                },
                "log_file": {"type": ["string", "null"]},
                "retention_days": {"type": "integer", "minimum": 1, "maximum": 3650}
            },
            "additionalProperties": False
        }
    },
    "additionalProperties": False
}


ENV_PREFIX = "BATCH_"


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class ConfigChangeListener:
    """Interface for configuration change listeners."""

    def on_config_changed(self, old_config: SystemConfig, new_config: SystemConfig) -> None:
        """Called when configuration changes."""
        pass


class ConfigManager:
    """Configuration manager with schema validation, env overrides and change detection."""

    def __init__(self, config_path: str = "config.json"):
        self.config_path = Path(config_path)
        self._config: Optional[SystemConfig] = None
        self._last_modified: Optional[float] = None
        self._lock = threading.RLock()
        self._change_listeners: List[ConfigChangeListener] = []
        self._monitoring_thread: Optional[threading.Thread] = None
        self._stop_monitoring = threading.Event()

    def add_change_listener(self, listener: ConfigChangeListener) -> None:
        with self._lock:
            self._change_listeners.append(listener)

    def remove_change_listener(self, listener: ConfigChangeListener) -> None:
        with self._lock:
            if listener in self._change_listeners:
                self._change_listeners.remove(listener)

    def start_monitoring(self, check_interval: float = 1.0) -> None:
        """Start watching the configuration file for changes."""
        if self._monitoring_thread and self._monitoring_thread.is_alive():
            return

        self._stop_monitoring.clear()
        self._monitoring_thread = threading.Thread(
            target=self._monitor_config_changes,
            args=(check_interval,),
            daemon=True
        )
        self._monitoring_thread.start()
        logging.info("Configuration monitoring started")

    def stop_monitoring(self) -> None:
        self._stop_monitoring.set()
        if self._monitoring_thread:
            self._monitoring_thread.join(timeout=5.0)
        logging.info("Configuration monitoring stopped")

    def _monitor_config_changes(self, check_interval: float) -> None:
        while not self._stop_monitoring.wait(check_interval):
            try:
                if self.reload_if_changed():
                    logging.info("Configuration automatically reloaded due to file changes")
            except ConfigurationError as e:
                logging.error(f"Error during automatic config reload: {e}")

    def validate_config(self, config_data: Dict[str, Any]) -> None:
        """
        Validate configuration data against the schema.

        Raises:
            ConfigurationError: If the data does not match CONFIG_SCHEMA
        """
        try:
            validate(instance=config_data, schema=CONFIG_SCHEMA)
        except SchemaValidationError as e:
            raise ConfigurationError(
                f"Configuration validation failed: {e.message}",
                {"path": list(e.absolute_path)}
            )

    def load_config(self) -> SystemConfig:
        """Load configuration from file, or from defaults plus environment."""
        with self._lock:
            if self.config_path.exists():
                current_modified = self.config_path.stat().st_mtime
                if self._config is None or current_modified != self._last_modified:
                    self._load_from_file()
                    self._last_modified = current_modified
            elif self._config is None:
                self._load_from_env()

            return self._config

    def _load_from_file(self) -> None:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Failed to read config file {self.config_path}",
                {"error": str(e)}
            )

        self.validate_config(config_data)

        old_config = self._config
        new_config = self._dict_to_config(config_data)
        self._override_with_env_vars(new_config)
        self._config = new_config

        if old_config is not None:
            self._notify_config_changed(old_config, new_config)

        logging.info(f"Configuration loaded and validated from {self.config_path}")

    def _load_from_env(self) -> None:
        config = SystemConfig()
        self._override_with_env_vars(config)
        self._config = config
        logging.info("Configuration loaded from defaults and environment variables")

    def _override_with_env_vars(self, config: SystemConfig) -> None:
        """Apply BATCH_* environment variables on top of `config`."""
        processing = config.processing.to_dict()
        retry = processing["retry"]

        try:
            if os.getenv("BATCH_CONCURRENCY"):
                processing["concurrency"] = int(os.environ["BATCH_CONCURRENCY"])
            if os.getenv("BATCH_STOP_ON_ERROR"):
                processing["stop_on_error"] = _parse_bool(os.environ["BATCH_STOP_ON_ERROR"])
            if os.getenv("BATCH_DELAY_BETWEEN_REQUESTS"):
                processing["delay_between_requests"] = float(os.environ["BATCH_DELAY_BETWEEN_REQUESTS"])
            if os.getenv("BATCH_RATE_LIMIT"):
                processing["rate_limit"] = float(os.environ["BATCH_RATE_LIMIT"])
            if os.getenv("BATCH_MAX_ATTEMPTS"):
                retry["max_attempts"] = int(os.environ["BATCH_MAX_ATTEMPTS"])

            config.processing = ProcessingConfig.from_dict(processing)
        except (ValidationError, ValueError) as e:
            raise ConfigurationError(
                "Invalid processing settings in environment",
                {"error": str(e)}
            )

        if os.getenv("BATCH_CHECKPOINT_BACKEND"):
            config.checkpoint.backend = os.environ["BATCH_CHECKPOINT_BACKEND"]
        if os.getenv("BATCH_SQLITE_PATH"):
            config.checkpoint.sqlite_path = os.environ["BATCH_SQLITE_PATH"]
        if os.getenv("BATCH_LOG_LEVEL"):
            config.logging.log_level = os.environ["BATCH_LOG_LEVEL"].upper()
        if os.getenv("BATCH_LOG_FILE"):
            config.logging.log_file = os.environ["BATCH_LOG_FILE"]

    def _dict_to_config(self, data: Dict[str, Any]) -> SystemConfig:
        config = SystemConfig()

        if "processing" in data:
            try:
                config.processing = ProcessingConfig.from_dict(data["processing"])
            except ValidationError as e:
                raise ConfigurationError(e.message, e.details)

        if "checkpoint" in data:
            config.checkpoint = CheckpointConfig(**data["checkpoint"])

        if "logging" in data:
            config.logging = LoggingConfig(**data["logging"])

        return config

    def _notify_config_changed(self, old_config: SystemConfig, new_config: SystemConfig) -> None:
        for listener in self._change_listeners:
            try:
                listener.on_config_changed(old_config, new_config)
            except Exception as e:
                logging.error(f"Error notifying config change listener: {e}")

    def reload_if_changed(self) -> bool:
        """Reload if the config file's mtime changed. Returns True on reload."""
        with self._lock:
            if not self.config_path.exists():
                return False

            current_modified = self.config_path.stat().st_mtime
            if current_modified != self._last_modified:
                self.load_config()
                return True
            return False

    def export_config(self) -> Dict[str, Any]:
        """Export current configuration as dictionary."""
        with self._lock:
            if not self._config:
                return {}

            return {
                "processing": self._config.processing.to_dict(),
                "checkpoint": asdict(self._config.checkpoint),
                "logging": asdict(self._config.logging)
            }

    def save_config(self, config_path: Optional[str] = None) -> None:
        """Save current configuration to file."""
        with self._lock:
            if not self._config:
                raise ConfigurationError("No configuration loaded to save")

            save_path = Path(config_path) if config_path else self.config_path
            config_dict = self.export_config()
            self.validate_config(config_dict)

            save_path.parent.mkdir(parents=True, exist_ok=True)
            with open(save_path, 'w', encoding='utf-8') as f:
                json.dump(config_dict, f, indent=2, ensure_ascii=False)

            if save_path == self.config_path:
                self._last_modified = save_path.stat().st_mtime

            logging.info(f"Configuration saved to {save_path}")

    def update_processing(self, processing: ProcessingConfig) -> None:
        """Replace the processing section of the loaded configuration."""
        with self._lock:
            if self._config is None:
                self.load_config()
            old_config = self._config
            self._config = SystemConfig(
                processing=processing,
                checkpoint=old_config.checkpoint,
                logging=old_config.logging
            )
            self._notify_config_changed(old_config, self._config)

    def __enter__(self):
        self.start_monitoring()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop_monitoring()


# Global config manager instance
config_manager = ConfigManager()


def get_config() -> SystemConfig:
    """Get the current system configuration."""
    return config_manager.load_config()


def reload_config() -> SystemConfig:
    """Force reload configuration and return updated config."""
    config_manager._config = None
    config_manager._last_modified = None
    return config_manager.load_config()
