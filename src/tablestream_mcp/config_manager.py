"""Configuration management system for TableStream MCP.

Provides layered configuration from built-in defaults, an optional YAML file
and environment variables (highest precedence), with validation and
environment variable substitution inside YAML files.
"""

import os
import re
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError


class LogLevel(str, Enum):
    """Supported logging levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class TransportType(str, Enum):
    """Supported server transports."""
    HTTP = "http"
    STDIO = "stdio"


@dataclass
class ServerConfig:
    """HTTP listener and dataset location."""
    host: str = "localhost"
    port: int = 3000
    csv_path: str = "./data/employees.csv"
    table_name: str = "employees"
    transport: TransportType = TransportType.HTTP

    def __post_init__(self):
        """Validate server configuration."""
        if self.port <= 0 or self.port > 65535:
            raise ValueError(f"port must be between 1-65535, got {self.port}")
        if not self.csv_path:
            raise ValueError("csv_path must not be empty")
        if not re.match(r'^[A-Za-z_][A-Za-z0-9_]*$', self.table_name):
            raise ValueError(f"table_name must be a plain SQL identifier, got {self.table_name!r}")


@dataclass
class StreamingConfig:
    """Chunking and pacing of streamed query results."""
    chunk_size: int = 5           # rows per data_chunk event
    store_batch_size: int = 50    # rows fetched from the store per round trip
    pacing_delay: float = 0.0     # seconds between data_chunk events
    query_timeout: Optional[float] = None
    max_row_limit: int = 10000

    def __post_init__(self):
        """Validate streaming configuration."""
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.store_batch_size <= 0:
            raise ValueError(f"store_batch_size must be positive, got {self.store_batch_size}")
        if self.pacing_delay < 0:
            raise ValueError(f"pacing_delay must be non-negative, got {self.pacing_delay}")
        if self.query_timeout is not None and self.query_timeout <= 0:
            raise ValueError(f"query_timeout must be positive, got {self.query_timeout}")
        if self.max_row_limit <= 0:
            raise ValueError(f"max_row_limit must be positive, got {self.max_row_limit}")


@dataclass
class SessionConfig:
    """Session idle expiry."""
    ttl_seconds: float = 30 * 60
    sweep_interval_seconds: float = 5 * 60

    def __post_init__(self):
        """Validate session configuration."""
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {self.ttl_seconds}")
        if self.sweep_interval_seconds <= 0:
            raise ValueError(f"sweep_interval_seconds must be positive, got {self.sweep_interval_seconds}")


@dataclass
class LoggingConfig:
    """Structured logging configuration."""
    level: LogLevel = LogLevel.INFO
    file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5
    console_output: bool = True
    enable_metrics: bool = True
    log_blocked_queries: bool = True
    slow_query_threshold: float = 1.0  # seconds

    def __post_init__(self):
        """Validate logging configuration."""
        if self.max_file_size <= 0:
            raise ValueError(f"max_file_size must be positive, got {self.max_file_size}")
        if self.backup_count < 0:
            raise ValueError(f"backup_count must be non-negative, got {self.backup_count}")
        if self.slow_query_threshold <= 0:
            raise ValueError(f"slow_query_threshold must be positive, got {self.slow_query_threshold}")


class TableStreamConfig(BaseModel):
    """Root configuration model with validation."""

    model_config = ConfigDict(extra="allow")

    server: Dict[str, Any] = Field(default_factory=dict)
    streaming: Dict[str, Any] = Field(default_factory=dict)
    sessions: Dict[str, Any] = Field(default_factory=dict)
    logging: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('streaming')
    @classmethod
    def validate_streaming(cls, v):
        """Reject non-numeric streaming settings early."""
        for key in ('chunk_size', 'store_batch_size', 'max_row_limit'):
            if key in v and not isinstance(v[key], int):
                raise ValueError(f"streaming.{key} must be an integer")
        return v

    @field_validator('logging')
    @classmethod
    def validate_logging(cls, v):
        """Validate log level names."""
        if 'level' in v:
            try:
                LogLevel(str(v['level']).lower())
            except ValueError:
                valid_levels = [level.value for level in LogLevel]
                raise ValueError(f"Invalid log level '{v['level']}'. Valid levels: {valid_levels}")
        return v


class ConfigManager:
    """Centralized configuration manager supporting environment variables and YAML files."""

    DEFAULT_CONFIG_FILES = [
        "./tablestream.yaml",
        "~/.tablestream.yaml",
        "/etc/tablestream.yaml"
    ]

    # env var -> (section, key, converter)
    ENV_VARS = {
        'HOST': ('server', 'host', str),
        'PORT': ('server', 'port', int),
        'TABLESTREAM_CSV_PATH': ('server', 'csv_path', str),
        'TABLESTREAM_TABLE': ('server', 'table_name', str),
        'TABLESTREAM_TRANSPORT': ('server', 'transport', str),
        'TABLESTREAM_CHUNK_SIZE': ('streaming', 'chunk_size', int),
        'TABLESTREAM_STORE_BATCH_SIZE': ('streaming', 'store_batch_size', int),
        'TABLESTREAM_PACING_DELAY': ('streaming', 'pacing_delay', float),
        'TABLESTREAM_QUERY_TIMEOUT': ('streaming', 'query_timeout', float),
        'TABLESTREAM_SESSION_TTL': ('sessions', 'ttl_seconds', float),
        'TABLESTREAM_SWEEP_INTERVAL': ('sessions', 'sweep_interval_seconds', float),
        'TABLESTREAM_LOG_LEVEL': ('logging', 'level', str),
        'TABLESTREAM_LOG_FILE': ('logging', 'file_path', str),
    }

    def __init__(self, config_file: Optional[str] = None):
        """Initialize configuration manager.

        Args:
            config_file: Specific config file to load. If None, searches default locations.
        """
        self._config_file = config_file
        self._config_data: Dict[str, Any] = {}
        self._loaded_file: Optional[str] = None
        self._lock = threading.Lock()

        load_dotenv()

        self.reload_config()

    @property
    def loaded_file(self) -> Optional[str]:
        """Path of the YAML file the current configuration came from, if any."""
        return self._loaded_file

    def reload_config(self) -> None:
        """Reload configuration from all sources with proper precedence."""
        with self._lock:
            self._config_data = {}

            # 1. Load defaults
            self._apply_defaults()

            # 2. Load from YAML files (discovery order)
            yaml_data = self._load_yaml_config()
            if yaml_data:
                self._merge_config(yaml_data)

            # 3. Override with environment variables
            env_data = self._load_env_config()
            if env_data:
                self._merge_config(env_data)

            # 4. Validate final configuration
            self._validate_config()

    def override(self, section: str, **values: Any) -> None:
        """Apply explicit overrides (e.g. from command line flags) on top of all sources."""
        with self._lock:
            self._merge_config({section: {k: v for k, v in values.items() if v is not None}})

    def get_server_config(self) -> ServerConfig:
        """Get server configuration."""
        data = self._config_data.get('server', {})
        return ServerConfig(
            host=data.get('host', 'localhost'),
            port=int(data.get('port', 3000)),
            csv_path=data.get('csv_path', './data/employees.csv'),
            table_name=data.get('table_name', 'employees'),
            transport=TransportType(str(data.get('transport', TransportType.HTTP.value)).lower())
        )

    def get_streaming_config(self) -> StreamingConfig:
        """Get streaming configuration."""
        data = self._config_data.get('streaming', {})
        query_timeout = data.get('query_timeout')
        return StreamingConfig(
            chunk_size=data.get('chunk_size', 5),
            store_batch_size=data.get('store_batch_size', 50),
            pacing_delay=float(data.get('pacing_delay', 0.0)),
            query_timeout=float(query_timeout) if query_timeout is not None else None,
            max_row_limit=data.get('max_row_limit', 10000)
        )

    def get_session_config(self) -> SessionConfig:
        """Get session configuration."""
        data = self._config_data.get('sessions', {})
        return SessionConfig(
            ttl_seconds=float(data.get('ttl_seconds', 30 * 60)),
            sweep_interval_seconds=float(data.get('sweep_interval_seconds', 5 * 60))
        )

    def get_logging_config(self) -> LoggingConfig:
        """Get logging configuration."""
        data = self._config_data.get('logging', {})
        return LoggingConfig(
            level=LogLevel(str(data.get('level', LogLevel.INFO.value)).lower()),
            file_path=data.get('file_path'),
            max_file_size=data.get('max_file_size', 10 * 1024 * 1024),
            backup_count=data.get('backup_count', 5),
            console_output=data.get('console_output', True),
            enable_metrics=data.get('enable_metrics', True),
            log_blocked_queries=data.get('log_blocked_queries', True),
            slow_query_threshold=data.get('slow_query_threshold', 1.0)
        )

    def _apply_defaults(self) -> None:
        """Apply default configuration values."""
        self._config_data = {
            'server': {
                'host': 'localhost',
                'port': 3000,
                'csv_path': './data/employees.csv',
                'table_name': 'employees',
                'transport': TransportType.HTTP.value
            },
            'streaming': {
                'chunk_size': 5,
                'store_batch_size': 50,
                'pacing_delay': 0.0,
                'max_row_limit': 10000
            },
            'sessions': {
                'ttl_seconds': 30 * 60,
                'sweep_interval_seconds': 5 * 60
            },
            'logging': {
                'level': LogLevel.INFO.value,
                'console_output': True
            }
        }

    def _load_yaml_config(self) -> Optional[Dict[str, Any]]:
        """Load configuration from YAML files with discovery."""
        self._loaded_file = None
        config_files = [self._config_file] if self._config_file else self.DEFAULT_CONFIG_FILES

        for file_path in config_files:
            if not file_path:
                continue

            expanded_path = Path(file_path).expanduser()

            if expanded_path.exists():
                try:
                    with open(expanded_path, 'r') as f:
                        content = f.read()

                    content = self._substitute_env_vars(content)
                    yaml_data = yaml.safe_load(content)

                    self._loaded_file = str(expanded_path)
                    return yaml_data

                except (OSError, yaml.YAMLError) as e:
                    print(f"Warning: Could not load config file {file_path}: {e}", file=sys.stderr)
                    continue

        return None

    def _load_env_config(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        env_config: Dict[str, Any] = {
            'server': {},
            'streaming': {},
            'sessions': {},
            'logging': {}
        }

        for env_var, (section, key, converter) in self.ENV_VARS.items():
            value = os.getenv(env_var)
            if value is None or value == '':
                continue
            try:
                env_config[section][key] = converter(value)
            except ValueError:
                print(f"Warning: Invalid {converter.__name__} value for {env_var}: {value}", file=sys.stderr)

        return env_config

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute environment variables in YAML content using ${VAR} syntax."""
        pattern = re.compile(r'\$\{([^}]+)\}')

        def replace_var(match):
            var_name = match.group(1)
            # Support default values: ${VAR:default_value}
            if ':' in var_name:
                var_name, default = var_name.split(':', 1)
                return os.getenv(var_name, default)
            else:
                return os.getenv(var_name, match.group(0))

        return pattern.sub(replace_var, content)

    def _merge_config(self, new_config: Dict[str, Any]) -> None:
        """Deep merge new configuration into existing configuration."""
        def deep_merge(target, source):
            for key, value in source.items():
                if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                    deep_merge(target[key], value)
                else:
                    target[key] = value

        deep_merge(self._config_data, new_config)

    def _validate_config(self) -> None:
        """Validate the final merged configuration."""
        try:
            TableStreamConfig(**self._config_data)
        except PydanticValidationError as e:
            print(f"Configuration validation errors: {e}", file=sys.stderr)
            # Section getters still raise on values they cannot use


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get or create global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def initialize_config(config_file: Optional[str] = None) -> ConfigManager:
    """Initialize global configuration manager with specific settings."""
    global _config_manager
    _config_manager = ConfigManager(config_file=config_file)
    return _config_manager
