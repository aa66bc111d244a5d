"""Configuration loading for the CNAB upload pipeline.

Configuration lives in a single YAML file (``src/config/config.yaml`` by
default, or the path in ``CNAB_CONFIG``) under a ``cnab:`` section.

Main Functions
--------------

    - load_config(): Load and validate configuration
    - get_config(): Get or load singleton config instance
    - set_config() / reset_config(): Replace or clear the singleton

Usage Examples
--------------

    >>> from config import load_config
    >>> config = load_config()
    >>> config.processing.checkpoint_interval
    1000

    >>> config = load_config(overrides={"processing": {"mode": "async"}})

Configuration Priority
---------------------

1. ``overrides`` passed to load_config()
2. Environment variables referenced as ${VAR:-default} in the YAML
3. YAML values
4. Dataclass defaults
"""

from config.config import (
    DatabaseConfig,
    KafkaQueueConfig,
    LoggingConfig,
    PipelineConfig,
    ProcessingConfig,
    QueueConfig,
    RecoveryConfig,
    StorageConfig,
    WorkerConfig,
    get_config,
    load_config,
    reset_config,
    set_config,
)

__all__ = [
    "load_config",
    "get_config",
    "set_config",
    "reset_config",
    "PipelineConfig",
    "DatabaseConfig",
    "QueueConfig",
    "KafkaQueueConfig",
    "ProcessingConfig",
    "StorageConfig",
    "WorkerConfig",
    "RecoveryConfig",
    "LoggingConfig",
]
