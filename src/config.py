"""
Configuration module for the Node Cleanup Controller.

Loads configuration from environment variables. Cleanup plugins are enabled
through an ordered list; the order is the execution order.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

# Option keys containing any of these are never logged in clear text
_SENSITIVE_KEYS = ("token", "webhook", "password", "secret")


def parse_duration(value: Optional[str], default: float) -> float:
    """
    Parse a duration such as '300s', '1m30s', '500ms' or '2.5' into seconds.

    Plain numbers are taken as seconds. Invalid values log a warning and
    return the default.
    """
    if value is None or str(value).strip() == "":
        return default

    text = str(value).strip()
    try:
        return float(text)
    except ValueError:
        pass

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(text):
        logger.warning(f"Invalid duration '{value}', using default {default}s")
        return default
    return total


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class KubernetesConfig:
    """Kubernetes client configuration."""

    kubeconfig: str = ""  # empty = in-cluster config
    insecure_skip_tls_verify: bool = False

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            kubeconfig=os.getenv("KUBECONFIG", ""),
            insecure_skip_tls_verify=_env_bool("INSECURE_SKIP_TLS_VERIFY", False),
        )


@dataclass
class WatcherConfig:
    """Deletion watcher configuration. Durations are in seconds."""

    retry_delay: float = 10.0
    retry_max_delay: float = 300.0
    retry_backoff_factor: float = 1.0  # 1.0 = fixed delay
    retry_jitter_factor: float = 0.0
    work_queue_size: int = 100
    resync_period: float = 30.0
    cache_sync_timeout: float = 60.0
    finalizer_operation_timeout: float = 30.0
    watch_timeout: int = 300
    max_conflict_retries: int = 3

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            retry_delay=float(os.getenv("RETRY_DELAY", "10")),
            retry_max_delay=float(os.getenv("RETRY_MAX_DELAY", "300")),
            retry_backoff_factor=float(os.getenv("RETRY_BACKOFF_FACTOR", "1.0")),
            retry_jitter_factor=float(os.getenv("RETRY_JITTER_FACTOR", "0.0")),
            work_queue_size=int(os.getenv("WORK_QUEUE_SIZE", "100")),
            resync_period=float(os.getenv("RESYNC_PERIOD", "30")),
            cache_sync_timeout=float(os.getenv("CACHE_SYNC_TIMEOUT", "60")),
            finalizer_operation_timeout=float(
                os.getenv("FINALIZER_OPERATION_TIMEOUT", "30")
            ),
            watch_timeout=int(os.getenv("WATCH_TIMEOUT", "300")),
            max_conflict_retries=int(os.getenv("MAX_CONFLICT_RETRIES", "3")),
        )


@dataclass
class HealthConfig:
    """Health probe and event stream server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        return cls(
            host=os.getenv("HEALTH_HOST", "0.0.0.0"),
            port=int(os.getenv("HEALTH_PORT", "8080")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


@dataclass
class PluginConfig:
    """Plugin system configuration."""

    # Ordered list of enabled cleanup plugins; order is execution order
    enabled_plugins: List[str] = field(default_factory=lambda: ["logger"])

    # Plugin option overrides keyed by plugin name
    plugin_configs: Dict[str, Dict[str, str]] = field(default_factory=dict)

    @classmethod
    def from_env(cls):
        """Load from environment variables."""
        enabled_str = os.getenv("ENABLED_PLUGINS", "logger")
        enabled = [p.strip() for p in enabled_str.split(",") if p.strip()]

        plugin_configs: Dict[str, Dict[str, str]] = {}
        raw = os.getenv("PLUGIN_CONFIGS")
        if raw:
            try:
                loaded = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring invalid PLUGIN_CONFIGS JSON: {e}")
            else:
                if isinstance(loaded, dict):
                    plugin_configs = {
                        name: {k: str(v) for k, v in (options or {}).items()}
                        for name, options in loaded.items()
                    }
                else:
                    logger.warning("Ignoring PLUGIN_CONFIGS: expected a JSON object")

        return cls(enabled_plugins=enabled, plugin_configs=plugin_configs)

    def get_plugin_config(self, plugin_name: str) -> Dict[str, str]:
        """Get option overrides for a specific plugin."""
        return self.plugin_configs.get(plugin_name, {})


def redact_options(options: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of options with sensitive values masked."""
    return {
        key: "***REDACTED***"
        if any(s in key.lower() for s in _SENSITIVE_KEYS)
        else value
        for key, value in options.items()
    }


@dataclass
class Config:
    """Main configuration object."""

    kubernetes: KubernetesConfig
    watcher: WatcherConfig
    health: HealthConfig
    plugins: PluginConfig

    @classmethod
    def from_env(cls):
        """Load all configuration from environment variables."""
        return cls(
            kubernetes=KubernetesConfig.from_env(),
            watcher=WatcherConfig.from_env(),
            health=HealthConfig.from_env(),
            plugins=PluginConfig.from_env(),
        )

    @classmethod
    def default(cls):
        """Return default configuration."""
        return cls(
            kubernetes=KubernetesConfig(),
            watcher=WatcherConfig(),
            health=HealthConfig(),
            plugins=PluginConfig(),
        )

    def log_summary(self, plugin_options: Dict[str, Dict[str, str]]) -> None:
        """Log the effective configuration, hiding sensitive plugin options."""
        logger.info("Configuration:")
        logger.info(f"  Kubeconfig: {self.kubernetes.kubeconfig or '(in-cluster)'}")
        logger.info(
            f"  Insecure Skip TLS Verify: {self.kubernetes.insecure_skip_tls_verify}"
        )
        logger.info(f"  Health server: {self.health.host}:{self.health.port}")
        logger.info(
            f"  Retry delay: {self.watcher.retry_delay}s "
            f"(factor {self.watcher.retry_backoff_factor}, "
            f"max {self.watcher.retry_max_delay}s)"
        )
        logger.info(f"  Enabled Plugins: {self.plugins.enabled_plugins}")
        for plugin_name in self.plugins.enabled_plugins:
            options = plugin_options.get(plugin_name)
            if options is None:
                continue
            logger.info(f"  Plugin [{plugin_name}]:")
            for key, value in redact_options(options).items():
                logger.info(f"    {key}: {value}")


# Global config instance
config: Optional[Config] = None


def load_config() -> Config:
    """Load configuration (singleton pattern)."""
    global config
    if config is None:
        config = Config.from_env()
    return config


def get_config() -> Config:
    """Get the current configuration."""
    if config is None:
        return load_config()
    return config


def reset_config() -> None:
    """Reset configuration (mainly for testing)."""
    global config
    config = None
