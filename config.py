import os
import logging
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any, Mapping, Tuple
from urllib.parse import urlparse

import yaml

from normalize.quantity import parse_duration, memory_bytes


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)


def setup_logging():
    """Configure application-wide logging"""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("werkzeug").setLevel(logging.WARNING)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


SERVICE_ACCOUNT_TOKEN_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/token"
SERVICE_CA_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/service-ca.crt"


# =============================================================================
# Defaults (overridden by the YAML config file, then by the environment)
# =============================================================================
DEFAULT_SETTINGS: Dict[str, Any] = {
    # Force-sleep
    "quota": "16h",
    "period": "24h",
    "sleep_sync_period": "60m",
    "sleep_duration": "8h",
    "sleep_dry_run": True,
    "workers": 10,
    "terminating_quota": "",
    "nonterminating_quota": "",
    # Metrics server
    "metrics_bind_addr": ":8080",
    "collect_cache": True,
    # Prometheus
    "prometheus_url": "https://prometheus.openshift-devops-monitor.svc.cluster.local",
    "prometheus_timeout_seconds": 30,
    "prometheus_retry_count": 3,
    "prometheus_retry_backoff_base": 1,
    "prometheus_token_file": SERVICE_ACCOUNT_TOKEN_FILE,
    "prometheus_ca_file": SERVICE_CA_FILE,
    # Auto-idling
    "idle_sync_period": "10m",
    "idle_query_period": "30m",
    "idle_threshold": 5000,
    "idle_dry_run": True,
    # Resource cache
    "cache_refresh_period": "2m",
    "cache_workers": 4,
    "excluded_namespaces": "default,openshift,openshift-*,kube-*",
}

# settings key -> environment variable
ENV_VARS: Dict[str, str] = {key: key.upper() for key in DEFAULT_SETTINGS}


# =============================================================================
# Configuration Validation
# =============================================================================
class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _validate_positive_int(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_positive_duration(name: str, value: timedelta) -> None:
    if value.total_seconds() <= 0:
        raise ConfigValidationError(f"{name} must be a positive duration, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except Exception as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def parse_bind_addr(value: str) -> Tuple[str, int]:
    """Split "host:port" (host optional, as in ":8080") into (host, port)."""
    host, sep, port = str(value).rpartition(":")
    if not sep:
        raise ConfigValidationError(f"metrics_bind_addr must look like host:port, got {value!r}")
    try:
        port_num = int(port)
    except ValueError:
        raise ConfigValidationError(f"metrics_bind_addr has an invalid port: {value!r}")
    if not 0 < port_num < 65536:
        raise ConfigValidationError(f"metrics_bind_addr port out of range: {value!r}")
    return host or "0.0.0.0", port_num


# =============================================================================
# Settings
# =============================================================================
@dataclass(frozen=True)
class Settings:
    """Validated process configuration. Built once by load_settings()."""

    quota: timedelta
    period: timedelta
    sleep_sync_period: timedelta
    sleep_duration: timedelta
    sleep_dry_run: bool
    workers: int
    terminating_quota: int
    nonterminating_quota: int
    metrics_bind_addr: str
    collect_cache: bool
    prometheus_url: str
    prometheus_timeout_seconds: int
    prometheus_retry_count: int
    prometheus_retry_backoff_base: int
    prometheus_token_file: str
    prometheus_ca_file: str
    idle_sync_period: timedelta
    idle_query_period: timedelta
    idle_threshold: int
    idle_dry_run: bool
    cache_refresh_period: timedelta
    cache_workers: int
    excluded_namespaces: Tuple[str, ...]


def load_config(config_path: str) -> Dict[str, Any]:
    """Load YAML configuration file (flat mapping of settings keys)"""
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)
    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigValidationError(f"{config_path} must contain a mapping at the top level")
    return config


def _merge_sources(config_file: Optional[str], environ: Mapping[str, str]) -> Dict[str, Any]:
    raw = dict(DEFAULT_SETTINGS)
    if config_file:
        try:
            file_values = load_config(config_file)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigValidationError(f"Cannot read config file {config_file}: {e}")
        unknown = sorted(set(file_values) - set(DEFAULT_SETTINGS))
        if unknown:
            raise ConfigValidationError(f"Unknown keys in {config_file}: {', '.join(unknown)}")
        raw.update(file_values)
    for key, env_name in ENV_VARS.items():
        if env_name in environ:
            raw[key] = environ[env_name]
    return raw


def load_settings(config_file: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Merge defaults, the YAML file and the environment, then validate.

    Raises:
        ConfigValidationError: listing every invalid value
    """
    if environ is None:
        environ = os.environ
    if config_file is None:
        config_file = environ.get("CONFIG_FILE") or None
    raw = _merge_sources(config_file, environ)

    errors = []
    parsed: Dict[str, Any] = {}

    def _convert(key, fn):
        try:
            parsed[key] = fn(raw[key])
        except ConfigValidationError as e:
            errors.append(str(e))
        except (TypeError, ValueError) as e:
            errors.append(f"{key}: {e}")

    for key in ("quota", "period", "sleep_sync_period", "sleep_duration",
                "idle_sync_period", "idle_query_period", "cache_refresh_period"):
        _convert(key, parse_duration)
    for key in ("workers", "prometheus_timeout_seconds", "prometheus_retry_count",
                "prometheus_retry_backoff_base", "idle_threshold", "cache_workers"):
        _convert(key, int)
    for key in ("sleep_dry_run", "idle_dry_run", "collect_cache"):
        _convert(key, _as_bool)
    # A quota is required: the sleeper cannot weigh usage without one
    _convert("terminating_quota", memory_bytes)
    _convert("nonterminating_quota", memory_bytes)
    for key in ("prometheus_url", "prometheus_token_file", "prometheus_ca_file", "metrics_bind_addr"):
        parsed[key] = str(raw[key] or "")
    parsed["excluded_namespaces"] = tuple(
        s.strip() for s in str(raw["excluded_namespaces"] or "").split(",") if s.strip()
    )

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )

    settings = Settings(**parsed)
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    """Validate ranges and formats of already-parsed settings

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors = []

    checks = [
        (_validate_positive_duration, "quota", settings.quota),
        (_validate_positive_duration, "period", settings.period),
        (_validate_positive_duration, "sleep_sync_period", settings.sleep_sync_period),
        (_validate_positive_duration, "sleep_duration", settings.sleep_duration),
        (_validate_positive_duration, "idle_sync_period", settings.idle_sync_period),
        (_validate_positive_duration, "idle_query_period", settings.idle_query_period),
        (_validate_positive_duration, "cache_refresh_period", settings.cache_refresh_period),
        (_validate_positive_int, "workers", settings.workers),
        (_validate_positive_int, "cache_workers", settings.cache_workers),
        (_validate_positive_int, "prometheus_timeout_seconds", settings.prometheus_timeout_seconds),
        (_validate_positive_int, "prometheus_retry_count", settings.prometheus_retry_count),
        (_validate_positive_int, "terminating_quota", settings.terminating_quota),
        (_validate_positive_int, "nonterminating_quota", settings.nonterminating_quota),
        (_validate_url, "prometheus_url", settings.prometheus_url),
    ]
    for check, name, value in checks:
        try:
            check(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    if settings.idle_threshold < 0:
        errors.append(f"idle_threshold must not be negative, got {settings.idle_threshold}")
    if settings.prometheus_retry_backoff_base < 0:
        errors.append("prometheus_retry_backoff_base must not be negative")

    try:
        parse_bind_addr(settings.metrics_bind_addr)
    except ConfigValidationError as e:
        errors.append(str(e))

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )


__all__ = [
    "LOG_LEVEL",
    "LOG_FORMAT",
    "setup_logging",
    "DEFAULT_SETTINGS",
    "ENV_VARS",
    "ConfigValidationError",
    "Settings",
    "load_config",
    "load_settings",
    "validate_settings",
    "parse_bind_addr",
]
