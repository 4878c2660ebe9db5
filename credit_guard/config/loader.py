"""
Configuration management and loading.

Handles service settings from YAML, the VIP allow-list and provider
credentials from the environment.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

CREDENTIALS_ENV_VAR = "SYNTH_API_KEYS"

_VIP_SEPARATORS = re.compile(r"[,\n;，]+")


class PaymentMode(Enum):
    """How generation requests are paid for."""
    FREE = "free"
    PAID = "paid"


class StoreBackend(Enum):
    """Available key-value store implementations."""
    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(frozen=True)
class StoreConfig:
    """Key-value store selection."""
    backend: StoreBackend = StoreBackend.MEMORY
    path: str = "credit_guard.db"


@dataclass(frozen=True)
class QuotaConfig:
    """Free quota and anti-abuse limits."""
    free_per_day: int = 3
    ip_device_limit: int = 10
    vip_allowlist: str = ""

    def __post_init__(self):
        """Validate quota values are positive."""
        if self.free_per_day < 0:
            raise ValueError("free_per_day must be >= 0")
        if self.ip_device_limit <= 0:
            raise ValueError("ip_device_limit must be > 0")


@dataclass(frozen=True)
class PaymentConfig:
    """Payment mode settings."""
    mode: PaymentMode = PaymentMode.FREE
    allow_mock_pay: bool = True


@dataclass(frozen=True)
class RateLimitRule:
    """Fixed-window limit for one route."""
    window_seconds: float
    max_requests: int

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.max_requests <= 0:
            raise ValueError("max_requests must be > 0")


def _default_route_limits() -> Dict[str, RateLimitRule]:
    return {
        "generate-grid": RateLimitRule(window_seconds=60, max_requests=10),
        "create-order": RateLimitRule(window_seconds=60, max_requests=5),
    }


@dataclass(frozen=True)
class RateLimitConfig:
    """Default and per-route request limits."""
    default: RateLimitRule = field(
        default_factory=lambda: RateLimitRule(window_seconds=60, max_requests=60)
    )
    routes: Dict[str, RateLimitRule] = field(default_factory=_default_route_limits)

    def rule_for(self, route: str) -> RateLimitRule:
        """Get the rule for a route, falling back to the default."""
        return self.routes.get(route, self.default)


@dataclass(frozen=True)
class SynthesisConfig:
    """Provider call settings."""
    model: str = "gpt-image-1"
    image_size: str = "1024x1024"
    retries: int = 2
    base_delay_seconds: float = 1.0
    group_delay_seconds: float = 4.0

    def __post_init__(self):
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.group_delay_seconds < 0:
            raise ValueError("group_delay_seconds must be >= 0")


@dataclass(frozen=True)
class ServiceConfig:
    """Complete service configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    payment: PaymentConfig = field(default_factory=PaymentConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)


_SECTION_KEYS = {
    "store": {"backend", "path"},
    "quota": {"free_per_day", "ip_device_limit", "vip_allowlist"},
    "payment": {"mode", "allow_mock_pay"},
    "rate_limits": {"window_seconds", "max_requests", "routes"},
    "synthesis": {"model", "image_size", "retries", "base_delay_seconds", "group_delay_seconds"},
}


def load_service_config(path: Optional[str] = None) -> ServiceConfig:
    """Load and validate service configuration from a YAML file.

    Unknown keys are rejected so that a typo never silently falls back
    to a default limit. Without a path the built-in defaults are used.

    Args:
        path: Path to YAML configuration file, or None for defaults

    Returns:
        Validated ServiceConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return ServiceConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Service config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {}
    for name, allowed in _SECTION_KEYS.items():
        data = raw_config.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"'{name}' must be a dictionary")
        unknown = set(data.keys()) - allowed
        if unknown:
            raise ValueError(f"Unknown keys in {name}: {unknown}")
        sections[name] = data

    return ServiceConfig(
        store=_parse_store(sections["store"]),
        quota=QuotaConfig(
            free_per_day=_int(sections["quota"], "free_per_day", 3, "quota"),
            ip_device_limit=_int(sections["quota"], "ip_device_limit", 10, "quota"),
            vip_allowlist=str(sections["quota"].get("vip_allowlist", "") or ""),
        ),
        payment=_parse_payment(sections["payment"]),
        rate_limits=_parse_rate_limits(sections["rate_limits"]),
        synthesis=SynthesisConfig(
            model=str(sections["synthesis"].get("model", "gpt-image-1")),
            image_size=str(sections["synthesis"].get("image_size", "1024x1024")),
            retries=_int(sections["synthesis"], "retries", 2, "synthesis"),
            base_delay_seconds=_float(sections["synthesis"], "base_delay_seconds", 1.0, "synthesis"),
            group_delay_seconds=_float(sections["synthesis"], "group_delay_seconds", 4.0, "synthesis"),
        ),
    )


def _int(data: Dict, key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _float(data: Dict, key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _parse_store(data: Dict) -> StoreConfig:
    backend_str = data.get("backend", StoreBackend.MEMORY.value)
    try:
        backend = StoreBackend(str(backend_str).lower())
    except ValueError:
        valid = [b.value for b in StoreBackend]
        raise ValueError(f"'backend' in store must be one of: {valid}")
    return StoreConfig(backend=backend, path=str(data.get("path", "credit_guard.db")))


def _parse_payment(data: Dict) -> PaymentConfig:
    mode_str = data.get("mode", PaymentMode.FREE.value)
    try:
        mode = PaymentMode(str(mode_str).lower())
    except ValueError:
        valid = [m.value for m in PaymentMode]
        raise ValueError(f"'mode' in payment must be one of: {valid}")
    allow_mock_pay = data.get("allow_mock_pay", True)
    if not isinstance(allow_mock_pay, bool):
        raise ValueError("'allow_mock_pay' in payment must be a boolean")
    return PaymentConfig(mode=mode, allow_mock_pay=allow_mock_pay)


def _parse_rate_limits(data: Dict) -> RateLimitConfig:
    default = RateLimitRule(
        window_seconds=_float(data, "window_seconds", 60, "rate_limits"),
        max_requests=_int(data, "max_requests", 60, "rate_limits"),
    )
    routes = _default_route_limits()
    routes_data = data.get("routes") or {}
    if not isinstance(routes_data, dict):
        raise ValueError("'routes' in rate_limits must be a dictionary")
    for route, rule_data in routes_data.items():
        path = f"rate_limits.routes.{route}"
        if not isinstance(rule_data, dict):
            raise ValueError(f"Route '{route}' must be a dictionary")
        unknown = set(rule_data.keys()) - {"window_seconds", "max_requests"}
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {unknown}")
        routes[route] = RateLimitRule(
            window_seconds=_float(rule_data, "window_seconds", default.window_seconds, path),
            max_requests=_int(rule_data, "max_requests", default.max_requests, path),
        )
    return RateLimitConfig(default=default, routes=routes)


def parse_vip_allowlist(raw: str) -> Dict[str, int]:
    """Parse a delimited ``identifier:quota`` allow-list.

    Entries are separated by commas, semicolons, full-width commas or
    newlines; ``#`` starts a comment. The last colon separates the
    identifier from the quota so IPv6 identifiers such as ``::1`` work.
    Malformed entries are skipped with a warning.

    Args:
        raw: Raw allow-list text

    Returns:
        Mapping of identifier to daily quota
    """
    allowlist: Dict[str, int] = {}
    if not raw or not raw.strip():
        return allowlist

    for entry in _VIP_SEPARATORS.split(raw.replace("\r", "")):
        entry = entry.split("#", 1)[0].strip()
        if not entry:
            continue

        identifier, sep, quota_str = entry.rpartition(":")
        identifier = identifier.strip()
        quota_str = quota_str.strip()
        if not sep or not identifier or not quota_str:
            logger.warning("Ignoring malformed VIP entry: %r", entry)
            continue

        try:
            quota = int(quota_str)
        except ValueError:
            logger.warning("Ignoring VIP entry with non-numeric quota: %r", entry)
            continue
        if quota <= 0:
            logger.warning("Ignoring VIP entry with non-positive quota: %r", entry)
            continue

        allowlist[identifier] = quota
        logger.info("VIP configured: %s -> %d quota/day", identifier, quota)

    if not allowlist:
        logger.warning(
            "VIP allow-list is set but no valid entries were parsed. "
            "Check format like 'id:10,ip:5'."
        )
    return allowlist


def load_credentials(env: Optional[Dict[str, str]] = None) -> List[str]:
    """Read provider credentials from the comma-separated environment variable.

    Args:
        env: Environment mapping, defaults to ``os.environ``

    Returns:
        Non-empty, stripped credential strings in configured order
    """
    source = os.environ if env is None else env
    raw = source.get(CREDENTIALS_ENV_VAR, "")
    return [key.strip() for key in raw.split(",") if key.strip()]
