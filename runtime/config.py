"""
Resume Pipeline — Settings Loader

Three-tier configuration loading:
  1. Base YAML file (pipeline_config.yaml)
  2. Per-environment overlay files (config/{CC_ENV}.yaml merged over base)
  3. Environment variable overrides (CC_ prefixed)

Feature flags are read last from FF_* environment variables and win over
the YAML `features:` block.

Usage:
    from runtime.config import load_settings

    settings = load_settings()
    settings.gate_timeout_seconds         # 600
    settings.features.redis_rate_limit    # False unless FF_REDIS_RATE_LIMIT=true

Environment variables:
    CC_ENV              — active profile (dev, staging, prod)
    CC_CONFIG_DIR       — directory for overlay files (default: config/)
    CC_CONFIG_PATH      — explicit path to the base YAML file
    CC_<SECTION>__<KEY> — overrides (e.g., CC_GATES__TIMEOUT_SECONDS=300)
    FF_*                — feature flags (FF_BLUEPRINT_APPROVAL=false)
    REDIS_URL           — shared store for the rate limiter
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("resume_pipeline.config")

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


# ═══════════════════════════════════════════════════════════════════
# Settings
# ═══════════════════════════════════════════════════════════════════

@dataclass
class FeatureFlags:
    redis_rate_limit: bool = False
    blueprint_approval: bool = True
    quality_review_approval: bool = True


@dataclass
class Settings:
    # Gates
    gate_timeout_seconds: float = 600.0
    max_buffered_responses: int = 25
    max_buffered_item_bytes: int = 100_000
    max_buffered_total_bytes: int = 300_000

    # Session lock
    lock_expiry_seconds: float = 120.0
    lock_poll_interval_seconds: float = 0.5
    lock_max_wait_seconds: float = 30.0
    lock_renew_interval_seconds: float = 60.0
    lock_max_consecutive_errors: int = 3

    # Pipeline
    max_running_pipelines: int = 10
    single_instance: bool = True
    stale_pipeline_seconds: float = 900.0
    section_write_concurrency: int = 3
    section_timeout_seconds: float = 300.0
    max_section_review_iterations: int = 5
    max_revision_instructions: int = 4
    max_compliance_fixes: int = 3
    max_positioning_follow_ups: int = 3
    event_retention_seconds: float = 300.0
    collaborators: str = ""  # "module:factory"

    # Rate limiting
    start_limit_per_minute: int = 5
    respond_limit_per_minute: int = 30
    max_rate_limit_buckets: int = 50_000
    redis_url: str = ""

    # Persistence
    db_backend: str = "sqlite"
    db_path: str = "pipeline.db"
    db_dsn: str = ""

    log_level: str = "INFO"
    features: FeatureFlags = field(default_factory=FeatureFlags)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# Map from YAML section/key to Settings attribute
_SECTION_KEYS: dict[str, dict[str, str]] = {
    "gates": {
        "timeout_seconds": "gate_timeout_seconds",
        "max_buffered_responses": "max_buffered_responses",
        "max_buffered_item_bytes": "max_buffered_item_bytes",
        "max_buffered_total_bytes": "max_buffered_total_bytes",
    },
    "session_lock": {
        "expiry_seconds": "lock_expiry_seconds",
        "poll_interval_seconds": "lock_poll_interval_seconds",
        "max_wait_seconds": "lock_max_wait_seconds",
        "renew_interval_seconds": "lock_renew_interval_seconds",
        "max_consecutive_errors": "lock_max_consecutive_errors",
    },
    "pipeline": {
        "max_running": "max_running_pipelines",
        "single_instance": "single_instance",
        "stale_after_seconds": "stale_pipeline_seconds",
        "section_write_concurrency": "section_write_concurrency",
        "section_timeout_seconds": "section_timeout_seconds",
        "max_section_review_iterations": "max_section_review_iterations",
        "max_revision_instructions": "max_revision_instructions",
        "max_compliance_fixes": "max_compliance_fixes",
        "max_positioning_follow_ups": "max_positioning_follow_ups",
        "event_retention_seconds": "event_retention_seconds",
        "collaborators": "collaborators",
    },
    "rate_limit": {
        "start_per_minute": "start_limit_per_minute",
        "respond_per_minute": "respond_limit_per_minute",
        "max_buckets": "max_rate_limit_buckets",
        "redis_url": "redis_url",
    },
    "database": {
        "backend": "db_backend",
        "path": "db_path",
        "dsn": "db_dsn",
    },
    "logging": {
        "level": "log_level",
    },
}


# ═══════════════════════════════════════════════════════════════════
# Deep Merge
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Deep-merge overlay into base. Overlay values win.
    Lists are replaced (not appended). Dicts are recursed.
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_nested(d: dict, keys: list[str], value: str):
    """Set a nested dict value from a list of keys."""
    for key in keys[:-1]:
        d = d.setdefault(key, {})
    # Parse value as YAML (handles numbers, booleans, lists)
    try:
        d[keys[-1]] = yaml.safe_load(value)
    except yaml.YAMLError:
        d[keys[-1]] = value


# ═══════════════════════════════════════════════════════════════════
# Tier 2: Overlay Files
# ═══════════════════════════════════════════════════════════════════

def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Load per-environment overlay file.
    Looks for config/{env}.yaml or {config_dir}/{env}.yaml.
    Returns empty dict if not found.
    """
    env = env or os.environ.get("CC_ENV", "")
    if not env:
        return {}

    config_dir = config_dir or os.environ.get("CC_CONFIG_DIR", "config")

    candidates = [
        Path(config_dir) / f"{env}.yaml",
        Path(config_dir) / f"{env}.yml",
        Path(os.path.dirname(base_path)) / "config" / f"{env}.yaml",
    ]

    for path in candidates:
        if path.exists():
            try:
                with open(path) as f:
                    overlay = yaml.safe_load(f) or {}
                logger.info("Loaded config overlay: %s (%d keys)", path, len(overlay))
                return overlay
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load overlay %s: %s", path, e)

    logger.debug("No config overlay found for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Tier 3: Environment Variable Overrides
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = "CC_") -> dict[str, Any]:
    """
    Load CC_ prefixed environment variables as config overrides.

    Naming convention (double underscore separates levels, so keys
    may contain single underscores):
      CC_GATES__TIMEOUT_SECONDS=300 → {"gates": {"timeout_seconds": 300}}

    CC_ENV, CC_CONFIG_DIR, CC_CONFIG_PATH, CC_DB_BACKEND, CC_DB_DSN and
    CC_VERSION are meta config and skipped.
    """
    excluded = {"CC_ENV", "CC_CONFIG_DIR", "CC_CONFIG_PATH", "CC_DB_BACKEND", "CC_DB_DSN", "CC_VERSION"}
    overrides: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix) or key in excluded:
            continue
        path = [p for p in key[len(prefix):].lower().split("__") if p]
        if len(path) < 2:
            continue
        _set_nested(overrides, path, value)

    if overrides:
        logger.debug("Loaded %d env var override sections", len(overrides))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Feature Flags
# ═══════════════════════════════════════════════════════════════════

def env_bool(name: str, default: bool) -> bool:
    """Read a boolean from the environment. Unset or empty → default."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _load_feature_flags(block: dict[str, Any]) -> FeatureFlags:
    flags = FeatureFlags()
    for name in asdict(flags):
        if name in block:
            setattr(flags, name, bool(block[name]))
        setattr(flags, name, env_bool(f"FF_{name.upper()}", getattr(flags, name)))
    return flags


# ═══════════════════════════════════════════════════════════════════
# Main Loader
# ═══════════════════════════════════════════════════════════════════

def _resolve_base_path(base_path: str = "") -> str:
    if base_path:
        return base_path
    explicit = os.environ.get("CC_CONFIG_PATH")
    if explicit:
        return explicit
    if os.path.exists("pipeline_config.yaml"):
        return "pipeline_config.yaml"
    return str(_PROJECT_ROOT / "pipeline_config.yaml")


def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load the raw merged configuration dict.

    Priority (highest wins):
      1. Environment variable overrides (CC_*)
      2. Per-environment overlay file (config/{env}.yaml)
      3. Base config file (pipeline_config.yaml)
    """
    base_path = _resolve_base_path(base_path)
    config: dict[str, Any] = {}
    if os.path.exists(base_path):
        with open(base_path) as f:
            config = yaml.safe_load(f) or {}
        logger.debug("Loaded base config: %s", base_path)

    overlay = _load_overlay_file(base_path, env=env, config_dir=config_dir)
    if overlay:
        config = deep_merge(config, overlay)

    if include_env_vars:
        env_overrides = _load_env_overrides()
        if env_overrides:
            config = deep_merge(config, env_overrides)

    config["_active_env"] = env or os.environ.get("CC_ENV", "default")
    config["_config_source"] = base_path
    return config


def settings_from_dict(config: dict[str, Any]) -> Settings:
    """Build Settings from a merged config dict. Unknown keys are ignored."""
    settings = Settings()
    for section, keys in _SECTION_KEYS.items():
        block = config.get(section) or {}
        if not isinstance(block, dict):
            continue
        for key, attr in keys.items():
            if key not in block or block[key] is None:
                continue
            current = getattr(settings, attr)
            value = block[key]
            if isinstance(current, bool) and isinstance(value, str):
                value = value.strip().lower() in ("1", "true", "yes", "on")
            try:
                setattr(settings, attr, type(current)(value))
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid config value %s.%s=%r", section, key, value)

    features = config.get("features") or {}
    settings.features = _load_feature_flags(features if isinstance(features, dict) else {})

    if not settings.redis_url:
        settings.redis_url = os.environ.get("REDIS_URL", "")
    if os.environ.get("CC_DB_BACKEND"):
        settings.db_backend = os.environ["CC_DB_BACKEND"].lower()
    if os.environ.get("CC_DB_DSN"):
        settings.db_dsn = os.environ["CC_DB_DSN"]
    return settings


def load_settings(base_path: str = "", env: str = "", config_dir: str = "") -> Settings:
    """Load Settings with the full three-tier merge plus feature flags."""
    return settings_from_dict(load_config(base_path=base_path, env=env, config_dir=config_dir))
