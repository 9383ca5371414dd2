import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict


BASE_DIR = Path(__file__).resolve().parent

BYTES_PER_MB = 1024 * 1024
SECONDS_PER_DAY = 86_400


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def storage_root() -> Path:
    return _resolve_env_path("PASTEHOST_STORAGE_ROOT", BASE_DIR)


def data_dir() -> Path:
    return _resolve_env_path("PASTEHOST_DATA_DIR", storage_root() / "data")


def uploads_dir() -> Path:
    return _resolve_env_path("PASTEHOST_UPLOADS_DIR", storage_root() / "uploads")


def logs_dir() -> Path:
    return _resolve_env_path("PASTEHOST_LOGS_DIR", storage_root() / "logs")


def db_path() -> Path:
    return data_dir() / "pastes.db"


def config_path() -> Path:
    return data_dir() / "config.json"


def ensure_directories() -> None:
    data_dir().mkdir(parents=True, exist_ok=True)
    uploads_dir().mkdir(parents=True, exist_ok=True)
    logs_dir().mkdir(parents=True, exist_ok=True)


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("pastehost.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_MAX_UPLOAD_MB = _safe_int_env("PASTEHOST_MAX_UPLOAD_SIZE_MB", 64)
DEFAULT_CLEANUP_INTERVAL_SECONDS = _safe_int_env("PASTEHOST_CLEANUP_INTERVAL_SECONDS", 60)
DEFAULT_RATE_LIMIT_REQUESTS = _safe_int_env("PASTEHOST_RATE_LIMIT_REQUESTS", 30)
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = _safe_int_env("PASTEHOST_RATE_LIMIT_WINDOW_SECONDS", 60)
DEFAULT_URL_FETCH_TIMEOUT_SECONDS = _safe_int_env("PASTEHOST_URL_FETCH_TIMEOUT_SECONDS", 10)


DEFAULT_CONFIG: Dict[str, Any] = {
    "max_upload_size_mb": float(DEFAULT_MAX_UPLOAD_MB),
    "anon_min_retention_days": 7.0,
    "anon_max_retention_days": 128.0,
    "anon_retention_ceiling_days": 128.0,
    "key_min_retention_days": 30.0,
    "key_max_retention_days": 730.0,
    "cleanup_interval_seconds": float(DEFAULT_CLEANUP_INTERVAL_SECONDS),
    "url_fetch_timeout_seconds": float(DEFAULT_URL_FETCH_TIMEOUT_SECONDS),
    "rate_limit_requests": float(DEFAULT_RATE_LIMIT_REQUESTS),
    "rate_limit_window_seconds": float(DEFAULT_RATE_LIMIT_WINDOW_SECONDS),
    "api_key_request_limit": 3.0,
    "api_key_request_window_seconds": 3600.0,
    "download_rate_limit_per_minute": 120.0,
    "verify_token_ttl_hours": 24.0,
    "list_default_limit": 20.0,
    "list_max_limit": 100.0,
    "id_length": 8.0,
    "delete_key_length": 32.0,
    "api_key_length": 48.0,
    "click_tracker_workers": 4.0,
    "block_private_urls": True,
    "cleanup_enabled": True,
    "storage_backend": "local",
    "s3_bucket": "",
    "s3_endpoint_url": "",
    "s3_region": "",
    "s3_prefix": "pastes/",
    "base_url": "http://localhost:8000",
}

CONFIG_NUMERIC_KEYS = {
    key for key, value in DEFAULT_CONFIG.items() if isinstance(value, float)
}

CONFIG_BOOLEAN_KEYS = {"block_private_urls", "cleanup_enabled"}

CONFIG_STRING_KEYS = {
    "storage_backend",
    "s3_bucket",
    "s3_endpoint_url",
    "s3_region",
    "s3_prefix",
    "base_url",
}

STORAGE_BACKENDS = {"local", "s3"}


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity."""
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _clamp_tier(config: Dict[str, Any], low_key: str, high_key: str) -> None:
    if config[low_key] <= 0:
        config[low_key] = DEFAULT_CONFIG[low_key]
    if config[high_key] < config[low_key]:
        config[high_key] = config[low_key]


def normalize_config(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])

    # Every numeric setting is a size, count, length or duration.
    for key in CONFIG_NUMERIC_KEYS:
        if config[key] < 1:
            config[key] = DEFAULT_CONFIG[key]

    _clamp_tier(config, "anon_min_retention_days", "anon_max_retention_days")
    _clamp_tier(config, "key_min_retention_days", "key_max_retention_days")

    if config["anon_retention_ceiling_days"] < config["anon_min_retention_days"]:
        config["anon_retention_ceiling_days"] = config["anon_min_retention_days"]

    if config["list_max_limit"] < config["list_default_limit"]:
        config["list_max_limit"] = config["list_default_limit"]

    # Short identifiers below four characters collide constantly.
    if config["id_length"] < 4:
        config["id_length"] = DEFAULT_CONFIG["id_length"]

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            value = raw_config.get(key)
            if isinstance(value, str):
                config[key] = value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                config[key] = bool(value)

    for key in CONFIG_STRING_KEYS:
        if key in raw_config and isinstance(raw_config.get(key), str):
            config[key] = raw_config.get(key).strip()

    if config["storage_backend"] not in STORAGE_BACKENDS:
        logging.getLogger("pastehost.config").warning(
            "Unknown storage backend %s. Using default: local",
            config["storage_backend"],
        )
        config["storage_backend"] = "local"

    config["base_url"] = config["base_url"].rstrip("/")
    return config


def load_config() -> Dict[str, Any]:
    ensure_directories()
    path = config_path()
    if path.exists():
        with path.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(raw)

    data = normalize_config(raw)
    if raw != data:
        save_config(data)
    return data


def save_config(config: Dict[str, Any]) -> None:
    ensure_directories()
    normalized = normalize_config(config)
    path = config_path()

    # Write to temporary file first for atomic update
    temp_path = path.with_suffix(".tmp")
    try:
        with temp_path.open("w", encoding="utf-8") as config_file:
            json.dump(normalized, config_file, indent=2)
            config_file.flush()
            os.fsync(config_file.fileno())

        temp_path.replace(path)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def max_upload_bytes(config: Dict[str, Any]) -> int:
    return int(config["max_upload_size_mb"] * BYTES_PER_MB)
