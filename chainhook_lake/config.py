import json
import os
from dataclasses import dataclass
from typing import Any, List, Optional


@dataclass
class AppConfig:
    sqlite_path: str
    api_host: str
    api_port: int
    cron_secret: Optional[str]
    webhook_dedup: bool
    max_webhook_bytes: int
    stacks_api_url: str
    stacks_api_key: Optional[str]
    ipfs_gateway: str
    query_timeout_sec: float
    long_query_timeout_sec: float
    http_timeout_sec: float
    uri_fetch_timeout_sec: float
    max_http_retries: int
    lease_ttl_sec: int
    validation_batch_limit: int
    validation_concurrency: int
    validation_batch_pause_ms: int
    analysis_batch_limit: int
    analysis_concurrency: int
    reserve_batch_limit: int
    reserve_refresh_sec: int
    log_level: str
    cors_allow_origins: List[str]


def _parse_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{key} must be a boolean, got: {value!r}")


def _positive_int(raw: dict, key: str, default: int) -> int:
    value = int(raw.get(key, default))
    if value <= 0:
        raise ValueError(f"{key} must be >= 1")
    return value


def _positive_float(raw: dict, key: str, default: float) -> float:
    value = float(raw.get(key, default))
    if value <= 0:
        raise ValueError(f"{key} must be > 0")
    return value


def config_from_dict(raw: dict) -> AppConfig:
    cron_secret_raw = os.environ.get("CRON_SECRET") or raw.get("CRON_SECRET") or ""
    cron_secret = str(cron_secret_raw).strip() or None

    stacks_api_url = str(raw.get("STACKS_API_URL", "https://api.mainnet.hiro.so")).strip()
    if not stacks_api_url.startswith(("http://", "https://")):
        raise ValueError(f"STACKS_API_URL must be an http(s) url: {stacks_api_url}")
    stacks_api_key = str(raw.get("STACKS_API_KEY", "")).strip() or None

    ipfs_gateway = str(raw.get("IPFS_GATEWAY", "https://ipfs.io/ipfs/")).strip()
    if not ipfs_gateway.endswith("/"):
        ipfs_gateway += "/"

    validation_batch_pause_ms = int(raw.get("VALIDATION_BATCH_PAUSE_MS", 800))
    if validation_batch_pause_ms < 0:
        raise ValueError("VALIDATION_BATCH_PAUSE_MS must be >= 0")

    max_http_retries = _positive_int(raw, "MAX_HTTP_RETRIES", 3)

    cors_allow_origins_raw = raw.get("CORS_ALLOW_ORIGINS", [])
    cors_allow_origins: List[str] = []
    if isinstance(cors_allow_origins_raw, str):
        cors_allow_origins = [
            x.strip().rstrip("/")
            for x in cors_allow_origins_raw.split(",")
            if x and x.strip()
        ]
    elif isinstance(cors_allow_origins_raw, list):
        cors_allow_origins = [
            str(x).strip().rstrip("/")
            for x in cors_allow_origins_raw
            if str(x).strip()
        ]

    log_level = str(raw.get("LOG_LEVEL", "info")).lower()
    if log_level not in {"debug", "info", "warning", "error", "critical"}:
        raise ValueError(f"LOG_LEVEL is invalid: {log_level}")

    return AppConfig(
        sqlite_path=str(raw.get("SQLITE_PATH", "./data/chainhook_lake.db")),
        api_host=str(raw.get("API_HOST", "127.0.0.1")),
        api_port=int(raw.get("API_PORT", 8080)),
        cron_secret=cron_secret,
        webhook_dedup=_parse_bool(raw.get("WEBHOOK_DEDUP", True), "WEBHOOK_DEDUP"),
        max_webhook_bytes=_positive_int(raw, "MAX_WEBHOOK_BYTES", 64 * 1024 * 1024),
        stacks_api_url=stacks_api_url.rstrip("/"),
        stacks_api_key=stacks_api_key,
        ipfs_gateway=ipfs_gateway,
        query_timeout_sec=_positive_float(raw, "QUERY_TIMEOUT_SEC", 30),
        long_query_timeout_sec=_positive_float(raw, "LONG_QUERY_TIMEOUT_SEC", 300),
        http_timeout_sec=_positive_float(raw, "HTTP_TIMEOUT_SEC", 12),
        uri_fetch_timeout_sec=_positive_float(raw, "URI_FETCH_TIMEOUT_SEC", 5),
        max_http_retries=max_http_retries,
        lease_ttl_sec=_positive_int(raw, "LEASE_TTL_SEC", 600),
        validation_batch_limit=_positive_int(raw, "VALIDATION_BATCH_LIMIT", 30),
        validation_concurrency=_positive_int(raw, "VALIDATION_CONCURRENCY", 3),
        validation_batch_pause_ms=validation_batch_pause_ms,
        analysis_batch_limit=_positive_int(raw, "ANALYSIS_BATCH_LIMIT", 200),
        analysis_concurrency=_positive_int(raw, "ANALYSIS_CONCURRENCY", 10),
        reserve_batch_limit=_positive_int(raw, "RESERVE_BATCH_LIMIT", 30),
        reserve_refresh_sec=_positive_int(raw, "RESERVE_REFRESH_SEC", 60),
        log_level=log_level,
        cors_allow_origins=cors_allow_origins,
    )


def load_config(path: str) -> AppConfig:
    if not os.path.exists(path):
        # every key has a default; a missing file means "run with defaults"
        return config_from_dict({})
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, dict):
        raise ValueError(f"config file must contain a JSON object: {path}")
    return config_from_dict(raw)
