from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

ENV_PREFIX = "XERO_SYNC_"
GENERAL_CONTACT_POLICIES = ("store", "skip")


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def resolve_log_dir() -> Path:
    candidates: list[Path] = []
    env_dir = os.environ.get("XERO_SYNC_LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir))
    candidates.append(project_root() / "logs")
    candidates.append(Path(tempfile.gettempdir()) / "XeroSync" / "logs")

    for candidate in candidates:
        try:
            candidate.mkdir(parents=True, exist_ok=True)
            test_file = candidate / "_write_test.tmp"
            test_file.write_text("ok", encoding="utf-8")
            test_file.unlink(missing_ok=True)
            return candidate
        except OSError:
            continue

    fallback = project_root()
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


@dataclass(frozen=True)
class SyncSettings:
    client_id: str = ""
    client_secret: str = ""
    api_base_url: str = "https://api.xero.com/api.xro/2.0"
    token_url: str = "https://identity.xero.com/connect/token"
    db_path: Path | None = None
    page_size: int = 100
    inter_page_delay_seconds: float = 0.25
    request_timeout_seconds: float = 30.0
    max_attempts: int = 5
    max_rate_limit_retries: int = 10
    base_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    rate_limit_default_wait_seconds: float = 60.0
    max_pages: int = 2000
    max_consecutive_empty_pages: int = 3
    progress_interval: int = 10
    reset_delay_completed_seconds: float = 3.0
    reset_delay_failed_seconds: float = 5.0
    general_contact_policy: str = "store"
    amount_variance_threshold: float = 0.05
    payment_account_code: str = ""
    job_max_attempts: int = 3
    actor: str = "xero-sync"


def _int_setting(env: Mapping[str, str], name: str, default: int) -> int:
    raw_value = env.get(ENV_PREFIX + name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        logger.warning("Ignoring invalid integer for %s%s: %r", ENV_PREFIX, name, raw_value)
        return default


def _float_setting(env: Mapping[str, str], name: str, default: float) -> float:
    raw_value = env.get(ENV_PREFIX + name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        logger.warning("Ignoring invalid number for %s%s: %r", ENV_PREFIX, name, raw_value)
        return default


def _str_setting(env: Mapping[str, str], name: str, default: str) -> str:
    raw_value = env.get(ENV_PREFIX + name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip()


def load_settings(env: Mapping[str, str] | None = None) -> SyncSettings:
    source = os.environ if env is None else env
    defaults = SyncSettings()

    policy = _str_setting(source, "GENERAL_CONTACT_POLICY", defaults.general_contact_policy).lower()
    if policy not in GENERAL_CONTACT_POLICIES:
        logger.warning("Unknown general contact policy %r, using %r", policy, defaults.general_contact_policy)
        policy = defaults.general_contact_policy

    db_path_raw = source.get(ENV_PREFIX + "DB_PATH")
    return SyncSettings(
        client_id=_str_setting(source, "CLIENT_ID", defaults.client_id),
        client_secret=_str_setting(source, "CLIENT_SECRET", defaults.client_secret),
        api_base_url=_str_setting(source, "API_BASE_URL", defaults.api_base_url).rstrip("/"),
        token_url=_str_setting(source, "TOKEN_URL", defaults.token_url),
        db_path=Path(db_path_raw) if db_path_raw else None,
        page_size=max(1, _int_setting(source, "PAGE_SIZE", defaults.page_size)),
        inter_page_delay_seconds=_float_setting(source, "INTER_PAGE_DELAY", defaults.inter_page_delay_seconds),
        request_timeout_seconds=_float_setting(source, "REQUEST_TIMEOUT", defaults.request_timeout_seconds),
        max_attempts=max(1, _int_setting(source, "MAX_ATTEMPTS", defaults.max_attempts)),
        max_rate_limit_retries=max(1, _int_setting(source, "MAX_RATE_LIMIT_RETRIES", defaults.max_rate_limit_retries)),
        base_backoff_seconds=_float_setting(source, "BASE_BACKOFF", defaults.base_backoff_seconds),
        max_backoff_seconds=_float_setting(source, "MAX_BACKOFF", defaults.max_backoff_seconds),
        rate_limit_default_wait_seconds=_float_setting(
            source, "RATE_LIMIT_DEFAULT_WAIT", defaults.rate_limit_default_wait_seconds
        ),
        max_pages=max(1, _int_setting(source, "MAX_PAGES", defaults.max_pages)),
        max_consecutive_empty_pages=max(1, _int_setting(source, "MAX_EMPTY_PAGES", defaults.max_consecutive_empty_pages)),
        progress_interval=max(1, _int_setting(source, "PROGRESS_INTERVAL", defaults.progress_interval)),
        reset_delay_completed_seconds=_float_setting(
            source, "RESET_DELAY_COMPLETED", defaults.reset_delay_completed_seconds
        ),
        reset_delay_failed_seconds=_float_setting(source, "RESET_DELAY_FAILED", defaults.reset_delay_failed_seconds),
        general_contact_policy=policy,
        amount_variance_threshold=_float_setting(
            source, "AMOUNT_VARIANCE_THRESHOLD", defaults.amount_variance_threshold
        ),
        payment_account_code=_str_setting(source, "PAYMENT_ACCOUNT_CODE", defaults.payment_account_code),
        job_max_attempts=max(1, _int_setting(source, "JOB_MAX_ATTEMPTS", defaults.job_max_attempts)),
        actor=_str_setting(source, "ACTOR", defaults.actor),
    )
