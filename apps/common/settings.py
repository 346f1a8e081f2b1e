# apps/common/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _as_path(v: str) -> Path:
    return Path(v).expanduser().resolve()


@dataclass(frozen=True)
class AppSettings:
    analysis_url: str
    record_store_url: str
    record_store_token: str
    storage_root: Path
    job_root: Path
    confidence_threshold: float = 80.0
    staleness_minutes: float = 5.0
    propagation_delay_s: float = 1.0
    request_timeout_s: float = 30.0


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) Explicit function argument
      2) MOD_CONFIG_PATH env var
      3) config/app.yaml
    Individual fields can be overridden via env vars:
      - MOD_ANALYSIS_URL
      - MOD_RECORD_STORE_URL
      - MOD_RECORD_STORE_TOKEN
      - MOD_STORAGE_ROOT
      - MOD_JOB_ROOT
      - MOD_CONFIDENCE_THRESHOLD
      - MOD_STALENESS_MINUTES
      - MOD_PROPAGATION_DELAY_S
      - MOD_REQUEST_TIMEOUT_S
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("MOD_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)

    analysis_url = _env("MOD_ANALYSIS_URL") or cfg.get("analysis_url")
    record_store_url = _env("MOD_RECORD_STORE_URL") or cfg.get("record_store_url")
    record_store_token = _env("MOD_RECORD_STORE_TOKEN") or cfg.get("record_store_token") or ""
    storage_root = _env("MOD_STORAGE_ROOT") or cfg.get("storage_root") or "data/tmp/buckets"
    job_root = _env("MOD_JOB_ROOT") or cfg.get("job_root") or "data/jobs"

    missing = []
    if not analysis_url:
        missing.append("analysis_url / MOD_ANALYSIS_URL")
    if not record_store_url:
        missing.append("record_store_url / MOD_RECORD_STORE_URL")

    if missing:
        raise ValueError(
            "Missing required configuration: " + ", ".join(missing) +
            f". Config file used: {cfg_path}"
        )

    def _num(env_key: str, cfg_key: str, default: float) -> float:
        raw = _env(env_key) or cfg.get(cfg_key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid numeric value for {cfg_key} / {env_key}: {raw!r}") from e

    return AppSettings(
        analysis_url=str(analysis_url).rstrip("/"),
        record_store_url=str(record_store_url).rstrip("/"),
        record_store_token=str(record_store_token),
        storage_root=_as_path(str(storage_root)),
        job_root=_as_path(str(job_root)),
        confidence_threshold=_num("MOD_CONFIDENCE_THRESHOLD", "confidence_threshold", 80.0),
        staleness_minutes=_num("MOD_STALENESS_MINUTES", "staleness_minutes", 5.0),
        propagation_delay_s=_num("MOD_PROPAGATION_DELAY_S", "propagation_delay_s", 1.0),
        request_timeout_s=_num("MOD_REQUEST_TIMEOUT_S", "request_timeout_s", 30.0),
    )
