from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Any

from paywall.core.config import settings

logger = logging.getLogger(__name__)

_lock = Lock()
_config: dict[str, Any] | None = None

_EMPTY: dict[str, Any] = {"tier_products": {}, "tier_credits": {}}


def get_config() -> dict[str, Any]:
    """
    Product/tier configuration, loaded once per process.
    """
    global _config
    with _lock:
        if _config is not None:
            return _config

        cfg = _load_from_file()
        _config = cfg
        return cfg


def refresh_config() -> dict[str, Any]:
    global _config
    with _lock:
        _config = _load_from_file()
        return _config


def _config_path() -> Path:
    if settings.PRODUCT_CONFIG_PATH:
        return Path(settings.PRODUCT_CONFIG_PATH)
    return Path(__file__).resolve().parents[1] / "config" / "default_config.json"


def _load_from_file() -> dict[str, Any]:
    path = _config_path()
    if not path.exists():
        logger.warning(f"Product config {path} not found, every product maps to Free")
        return dict(_EMPTY)
    cfg = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(cfg, dict):
        raise ValueError(f"Product config {path} must be a JSON object")
    return {**_EMPTY, **cfg}
