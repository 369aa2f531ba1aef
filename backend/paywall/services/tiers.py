from __future__ import annotations

import logging
from typing import Any

from paywall.enums import EntitlementStatus, Tier

from .config_service import get_config

logger = logging.getLogger(__name__)

_BASELINE_CREDITS = 2


def _tier_for_product(product_ref: str | None, cfg: dict[str, Any]) -> Tier:
    if not product_ref:
        return Tier.free
    table = cfg.get("tier_products", {}) if isinstance(cfg, dict) else {}
    if isinstance(table, dict):
        v = table.get(product_ref)
        if isinstance(v, str):
            try:
                return Tier(v)
            except ValueError:
                logger.warning(f"Product {product_ref} maps to unknown tier {v!r}")
                return Tier.free

    # Fallback heuristic.
    pid = product_ref.lower()
    if "grandmaster" in pid or "gm" in pid.split("_") or "gm" in pid.split("-"):
        return Tier.grandmaster
    if "champ" in pid:
        return Tier.champ
    logger.warning(f"Product {product_ref} not in tier table, granting Free")
    return Tier.free


def derive_tier(status: EntitlementStatus, product_ref: str | None) -> Tier:
    """Tier depends only on (status, product); anything but active is Free."""
    if status is not EntitlementStatus.active:
        return Tier.free
    return _tier_for_product(product_ref, get_config())


def credits_for(tier: Tier) -> int:
    table = get_config().get("tier_credits", {})
    try:
        return int(table.get(tier.value, _BASELINE_CREDITS))
    except (TypeError, ValueError):
        return _BASELINE_CREDITS
