from __future__ import annotations

import logging
import math
from datetime import datetime

from pdvhub.domain.models import LoyaltyResult
from pdvhub.repositories.contracts import CUSTOMER, LOYALTY_CONFIG, LOYALTY_TIER

log = logging.getLogger("pdvhub.sales")

DEFAULT_THRESHOLD = 50.0
DEFAULT_POINTS = 2


class LoyaltyService:
    """Points per purchase: floor(total / threshold) * points_per_unit * tier multiplier."""

    def __init__(self, client):
        self.client = client

    def _config(self):
        active = self.client.filter(LOYALTY_CONFIG, {"active": True})
        return active[0] if active else None

    def _promoted_tier(self, balance: int):
        tiers = sorted(
            self.client.filter(LOYALTY_TIER, {"active": True}),
            key=lambda t: float(t.get("min_points") or 0),
            reverse=True,
        )
        for tier in tiers:
            if balance >= float(tier.get("min_points") or 0):
                return tier
        return None

    def process_purchase(self, customer: dict, total: float, order_number: str) -> LoyaltyResult:
        if not customer or not customer.get("id"):
            return LoyaltyResult(success=False)
        config = self._config()
        if config is None:
            log.info("loyalty_skipped reason=no_config number=%s", order_number)
            return LoyaltyResult(success=False)

        multiplier = 1.0
        tier_name = None
        if customer.get("tier_id"):
            tier = self.client.get(LOYALTY_TIER, customer["tier_id"])
            if tier:
                multiplier = float(tier.get("multiplier") or 1.0)
                tier_name = tier.get("name")

        threshold = float(config.get("purchase_threshold") or DEFAULT_THRESHOLD)
        per_unit = int(config.get("points_per_unit") or DEFAULT_POINTS)
        earned = int(round(math.floor(total / threshold) * per_unit * multiplier))
        current = int(customer.get("points") or 0)
        if earned <= 0:
            return LoyaltyResult(success=True, new_balance=current, tier=tier_name, multiplier=multiplier)

        balance = current + earned
        changes = {"points": balance, "last_purchase": datetime.now().replace(microsecond=0).isoformat()}
        promoted = self._promoted_tier(balance)
        if promoted is not None:
            changes["tier_id"] = promoted["id"]
            tier_name = promoted.get("name")
        self.client.update(CUSTOMER, customer["id"], changes)

        log.info("loyalty_points number=%s earned=%s balance=%s", order_number, earned, balance)
        return LoyaltyResult(
            success=True, points_earned=earned, new_balance=balance, tier=tier_name, multiplier=multiplier
        )
