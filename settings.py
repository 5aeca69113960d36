from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from decimal import Decimal, InvalidOperation
from typing import Any

from config import (
    KHQR_BAKONG_ID,
    KHQR_BEARER_TOKEN,
    KHQR_MERCHANT_NAME,
    MAX_TOPUP_AMOUNT,
    MIN_TOPUP_AMOUNT,
)
from errors import ValidationError

logger = logging.getLogger(__name__)

SETTINGS_KEY = "khqr"

# Names admins may use with /set, mapped to KhqrSettings fields
EDITABLE = {
    "bakongid": "merchant_id",
    "merchantid": "merchant_id",
    "merchantname": "merchant_name",
    "bearertoken": "bearer_token",
    "mintopup": "min_topup",
    "maxtopup": "max_topup",
}

MIN_TOPUP_FLOOR = Decimal("0.01")
MAX_TOPUP_CEILING = Decimal("10000")


@dataclass(frozen=True)
class KhqrSettings:
    merchant_id: str
    merchant_name: str
    bearer_token: str
    min_topup: Decimal
    max_topup: Decimal

    def to_doc(self) -> dict[str, Any]:
        doc = asdict(self)
        doc["min_topup"] = str(self.min_topup)
        doc["max_topup"] = str(self.max_topup)
        return doc


def default_settings() -> KhqrSettings:
    return KhqrSettings(
        merchant_id=KHQR_BAKONG_ID,
        merchant_name=KHQR_MERCHANT_NAME,
        bearer_token=KHQR_BEARER_TOKEN,
        min_topup=MIN_TOPUP_AMOUNT,
        max_topup=MAX_TOPUP_AMOUNT,
    )


def _decimal(value: Any, fallback: Decimal) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return fallback
    return d if d.is_finite() else fallback


def validate_setting(field: str, value: str, current: KhqrSettings) -> Any:
    """Check a new value for `field` against the current settings and return it parsed."""
    value = (value or "").strip()
    if field == "merchant_id":
        if "@" not in value:
            raise ValidationError("Bakong ID must look like name@bank")
        return value
    if field == "merchant_name":
        if len(value) < 2:
            raise ValidationError("Merchant name must be at least 2 characters")
        return value
    if field == "bearer_token":
        if len(value) < 10:
            raise ValidationError("Bearer token must be at least 10 characters")
        if len(value.split(".")) != 3:
            raise ValidationError("Bearer token must be a valid JWT")
        return value
    if field in ("min_topup", "max_topup"):
        try:
            num = Decimal(value)
        except InvalidOperation:
            raise ValidationError("Amount must be a positive number") from None
        if not num.is_finite() or num <= 0:
            raise ValidationError("Amount must be a positive number")
        if field == "min_topup":
            if num < MIN_TOPUP_FLOOR:
                raise ValidationError(f"Minimum topup must be at least ${MIN_TOPUP_FLOOR}")
            if num >= current.max_topup:
                raise ValidationError(
                    f"Minimum topup (${num}) must be less than maximum topup (${current.max_topup})"
                )
        else:
            if num > MAX_TOPUP_CEILING:
                raise ValidationError(f"Maximum topup cannot exceed ${MAX_TOPUP_CEILING}")
            if num <= current.min_topup:
                raise ValidationError(
                    f"Maximum topup (${num}) must be greater than minimum topup (${current.min_topup})"
                )
        return num
    raise ValidationError(f"Unknown setting: {field}")


class SettingsManager:
    """KHQR settings stored in Mongo on top of the environment defaults.

    Every `current()` call reads the stored document, so a change made by an admin
    (from any process) is picked up by the next topup without a restart.
    """

    def __init__(self, repo, *, defaults: KhqrSettings | None = None):
        self._repo = repo
        self._defaults = defaults or default_settings()

    async def current(self) -> KhqrSettings:
        stored = await self._repo.get_settings(SETTINGS_KEY)
        base = self._defaults
        return KhqrSettings(
            merchant_id=stored.get("merchant_id") or base.merchant_id,
            merchant_name=stored.get("merchant_name") or base.merchant_name,
            bearer_token=stored.get("bearer_token") or base.bearer_token,
            min_topup=_decimal(stored.get("min_topup", base.min_topup), base.min_topup),
            max_topup=_decimal(stored.get("max_topup", base.max_topup), base.max_topup),
        )

    async def update(self, name: str, value: str) -> KhqrSettings:
        field = EDITABLE.get(name.replace("_", "").lower())
        if field is None:
            raise ValidationError(f"Unknown setting: {name}. Use one of: {', '.join(sorted(EDITABLE))}")
        current = await self.current()
        parsed = validate_setting(field, value, current)
        updated = replace(current, **{field: parsed})
        await self._repo.save_settings(SETTINGS_KEY, {field: updated.to_doc()[field]})
        logger.warning("Setting updated: %s", field)
        return updated
