"""Locked intent enumeration (version v1)."""

from enum import StrEnum


class Intent(StrEnum):
    GOVERNANCE_REVIEW = "GOVERNANCE_REVIEW"
    PLAN_WORK = "PLAN_WORK"
    SALES_INTERNAL = "SALES_INTERNAL"
    MARKETING_INTERNAL = "MARKETING_INTERNAL"
    PRODUCT_OFFER = "PRODUCT_OFFER"
    OPS_INTERNAL = "OPS_INTERNAL"


FALLBACK_INTENT = Intent.GOVERNANCE_REVIEW


def normalize_intent(value: object) -> Intent | None:
    """Uppercase/trim a raw intent; None when it is not in the enum."""
    if not isinstance(value, str):
        return None
    try:
        return Intent(value.strip().upper())
    except ValueError:
        return None
