"""Completeness scoring for duplicate subscription rows.

Pure domain logic with no external dependencies. Operates on any object
exposing the Subscription column attributes so tests can pass plain namespaces.
"""

from datetime import UTC, datetime
from typing import Any

# (attribute, weight) pairs. Order is only for readability.
SCORE_WEIGHTS: tuple[tuple[str, int], ...] = (
    ("product_name", 1),
    ("cadence", 1),
    ("price", 1),
    ("status", 1),
    ("provider_payment_id", 2),
    ("provider_correlation", 2),
    ("provider_preference_id", 1),
    ("activated_at", 1),
    ("next_billing_date", 1),
    ("trial_end_date", 1),
)


def _present(value: Any) -> bool:
    return value is not None and value != ""


def _has_price(row: Any) -> bool:
    return any(_present(getattr(row, attr, None)) for attr in ("base_price", "discounted_price"))


def _has_provider_correlation(row: Any) -> bool:
    metadata = getattr(row, "metadata_", None)
    return bool(metadata is not None and metadata.has_provider_correlation())


def completeness_breakdown(row: Any) -> dict[str, int]:
    """Return the points each rubric criterion contributes for ``row``."""
    checks = {
        "product_name": _present(getattr(row, "product_name", None)),
        "cadence": _present(getattr(row, "cadence", None)),
        "price": _has_price(row),
        "status": _present(getattr(row, "status", None)),
        "provider_payment_id": _present(getattr(row, "provider_payment_id", None)),
        "provider_correlation": _has_provider_correlation(row),
        "provider_preference_id": _present(getattr(row, "provider_preference_id", None)),
        "activated_at": _present(getattr(row, "activated_at", None)),
        "next_billing_date": _present(getattr(row, "next_billing_date", None)),
        "trial_end_date": _present(getattr(row, "trial_end_date", None)),
    }
    return {name: (weight if checks[name] else 0) for name, weight in SCORE_WEIGHTS}


def completeness_score(row: Any) -> int:
    return sum(completeness_breakdown(row).values())


def created_sort_key(row: Any) -> datetime:
    created = getattr(row, "created_at", None)
    if created is None:
        return datetime.max.replace(tzinfo=UTC)
    if created.tzinfo is None:
        return created.replace(tzinfo=UTC)
    return created


def select_canonical(rows: list[Any]) -> Any:
    """Pick the most complete row; ties go to the earliest created_at, then lowest id.

    Raises:
        ValueError: if rows is empty
    """
    if not rows:
        raise ValueError("select_canonical() requires at least one row")
    return min(
        rows,
        key=lambda row: (-completeness_score(row), created_sort_key(row), getattr(row, "id", 0) or 0),
    )
