"""Calendar-aware billing cadence arithmetic.

Pure domain logic with no external dependencies beyond dateutil.
"""

from datetime import date

from dateutil.relativedelta import relativedelta

from app.domain.statuses import Cadence

# Month-based steps clamp to the last day of the target month
# (2024-01-31 + 1 month = 2024-02-29), which relativedelta does for us.
CADENCE_STEPS: dict[Cadence, relativedelta] = {
    Cadence.WEEKLY: relativedelta(days=7),
    Cadence.BIWEEKLY: relativedelta(days=14),
    Cadence.MONTHLY: relativedelta(months=1),
    Cadence.QUARTERLY: relativedelta(months=3),
    Cadence.ANNUAL: relativedelta(years=1),
}


def parse_cadence(value: str | None) -> Cadence | None:
    """Parse a stored cadence string, returning None for empty or unknown values."""
    if not value:
        return None
    try:
        return Cadence(value.lower())
    except ValueError:
        return None


def cadence_from_frequency(frequency: int | None, frequency_type: str | None) -> Cadence | None:
    """Infer a cadence from a provider recurrence (e.g. ``1 months`` or ``7 days``)."""
    if not frequency or not frequency_type:
        return None
    return {
        ("days", 7): Cadence.WEEKLY,
        ("days", 14): Cadence.BIWEEKLY,
        ("months", 1): Cadence.MONTHLY,
        ("months", 3): Cadence.QUARTERLY,
        ("months", 12): Cadence.ANNUAL,
    }.get((frequency_type.lower(), frequency))


def add_cadence(start: date, cadence: Cadence | str) -> date:
    """Return the billing date one cadence period after ``start``.

    Raises:
        ValueError: if cadence is not one of the known periods
    """
    step = CADENCE_STEPS[Cadence(cadence)]
    return start + step


def roll_forward(current: date, cadence: Cadence | str, today: date) -> date:
    """Advance ``current`` by whole periods until it is strictly after ``today``.

    Periods are multiplied from the original anchor so month-end dates do not drift.
    """
    step = CADENCE_STEPS[Cadence(cadence)]
    periods = 0
    result = current
    while result <= today:
        periods += 1
        result = current + step * periods
    return result
