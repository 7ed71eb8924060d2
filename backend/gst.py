"""GST rules: claim percentages, fiscal quarters and the period summary.

Everything here is pure. Amounts are ``Decimal`` throughout so repeated sums
never pick up binary floating point drift.
"""
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, Union

from models import BusinessPercentages, GSTSummary, Transaction, TransactionType

ALL = "ALL"

QUARTERS = [
    {"quarter": 1, "label": "Q1 (July - Sept)", "months": [7, 8, 9]},
    {"quarter": 2, "label": "Q2 (Oct - Dec)", "months": [10, 11, 12]},
    {"quarter": 3, "label": "Q3 (Jan - Mar)", "months": [1, 2, 3]},
    {"quarter": 4, "label": "Q4 (Apr - Jun)", "months": [4, 5, 6]},
]

ALL_TIME_LABEL = "All Time"

MOBILE_SHARED = "Mobile Phone - For Both Business & Personal"
INTERNET_CATEGORIES = ("Internet", "Computer Expenses")
MUSIC = "Music Subscriptions"

CENT = Decimal("0.01")
HUNDRED = Decimal(100)
MAX_AMOUNT = Decimal("1e15")

QuarterFilter = Union[int, str]


def resolve_claim_percent(category: str, percentages: BusinessPercentages) -> int:
    """Business-use share of an expense category. Unknown categories are fully claimable."""
    if category.startswith("Car Expenses"):
        return percentages.motor_vehicle
    if category == MOBILE_SHARED:
        return percentages.mobile_phone
    if category in INTERNET_CATEGORIES:
        return percentages.internet
    if category == MUSIC:
        return percentages.music_subscriptions
    return 100


def quarter_of(day: date) -> int:
    for q in QUARTERS:
        if day.month in q["months"]:
            return q["quarter"]
    raise ValueError(f"Invalid month: {day.month}")


def matches_filter(day: date, quarter_filter: QuarterFilter) -> bool:
    if quarter_filter == ALL:
        return True
    return quarter_of(day) == quarter_filter


def default_quarter(today: date) -> int:
    # Calendar quarter of today with 0 mapped to 4, kept as the dashboard default.
    # TODO: confirm whether the default should be quarter_of(today) instead.
    return ((today.month - 1 + 3) // 3) % 4 or 4


def parse_quarter_filter(value: str) -> QuarterFilter:
    """Parse a query value: '1'..'4' or 'ALL'."""
    text = str(value).strip()
    if text.upper() == ALL:
        return ALL
    if text in ("1", "2", "3", "4"):
        return int(text)
    raise ValueError(f"Invalid quarter: {value!r}. Expected 1-4 or ALL")


def period_label(quarter_filter: QuarterFilter) -> str:
    if quarter_filter == ALL:
        return ALL_TIME_LABEL
    return QUARTERS[int(quarter_filter) - 1]["label"]


def parse_amount(value) -> Decimal:
    """Convert user or API input to a finite Decimal, raising ValueError otherwise."""
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    # Larger magnitudes cannot be quantized to cents at the default precision.
    if abs(amount) >= MAX_AMOUNT:
        raise ValueError(f"Amount out of range: {value!r}")
    return amount


def derive_gst(gross) -> Decimal:
    """GST component of a GST-inclusive total (1/11th), rounded to cents."""
    return (parse_amount(gross) / 11).quantize(CENT, rounding=ROUND_HALF_UP)


def filter_transactions(transactions: Iterable[Transaction], quarter_filter: QuarterFilter):
    return [tx for tx in transactions if matches_filter(tx.date, quarter_filter)]


def summarize(transactions: Iterable[Transaction], quarter_filter: QuarterFilter,
              percentages: BusinessPercentages) -> GSTSummary:
    collected = Decimal(0)
    paid = Decimal(0)
    for tx in filter_transactions(transactions, quarter_filter):
        if tx.type == TransactionType.EARNING:
            collected += tx.gst_amount
        elif tx.type == TransactionType.EXPENSE:
            paid += tx.gst_amount * resolve_claim_percent(tx.category, percentages) / HUNDRED

    return GSTSummary(
        total_collected=collected,
        total_paid=paid,
        net_payable=collected - paid,
        period_label=period_label(quarter_filter),
    )
