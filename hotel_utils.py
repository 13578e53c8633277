"""
Helper functions for the Hotel Operations App.

Handles checklist scanning, status values, inventory quantity parsing,
low stock checks and ledger replay for inventory snapshots.
"""
import re
from datetime import date, datetime, timedelta, timezone

# Checklist item value that marks an amenity as missing
MISSING_VALUE = "no"

# Housekeeping room states, in the order the front end lists them
STATUS_VALUES = (
    "arrival",
    "occupied",
    "departure",
    "vacant_ready",
    "vacant_not_ready",
    "out_of_order",
    "out_of_service",
)

INVENTORY_ACTIONS = ("add", "use")
DEFAULT_LOW_STOCK_LEVEL = 10

_WHOLE_NUMBER = re.compile(r"[+-]?\d+")
_WORD_START = re.compile(r"\b\w")


def utc_now():
    """Current UTC time as an ISO-8601 string with seconds precision."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def humanize_key(key):
    """
    Turn a checklist key into a readable label.

    'bath_towel' -> 'Bath Towel', 'hand-towel' -> 'Hand-Towel'
    """
    text = str(key).replace("_", " ")
    return _WORD_START.sub(lambda match: match.group(0).upper(), text)


def item_key(name):
    """Case-insensitive lookup key for an inventory item name (Unicode aware)."""
    return str(name).casefold()


def single_line(value):
    """Collapse all whitespace, line breaks included, to single spaces."""
    return " ".join(str(value).split())


def missing_items(items):
    """
    Return the checklist keys whose value is exactly "no", in submission order.

    Args:
        items (dict): Checklist item map, e.g. {"towels": "yes", "soap": "no"}

    Returns:
        list[str]: Keys of the missing items.
    """
    return [key for key, value in items.items() if value == MISSING_VALUE]


def is_valid_status(status):
    return status in STATUS_VALUES


def parse_whole_number(value, minimum=0):
    """
    Parse a JSON value as a whole number.

    Accepts ints, integral floats and digit strings. Booleans are rejected even
    though they are ints in Python.

    Returns:
        int | None: The number, or None when it is not a whole number >= minimum.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    elif isinstance(value, float):
        if not value.is_integer():
            return None
        number = int(value)
    elif isinstance(value, str):
        text = value.strip()
        if not _WHOLE_NUMBER.fullmatch(text):
            return None
        number = int(text)
    else:
        return None

    if number < minimum:
        return None
    return number


def is_low_stock(quantity, low_stock_level):
    """Low stock includes the threshold itself: 10 units with a level of 10 is low."""
    return quantity <= low_stock_level


def parse_snapshot_date(value):
    """Parse a YYYY-MM-DD path segment. Returns None when invalid."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None


def snapshot_cutoff(day: date) -> str:
    """
    Exclusive upper bound for ledger timestamps belonging to a snapshot day.

    Ledger timestamps are ISO strings in UTC, so the next day's date string
    sorts after every timestamp of the requested day.
    """
    return (day + timedelta(days=1)).isoformat()


def parse_datetime_input(value):
    """
    Parse an ISO-8601 datetime from a client and normalize it to a UTC string.

    Naive values are taken as UTC. A trailing 'Z' is accepted.

    Returns:
        str | None: Normalized timestamp, or None when the value can't be parsed.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="seconds")


def day_bounds(day: date):
    """Inclusive start and exclusive end strings for filtering UTC timestamps by day."""
    return day.isoformat(), (day + timedelta(days=1)).isoformat()


def replay_ledger(transactions):
    """
    Rebuild per-item quantities from ledger rows.

    Args:
        transactions (iterable[dict]): Rows with 'item', 'quantity' and 'action',
            oldest first.

    Names differing only in case count as one item, reported under the most
    recent spelling.

    Returns:
        dict[str, int]: Item name -> quantity after replaying every row.
    """
    totals = {}
    names = {}
    for row in transactions:
        key = item_key(row["item"])
        sign = 1 if row["action"] == "add" else -1
        totals[key] = totals.get(key, 0) + sign * row["quantity"]
        names[key] = row["item"]
    return {names[key]: quantity for key, quantity in totals.items()}


def password_problems(password):
    """
    Check password complexity.

    Returns:
        str | None: A message describing the first failed rule, or None.
    """
    if not password or len(password) < 8:
        return "Password must be at least 8 characters"
    if not re.search(r"[A-Z]", password):
        return "Password must contain at least one uppercase letter"
    if not re.search(r"[a-z]", password):
        return "Password must contain at least one lowercase letter"
    if not re.search(r"[0-9]", password):
        return "Password must contain at least one number"
    return None
