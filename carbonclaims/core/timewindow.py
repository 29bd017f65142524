"""
Voting Window Resolution

The ledger stores a claim's issue time and voting period without a unit.
The unit is inferred from magnitude:

    issued_at  > 10^12          -> milliseconds
    issued_at <= 10^12          -> passed through as-is (no unit invented)

    period     > 10^12          -> milliseconds
    period     > 10^9           -> seconds, scaled to milliseconds
    period    <= 10^9           -> whole days

These thresholds are a heuristic. Borderline values (a period of 1, a
period given in seconds below 10^9) can be misread. The policy is kept
as-is on purpose; see DESIGN.md before changing it.
"""

import math
from datetime import datetime, timezone
from numbers import Real
from typing import Any, Optional

from ..schemas import ClaimRecord, ResolvedWindow

MILLISECONDS_THRESHOLD = 10**12
FINE_GRAINED_PERIOD_THRESHOLD = 10**9
MS_PER_SECOND = 1000
MS_PER_DAY = 86_400_000


class TimeResolutionError(Exception):
    """
    A window could not be resolved.

    resolve_window never raises this; it returns ResolvedWindow.invalid().
    Raised only by helpers that need a concrete instant.
    """
    pass


def _as_number(raw: Any) -> Optional[float]:
    """Parse a raw ledger number; None when it is not one or exceeds float range."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, str):
        text = raw.strip()
        try:
            raw = int(text)
        except ValueError:
            try:
                raw = float(text)
            except ValueError:
                return None
    if not isinstance(raw, Real):
        return None
    try:
        float(raw)
    except OverflowError:
        return None
    return raw


def issued_at_to_ms(issued_at_raw: float) -> float:
    # Above MILLISECONDS_THRESHOLD the value is milliseconds. Below it the
    # value is taken as the intended instant; no scaling is guessed.
    return issued_at_raw


def period_to_ms(period_raw: float) -> float:
    if period_raw > FINE_GRAINED_PERIOD_THRESHOLD:
        if period_raw > MILLISECONDS_THRESHOLD:
            return period_raw
        return period_raw * MS_PER_SECOND
    return period_raw * MS_PER_DAY


def resolve_window(issued_at_raw: Any, period_raw: Any) -> ResolvedWindow:
    """
    Compute the absolute voting window for raw ledger values.

    Never raises. Anything that cannot produce a finite, ordered,
    representable window yields ResolvedWindow.invalid().
    """
    issued_at = _as_number(issued_at_raw)
    period = _as_number(period_raw)
    if issued_at is None or period is None:
        return ResolvedWindow.invalid()
    if not (math.isfinite(issued_at) and math.isfinite(period)):
        return ResolvedWindow.invalid()
    if issued_at < 0 or period < 0:
        return ResolvedWindow.invalid()

    start_ms = issued_at_to_ms(issued_at)
    end_ms = start_ms + period_to_ms(period)

    try:
        if not math.isfinite(end_ms) or end_ms < start_ms:
            return ResolvedWindow.invalid()
    except OverflowError:
        return ResolvedWindow.invalid()
    if _to_datetime(end_ms) is None:
        return ResolvedWindow.invalid()

    return ResolvedWindow(start_ms=start_ms, end_ms=end_ms, valid=True)


def resolve_record_window(record: ClaimRecord) -> ResolvedWindow:
    return resolve_window(record.issued_at, record.voting_period)


def _to_datetime(ms: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(ms / MS_PER_SECOND, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def voting_ends_at(window: ResolvedWindow) -> Optional[datetime]:
    """UTC end of the window, or None if the window is invalid."""
    if not window.valid:
        return None
    return _to_datetime(window.end_ms)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * MS_PER_SECOND)


def voting_period_seconds_until(deadline: datetime, now: Optional[datetime] = None) -> int:
    """
    Whole seconds from now until a voting deadline.

    This is what create_claim sends as its voting period.

    Raises:
        TimeResolutionError: If the deadline is naive or not in the future
    """
    if deadline.tzinfo is None:
        raise TimeResolutionError(
            "Voting deadline is timezone-naive. Attach a timezone."
        )
    now = now or datetime.now(timezone.utc)
    diff_seconds = math.floor((deadline - now).total_seconds())
    if diff_seconds <= 0:
        raise TimeResolutionError("Voting end date must be in the future")
    return diff_seconds
