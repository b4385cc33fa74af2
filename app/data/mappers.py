from typing import Optional

SCHEDULED = "scheduled"
LIVE = "live"
FINISHED = "finished"
POSTPONED = "postponed"
CANCELLED = "cancelled"

MATCH_STATUSES = (SCHEDULED, LIVE, FINISHED, POSTPONED, CANCELLED)
# Matches in these states never get pipeline jobs.
TERMINAL_STATUSES = frozenset({FINISHED, POSTPONED, CANCELLED})


def normalize_status(short_status: Optional[str]) -> str:
    """Map an API-Football short status code onto the match status enum."""
    code = (short_status or "").upper()

    finished = {"FT", "AET", "PEN"}
    cancelled = {"CANC", "ABD", "AWD", "WO"}
    postponed = {"PST", "SUSP"}
    in_play = {"1H", "HT", "2H", "ET", "BT", "P", "LIVE", "INT"}
    # PENDING is ambiguous upstream; treat it as not started
    not_started = {"NS", "TBD", "PENDING"}

    if code in finished:
        return FINISHED
    if code in cancelled:
        return CANCELLED
    if code in postponed:
        return POSTPONED
    if code in in_play:
        return LIVE
    if code in not_started or not code:
        return SCHEDULED
    return SCHEDULED


def parse_score(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
