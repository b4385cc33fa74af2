from . import analysis, backfill, live_monitor, maintenance, predictions, settle  # noqa: F401

__all__ = [
    "analysis",
    "backfill",
    "live_monitor",
    "maintenance",
    "predictions",
    "settle",
]
