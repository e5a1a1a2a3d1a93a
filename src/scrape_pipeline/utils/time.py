import time
from datetime import date


def today_iso() -> str:
    """Local calendar date as YYYY-MM-DD."""
    return date.today().isoformat()


def epoch_millis() -> int:
    return int(time.time() * 1000)
