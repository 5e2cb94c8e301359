# finsim/domain/market_hours.py
"""NSE trading session calendar."""

from datetime import date, datetime, time, timedelta
from typing import Optional

import pytz

MARKET_TZ = pytz.timezone("Asia/Kolkata")
MARKET_OPEN = time(9, 15)
MARKET_CLOSE = time(15, 30)

# NSE trading holidays
HOLIDAYS = {
    date(2025, 1, 26),
    date(2025, 3, 14),
    date(2025, 3, 31),
    date(2025, 4, 10),
    date(2025, 4, 14),
    date(2025, 4, 18),
    date(2025, 5, 1),
    date(2025, 8, 15),
    date(2025, 8, 27),
    date(2025, 10, 2),
    date(2025, 10, 21),
    date(2025, 11, 1),
    date(2025, 11, 5),
}


def to_market_time(now: Optional[datetime] = None) -> datetime:
    """Convert to exchange local time. Naive datetimes are taken as UTC."""
    if now is None:
        now = datetime.now(pytz.UTC)
    elif now.tzinfo is None:
        now = pytz.UTC.localize(now)
    return now.astimezone(MARKET_TZ)


def is_trading_day(day: date) -> bool:
    return day.weekday() < 5 and day not in HOLIDAYS


def is_market_open(now: Optional[datetime] = None) -> bool:
    """True during the regular session (09:15-15:30 IST) on trading days."""
    local = to_market_time(now)
    if not is_trading_day(local.date()):
        return False
    return MARKET_OPEN <= local.time() <= MARKET_CLOSE


def next_market_open_date(now: Optional[datetime] = None) -> date:
    """First trading day after the current exchange date."""
    day = to_market_time(now).date() + timedelta(days=1)
    while not is_trading_day(day):
        day += timedelta(days=1)
    return day
