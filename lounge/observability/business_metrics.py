from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.orm import Session

from lounge.config import Config
from lounge.models import (
    GameSession,
    GameStation,
    StationStatus,
    Transaction,
    TransactionStatus,
    as_utc,
)

try:
    LOCAL_TZ = ZoneInfo(getattr(Config, "DEFAULT_TIMEZONE", "UTC"))
except ZoneInfoNotFoundError:
    LOCAL_TZ = timezone.utc


def to_local_timezone(value: datetime) -> datetime:
    return as_utc(value).astimezone(LOCAL_TZ)


def local_midnight(now: Optional[datetime] = None) -> datetime:
    """Start of the lounge's current business day, expressed in UTC."""
    local_now = to_local_timezone(now or datetime.now(timezone.utc))
    midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight.astimezone(timezone.utc)


def compute_revenue_series(
    session: Session,
    days: int,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Completed revenue per local calendar day, oldest first, zero-filled."""
    now = now or datetime.now(timezone.utc)
    window_start = local_midnight(now) - timedelta(days=days - 1)
    rows = (
        session.query(Transaction.created_at, Transaction.amount)
        .filter(Transaction.payment_status == TransactionStatus.COMPLETED)
        .filter(Transaction.created_at >= window_start)
        .all()
    )
    totals: Dict[str, float] = defaultdict(float)
    counts: Dict[str, int] = defaultdict(int)
    for created_at, amount in rows:
        key = to_local_timezone(created_at).date().isoformat()
        totals[key] += float(amount)
        counts[key] += 1

    series: List[Dict[str, Any]] = []
    day = to_local_timezone(window_start)
    for _ in range(days):
        key = day.date().isoformat()
        series.append({"date": key, "revenue": round(totals.get(key, 0.0), 2), "transactions": counts.get(key, 0)})
        day += timedelta(days=1)
    return series


def compute_dashboard_snapshot(
    session: Session,
    now: Optional[datetime] = None,
    days: Optional[int] = None,
) -> Dict[str, Any]:
    """Headline numbers for the POS dashboard."""
    now = now or datetime.now(timezone.utc)
    days = days or Config.DASHBOARD_REVENUE_DAYS
    today_start = local_midnight(now)

    today_rows = (
        session.query(Transaction.amount)
        .filter(Transaction.payment_status == TransactionStatus.COMPLETED)
        .filter(Transaction.created_at >= today_start)
        .all()
    )
    stations = session.query(GameStation).all()
    active_sessions = session.query(GameSession).filter(GameSession.end_time.is_(None)).count()
    pending = (
        session.query(Transaction)
        .filter(Transaction.payment_status == TransactionStatus.PENDING)
        .count()
    )

    return {
        "todayRevenue": round(sum(float(row[0]) for row in today_rows), 2),
        "todayTransactions": len(today_rows),
        "activeSessions": active_sessions,
        "totalStations": len(stations),
        "availableStations": sum(
            1 for s in stations if s.is_available and s.status == StationStatus.OPERATIONAL
        ),
        "pendingPayments": pending,
        "revenueSeries": compute_revenue_series(session, days, now),
    }


__all__ = [
    "LOCAL_TZ",
    "to_local_timezone",
    "local_midnight",
    "compute_revenue_series",
    "compute_dashboard_snapshot",
]
