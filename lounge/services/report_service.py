from __future__ import annotations

import csv
import io
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from reportlab.lib.pagesizes import A4, landscape
from reportlab.pdfgen import canvas as pdf_canvas
from sqlalchemy.orm import Session

from lounge.config import Config
from lounge.models import (
    GameSession,
    GameStation,
    LoyaltyTransaction,
    Payment,
    PaymentStatus,
    SessionType,
    Transaction,
    TransactionStatus,
    User,
    UserRole,
    as_utc,
    utc_now,
)
from lounge.observability import increment_counter, track_latency
from lounge.observability.business_metrics import local_midnight, to_local_timezone
from lounge.services.loyalty_service import LOYALTY_TIERS, tier_for_points

REPORT_TYPES = (
    "revenue",
    "usage",
    "games",
    "customers",
    "financial",
    "loyalty",
    "hourly",
    "comparative",
    "predictive",
    "heatmap",
    "segmentation",
)
REPORT_FORMATS = ("csv", "json", "pdf")
PERIODS = {"daily": 1, "weekly": 7, "monthly": 30, "yearly": 365}
WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

# (label, lowest visit count) from the top segment down
FREQUENCY_SEGMENTS = (
    ("Power User", 31),
    ("Frequent", 16),
    ("Regular", 6),
    ("Occasional", 2),
    ("New", 1),
)
# (label, highest spend); VIP has no ceiling
SPENDING_SEGMENTS = (
    ("Low", 1000),
    ("Medium", 5000),
    ("High", 10000),
    ("VIP", None),
)


@dataclass
class ReportOptions:
    report_type: str
    format: str = "json"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    start_hour: Optional[int] = None
    end_hour: Optional[int] = None
    compare_period: str = "monthly"
    segment_type: str = "frequency"


@dataclass
class Report:
    report_type: str
    title: str
    start: datetime
    end: datetime
    generated_at: datetime
    rows: List[Dict[str, Any]] = field(default_factory=list)


def session_hours(game_session: GameSession) -> float:
    if game_session.duration_minutes:
        return game_session.duration_minutes / 60
    return 0.5 if game_session.session_type == SessionType.PER_GAME else 1.0


def percentage_change(current: float, previous: float) -> float:
    if previous:
        return round((current - previous) / previous * 100, 1)
    return 100.0 if current > 0 else 0.0


class ReportService:
    """
    Analytics over the transaction and session history.

    Reports are plain lists of row dicts so the same data can be rendered as
    CSV, JSON or PDF. All day and hour bucketing happens in the lounge's
    local timezone.
    """

    def __init__(
        self,
        db_session: Session,
        config: type[Config] = Config,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.clock = clock or utc_now

    def generate(self, options: ReportOptions) -> Tuple[bool, str, Optional[Report]]:
        if options.report_type not in REPORT_TYPES:
            return False, f"Unknown report type: {options.report_type}", None
        if options.format not in REPORT_FORMATS:
            return False, f"Unknown report format: {options.format}", None
        if options.compare_period not in PERIODS:
            return False, f"Unknown comparison period: {options.compare_period}", None
        if options.segment_type not in ("frequency", "spending"):
            return False, f"Unknown segment type: {options.segment_type}", None
        for hour in (options.start_hour, options.end_hour):
            if hour is not None and not 0 <= hour <= 23:
                return False, "Hours must be between 0 and 23", None

        end = as_utc(options.end_date) or self.clock()
        start = as_utc(options.start_date) or end - timedelta(days=30)
        if start > end:
            return False, "Start date must be before end date", None

        builder = getattr(self, f"_build_{options.report_type}")
        with track_latency("report_generation_ms", labels={"report_type": options.report_type}):
            rows = builder(start, end, options)
        increment_counter("reports_generated_total", labels={"report_type": options.report_type})
        self.logger.info(
            "Generated %s report",
            options.report_type,
            extra={"report_type": options.report_type, "rows": len(rows)},
        )
        report = Report(
            report_type=options.report_type,
            title=f"{self.config.LOUNGE_NAME} {options.report_type.capitalize()} Report",
            start=start,
            end=end,
            generated_at=self.clock(),
            rows=rows,
        )
        return True, "Report generated", report

    # ------------------------------------------------------------------
    # Renderers
    # ------------------------------------------------------------------
    def render(self, report: Report, fmt: str) -> Tuple[bytes, str, str]:
        renderers = {"csv": self.render_csv, "json": self.render_json, "pdf": self.render_pdf}
        if fmt not in renderers:
            raise ValueError(f"Unknown report format: {fmt}")
        return renderers[fmt](report)

    def render_csv(self, report: Report) -> Tuple[bytes, str, str]:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=_columns(report.rows), restval="")
        writer.writeheader()
        writer.writerows(report.rows)
        return buffer.getvalue().encode("utf-8"), "text/csv", _filename(report, "csv")

    def render_json(self, report: Report) -> Tuple[bytes, str, str]:
        body = {
            "reportType": report.report_type,
            "generatedAt": report.generated_at.isoformat(),
            "period": {"start": report.start.isoformat(), "end": report.end.isoformat()},
            "data": report.rows,
        }
        return json.dumps(body, default=str).encode("utf-8"), "application/json", _filename(report, "json")

    def render_pdf(self, report: Report) -> Tuple[bytes, str, str]:
        buffer = io.BytesIO()
        page = pdf_canvas.Canvas(buffer, pagesize=landscape(A4))
        width, height = landscape(A4)
        columns = _columns(report.rows)
        column_width = (width - 80) / max(len(columns), 1)

        def header(y: float) -> float:
            page.setFont("Helvetica-Bold", 8)
            for index, column in enumerate(columns):
                page.drawString(40 + index * column_width, y, str(column)[:24])
            return y - 14

        page.setFont("Helvetica-Bold", 14)
        page.drawString(40, height - 40, report.title)
        page.setFont("Helvetica", 9)
        page.drawString(
            40,
            height - 56,
            f"{to_local_timezone(report.start):%Y-%m-%d %H:%M} to {to_local_timezone(report.end):%Y-%m-%d %H:%M}"
            f"  |  generated {to_local_timezone(report.generated_at):%Y-%m-%d %H:%M}",
        )
        y = header(height - 80)
        if not report.rows:
            page.setFont("Helvetica", 9)
            page.drawString(40, y, "No data for this period.")
        for row in report.rows:
            if y < 40:
                page.showPage()
                y = header(height - 40)
            page.setFont("Helvetica", 8)
            for index, column in enumerate(columns):
                page.drawString(40 + index * column_width, y, _cell(row.get(column))[:28])
            y -= 12
        page.showPage()
        page.save()
        return buffer.getvalue(), "application/pdf", _filename(report, "pdf")

    def render_receipt_pdf(self, transaction: Transaction) -> Tuple[bytes, str, str]:
        buffer = io.BytesIO()
        page = pdf_canvas.Canvas(buffer, pagesize=A4)
        width, height = A4
        y = height - 60

        page.setFont("Helvetica-Bold", 16)
        page.drawString(50, y, self.config.LOUNGE_NAME)
        y -= 22
        page.setFont("Helvetica", 10)
        page.drawString(50, y, f"Receipt #{transaction.transactionID}")
        y -= 14
        page.drawString(50, y, f"Date: {to_local_timezone(transaction.created_at):%Y-%m-%d %H:%M}")
        y -= 24

        lines = [
            ("Customer", transaction.customer_name),
            ("Station", transaction.station.name if transaction.station else "-"),
            ("Game", transaction.game_name),
            ("Session", transaction.session_type.value),
        ]
        if transaction.duration:
            lines.append(("Duration", f"{transaction.duration} min"))
        lines.append(("Amount", f"{self.config.CURRENCY} {float(transaction.amount):,.2f}"))
        for payment in transaction.payments:
            if payment.status == PaymentStatus.COMPLETED:
                lines.append(
                    (
                        f"Paid ({payment.payment_method.value})",
                        f"{self.config.CURRENCY} {float(payment.amount):,.2f}  {payment.reference or ''}".rstrip(),
                    )
                )
        lines.append(("Balance", f"{self.config.CURRENCY} {transaction.balance_due:,.2f}"))
        lines.append(("Status", transaction.payment_status.value))
        if transaction.points_awarded:
            lines.append(("Points earned", str(transaction.points_awarded)))

        for label, value in lines:
            page.setFont("Helvetica-Bold", 10)
            page.drawString(50, y, label)
            page.setFont("Helvetica", 10)
            page.drawString(180, y, str(value))
            y -= 16

        page.setFont("Helvetica-Oblique", 9)
        page.drawString(50, max(y - 20, 40), "Thank you for playing!")
        page.showPage()
        page.save()
        increment_counter("receipts_generated_total")
        return buffer.getvalue(), "application/pdf", f"receipt-{transaction.transactionID}.pdf"

    # ------------------------------------------------------------------
    # Dashboard analytics
    # ------------------------------------------------------------------
    def analytics_summary(self, period: str = "daily") -> Dict[str, Any]:
        if period not in PERIODS:
            raise ValueError(f"Unknown period: {period}")
        start = self._period_start(period)
        transactions = self._completed_transactions(start, self.clock())

        payment_methods: Dict[str, int] = defaultdict(int)
        payments = (
            self.db.query(Payment)
            .filter(Payment.status == PaymentStatus.COMPLETED, Payment.created_at >= start)
            .all()
        )
        for payment in payments:
            payment_methods[payment.payment_method.value] += 1

        session_types: Dict[str, int] = defaultdict(int)
        for txn in transactions:
            session_types[txn.session_type.value] += 1

        return {
            "period": period,
            "since": start.isoformat(),
            "totalRevenue": round(sum(float(t.amount) for t in transactions), 2),
            "transactionCount": len(transactions),
            "paymentMethods": dict(payment_methods),
            "sessionTypes": dict(session_types),
        }

    def payment_stats(self, period: str = "daily") -> Dict[str, Any]:
        if period not in PERIODS:
            raise ValueError(f"Unknown period: {period}")
        start = self._period_start(period)
        payments = self.db.query(Payment).filter(Payment.created_at >= start).all()
        counts: Dict[str, int] = defaultdict(int)
        for payment in payments:
            counts[payment.status.value] += 1
        completed = [p for p in payments if p.status == PaymentStatus.COMPLETED]
        total_amount = round(sum(float(p.amount) for p in completed), 2)
        return {
            "period": period,
            "totalPayments": len(payments),
            "completed": counts.get(PaymentStatus.COMPLETED.value, 0),
            "pending": counts.get(PaymentStatus.PENDING.value, 0),
            "failed": counts.get(PaymentStatus.FAILED.value, 0),
            "reversed": counts.get(PaymentStatus.REVERSED.value, 0),
            "totalAmount": total_amount,
            "averageAmount": round(total_amount / len(completed), 2) if completed else 0.0,
            "successRate": round(len(completed) / len(payments) * 100, 1) if payments else 0.0,
        }

    def payment_method_breakdown(self) -> List[Dict[str, Any]]:
        totals: Dict[str, Dict[str, float]] = defaultdict(lambda: {"count": 0, "amount": 0.0})
        for payment in self.db.query(Payment).filter(Payment.status == PaymentStatus.COMPLETED).all():
            bucket = totals[payment.payment_method.value]
            bucket["count"] += 1
            bucket["amount"] += float(payment.amount)
        grand_total = sum(bucket["amount"] for bucket in totals.values())
        return [
            {
                "method": method,
                "count": int(bucket["count"]),
                "amount": round(bucket["amount"], 2),
                "share": round(bucket["amount"] / grand_total * 100, 1) if grand_total else 0.0,
            }
            for method, bucket in sorted(totals.items(), key=lambda item: -item[1]["amount"])
        ]

    # ------------------------------------------------------------------
    # Report builders
    # ------------------------------------------------------------------
    def _build_revenue(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        rows = []
        for txn in self._completed_transactions(start, end, options):
            methods = sorted(
                {p.payment_method.value for p in txn.payments if p.status == PaymentStatus.COMPLETED}
            )
            rows.append(
                {
                    "date": to_local_timezone(txn.created_at).strftime("%Y-%m-%d %H:%M"),
                    "transactionId": txn.transactionID,
                    "customer": txn.customer_name,
                    "station": txn.station.name if txn.station else "",
                    "game": txn.game_name,
                    "sessionType": txn.session_type.value,
                    "amount": float(txn.amount),
                    "paymentMethod": "+".join(methods),
                    "reference": txn.mpesa_ref or "",
                }
            )
        return rows

    def _build_usage(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        sessions_by_station: Dict[int, List[GameSession]] = defaultdict(list)
        for game_session in self._sessions(start, end, options):
            sessions_by_station[game_session.stationID].append(game_session)
        revenue_by_station: Dict[int, float] = defaultdict(float)
        for txn in self._completed_transactions(start, end, options):
            if txn.stationID is not None:
                revenue_by_station[txn.stationID] += float(txn.amount)

        rows = []
        for station in self.db.query(GameStation).order_by(GameStation.name).all():
            sessions = sessions_by_station.get(station.stationID, [])
            last_used = max((as_utc(s.start_time) for s in sessions), default=None)
            rows.append(
                {
                    "station": station.name,
                    "category": station.category.value,
                    "sessions": len(sessions),
                    "hours": round(sum(session_hours(s) for s in sessions), 2),
                    "revenue": round(revenue_by_station.get(station.stationID, 0.0), 2),
                    "lastUsed": to_local_timezone(last_used).strftime("%Y-%m-%d %H:%M") if last_used else "",
                }
            )
        return rows

    def _build_games(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        stats: Dict[int, Dict[str, Any]] = {}
        for game_session in self._sessions(start, end, options):
            game = game_session.game
            entry = stats.setdefault(
                game.gameID,
                {"game": game.name, "sessions": 0, "hours": 0.0, "revenue": 0.0, "price": float(game.price_per_session)},
            )
            entry["sessions"] += 1
            entry["hours"] += session_hours(game_session)
            txn = game_session.transaction
            if txn is not None and txn.payment_status == TransactionStatus.COMPLETED:
                entry["revenue"] += float(txn.amount)

        rows = []
        for entry in sorted(stats.values(), key=lambda e: (-e["sessions"], e["game"])):
            rows.append(
                {
                    "game": entry["game"],
                    "sessions": entry["sessions"],
                    "averageHours": round(entry["hours"] / entry["sessions"], 2),
                    "revenue": round(entry["revenue"], 2),
                    "price": entry["price"],
                }
            )
        return rows

    def _build_customers(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        spend: Dict[int, float] = defaultdict(float)
        visit_days: Dict[int, set] = defaultdict(set)
        last_visit: Dict[int, datetime] = {}
        for txn in self._completed_transactions(start, end, options):
            if txn.userID is None:
                continue
            created = as_utc(txn.created_at)
            spend[txn.userID] += float(txn.amount)
            visit_days[txn.userID].add(to_local_timezone(created).date())
            if txn.userID not in last_visit or created > last_visit[txn.userID]:
                last_visit[txn.userID] = created

        rows = []
        for user_id, total in spend.items():
            user = self.db.get(User, user_id)
            visits = len(visit_days[user_id])
            rows.append(
                {
                    "customer": user.display_name,
                    "gamingName": user.gaming_name,
                    "phone": user.phone_number,
                    "visits": visits,
                    "totalSpent": round(total, 2),
                    "averagePerVisit": round(total / visits, 2),
                    "points": user.points or 0,
                    "lastVisit": to_local_timezone(last_visit[user_id]).strftime("%Y-%m-%d"),
                }
            )
        rows.sort(key=lambda row: (-row["totalSpent"], row["customer"]))
        return rows

    def _build_financial(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        days: Dict[str, Dict[str, float]] = defaultdict(
            lambda: {"revenue": 0.0, "transactions": 0, "hourlyRevenue": 0.0, "perGameRevenue": 0.0}
        )
        for txn in self._completed_transactions(start, end, options):
            day = days[to_local_timezone(txn.created_at).date().isoformat()]
            amount = float(txn.amount)
            day["revenue"] += amount
            day["transactions"] += 1
            if txn.session_type == SessionType.HOURLY:
                day["hourlyRevenue"] += amount
            else:
                day["perGameRevenue"] += amount

        def row(label: str, values: Dict[str, float]) -> Dict[str, Any]:
            count = int(values["transactions"])
            return {
                "date": label,
                "revenue": round(values["revenue"], 2),
                "transactions": count,
                "hourlyRevenue": round(values["hourlyRevenue"], 2),
                "perGameRevenue": round(values["perGameRevenue"], 2),
                "averageTransaction": round(values["revenue"] / count, 2) if count else 0.0,
            }

        totals = {"revenue": 0.0, "transactions": 0, "hourlyRevenue": 0.0, "perGameRevenue": 0.0}
        for values in days.values():
            for key in totals:
                totals[key] += values[key]
        return [row("TOTAL", totals)] + [row(key, days[key]) for key in sorted(days)]

    def _build_loyalty(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        customers = self.db.query(User).filter(User.role == UserRole.CUSTOMER).all()
        tiers: Dict[str, Dict[str, int]] = {label: {"customers": 0, "points": 0} for label, _ in LOYALTY_TIERS}
        for user in customers:
            tier = tiers[tier_for_points(user.points or 0)]
            tier["customers"] += 1
            tier["points"] += user.points or 0

        rows: List[Dict[str, Any]] = [
            {"section": "tier", "label": label, "customers": tiers[label]["customers"], "points": tiers[label]["points"]}
            for label, _ in reversed(LOYALTY_TIERS)
        ]

        earned: Dict[int, int] = defaultdict(int)
        entries = (
            self.db.query(LoyaltyTransaction)
            .filter(
                LoyaltyTransaction.points > 0,
                LoyaltyTransaction.created_at >= start,
                LoyaltyTransaction.created_at <= end,
            )
            .all()
        )
        for entry in entries:
            earned[entry.userID] += entry.points
        top = sorted(customers, key=lambda u: (-(u.points or 0), u.gaming_name))[:10]
        for rank, user in enumerate(top, start=1):
            rows.append(
                {
                    "section": "top_customer",
                    "rank": rank,
                    "label": user.gaming_name,
                    "points": user.points or 0,
                    "earnedInPeriod": earned.get(user.userID, 0),
                    "tier": tier_for_points(user.points or 0),
                }
            )
        return rows

    def _build_hourly(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        sessions = [0] * 24
        revenue = [0.0] * 24
        counts = [0] * 24
        for game_session in self._sessions(start, end, options):
            sessions[to_local_timezone(game_session.start_time).hour] += 1
        for txn in self._completed_transactions(start, end, options):
            hour = to_local_timezone(txn.created_at).hour
            revenue[hour] += float(txn.amount)
            counts[hour] += 1
        return [
            {
                "hour": f"{hour:02d}:00",
                "sessions": sessions[hour],
                "transactions": counts[hour],
                "revenue": round(revenue[hour], 2),
                "averageRevenue": round(revenue[hour] / counts[hour], 2) if counts[hour] else 0.0,
            }
            for hour in range(24)
            if _hour_selected(hour, options)
        ]

    def _build_comparative(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        span = timedelta(days=PERIODS[options.compare_period])
        current = self._period_metrics(end - span, end)
        previous = self._period_metrics(end - 2 * span, end - span)
        rows = []
        for metric in ("transactions", "revenue", "uniqueCustomers", "averageValue", "hoursPlayed"):
            change = percentage_change(current[metric], previous[metric])
            rows.append(
                {
                    "metric": metric,
                    "current": current[metric],
                    "previous": previous[metric],
                    "change": change,
                    "trend": "up" if change > 0 else "down" if change < 0 else "flat",
                }
            )
        return rows

    def _build_predictive(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        revenue_by_day: Dict[Any, float] = defaultdict(float)
        for txn in self._completed_transactions(end - timedelta(days=30), end):
            revenue_by_day[to_local_timezone(txn.created_at).date()] += float(txn.amount)

        totals = [0.0] * 7
        days_seen = [0] * 7
        for day, amount in revenue_by_day.items():
            totals[day.weekday()] += amount
            days_seen[day.weekday()] += 1

        rows = []
        first = to_local_timezone(end).date() + timedelta(days=1)
        for offset in range(7):
            day = first + timedelta(days=offset)
            weekday = day.weekday()
            average = totals[weekday] / days_seen[weekday] if days_seen[weekday] else 0.0
            confidence = min(days_seen[weekday] / 4, 1.0)
            rows.append(
                {
                    "date": day.isoformat(),
                    "weekday": WEEKDAYS[weekday],
                    "averageRevenue": round(average, 2),
                    "confidence": round(confidence, 2),
                    "predictedRevenue": round(average * confidence, 2),
                    "basedOnDays": days_seen[weekday],
                }
            )
        return rows

    def _build_heatmap(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        station_count = max(self.db.query(GameStation).count(), 1)
        grid: Dict[Tuple[int, int], Dict[str, float]] = defaultdict(lambda: {"sessions": 0, "hours": 0.0})
        for game_session in self._sessions(start, end, options):
            local = to_local_timezone(game_session.start_time)
            cell = grid[(local.weekday(), local.hour)]
            cell["sessions"] += 1
            cell["hours"] += session_hours(game_session)

        rows = []
        for weekday in range(7):
            for hour in range(24):
                if not _hour_selected(hour, options):
                    continue
                cell = grid.get((weekday, hour), {"sessions": 0, "hours": 0.0})
                rows.append(
                    {
                        "day": WEEKDAYS[weekday],
                        "hour": hour,
                        "sessions": int(cell["sessions"]),
                        "hours": round(cell["hours"], 2),
                        "utilization": round(cell["hours"] / station_count * 100, 1),
                    }
                )
        return rows

    def _build_segmentation(self, start: datetime, end: datetime, options: ReportOptions) -> List[Dict[str, Any]]:
        visits: Dict[int, int] = defaultdict(int)
        spend: Dict[int, float] = defaultdict(float)
        for txn in self._completed_transactions(start, end, options):
            if txn.userID is not None:
                visits[txn.userID] += 1
                spend[txn.userID] += float(txn.amount)

        if options.segment_type == "spending":
            labels = [label for label, _ in SPENDING_SEGMENTS]
            classify = lambda user_id: _spending_segment(spend[user_id])  # noqa: E731
        else:
            labels = [label for label, _ in reversed(FREQUENCY_SEGMENTS)]
            classify = lambda user_id: _frequency_segment(visits[user_id])  # noqa: E731

        segments: Dict[str, List[int]] = {label: [] for label in labels}
        for user_id in visits:
            segments[classify(user_id)].append(user_id)

        rows = []
        for label in labels:
            members = segments[label]
            revenue = sum(spend[m] for m in members)
            rows.append(
                {
                    "segment": label,
                    "customers": len(members),
                    "totalRevenue": round(revenue, 2),
                    "averageSpend": round(revenue / len(members), 2) if members else 0.0,
                    "averageVisits": round(sum(visits[m] for m in members) / len(members), 2) if members else 0.0,
                }
            )
        return rows

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _period_start(self, period: str) -> datetime:
        now = self.clock()
        if period == "daily":
            return local_midnight(now)
        return now - timedelta(days=PERIODS[period])

    def _period_metrics(self, start: datetime, end: datetime) -> Dict[str, float]:
        transactions = self._completed_transactions(start, end)
        revenue = sum(float(t.amount) for t in transactions)
        customers = {t.userID if t.userID is not None else t.customer_name for t in transactions}
        hours = sum(session_hours(s) for s in self._sessions(start, end))
        return {
            "transactions": len(transactions),
            "revenue": round(revenue, 2),
            "uniqueCustomers": len(customers),
            "averageValue": round(revenue / len(transactions), 2) if transactions else 0.0,
            "hoursPlayed": round(hours, 2),
        }

    def _completed_transactions(
        self,
        start: datetime,
        end: datetime,
        options: Optional[ReportOptions] = None,
    ) -> List[Transaction]:
        rows = (
            self.db.query(Transaction)
            .filter(
                Transaction.payment_status == TransactionStatus.COMPLETED,
                Transaction.created_at >= start,
                Transaction.created_at <= end,
            )
            .order_by(Transaction.created_at, Transaction.transactionID)
            .all()
        )
        if options is None:
            return rows
        return [t for t in rows if _hour_selected(to_local_timezone(t.created_at).hour, options)]

    def _sessions(
        self,
        start: datetime,
        end: datetime,
        options: Optional[ReportOptions] = None,
    ) -> List[GameSession]:
        rows = (
            self.db.query(GameSession)
            .filter(GameSession.start_time >= start, GameSession.start_time <= end)
            .order_by(GameSession.start_time)
            .all()
        )
        if options is None:
            return rows
        return [s for s in rows if _hour_selected(to_local_timezone(s.start_time).hour, options)]


def _hour_selected(hour: int, options: ReportOptions) -> bool:
    low = options.start_hour if options.start_hour is not None else 0
    high = options.end_hour if options.end_hour is not None else 23
    if low <= high:
        return low <= hour <= high
    # window wraps past midnight, e.g. 22 to 2
    return hour >= low or hour <= high


def _frequency_segment(visit_count: int) -> str:
    for label, floor in FREQUENCY_SEGMENTS:
        if visit_count >= floor:
            return label
    return "New"


def _spending_segment(amount: float) -> str:
    for label, ceiling in SPENDING_SEGMENTS:
        if ceiling is None or amount <= ceiling:
            return label
    return "VIP"


def _columns(rows: List[Dict[str, Any]]) -> List[str]:
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns or ["message"]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        return f"{value:,.2f}"
    return str(value)


def _filename(report: Report, extension: str) -> str:
    return f"{report.report_type}-report-{to_local_timezone(report.generated_at):%Y%m%d-%H%M}.{extension}"
