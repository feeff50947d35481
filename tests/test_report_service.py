import csv
import io
import json
from datetime import datetime, timezone

import pytest

from lounge.services.report_service import (
    ReportOptions,
    ReportService,
    percentage_change,
)


@pytest.fixture
def report_service(db_session, clock):
    return ReportService(db_session, clock=clock)


@pytest.fixture
def played_day(station_service, payment_service, station, second_station, game, customer, clock):
    """
    Wednesday 2025-06-04: two paid per-game sessions for the sample customer
    at 10:00 and 10:15, then a 70 minute walk-in hourly session from 11:00
    on a station without its own rate, billed at the game's 200 per hour.
    """
    for _ in range(2):
        _, _, game_session = station_service.start_session(
            station.stationID, game.gameID, "per_game", customer_id=customer.userID
        )
        payment_service.pay_cash(game_session.transaction.transactionID)
        clock.advance(minutes=10)
        station_service.end_session(game_session.sessionID)
        clock.advance(minutes=5)

    clock.advance(minutes=30)
    _, _, hourly = station_service.start_session(
        second_station.stationID, game.gameID, "hourly", customer_name="Walk-in Wanjiru"
    )
    clock.advance(minutes=70)
    _, _, hourly = station_service.end_session(hourly.sessionID)
    payment_service.pay_cash(hourly.transaction.transactionID)
    return customer


def _generate(report_service, report_type, **kwargs):
    success, message, report = report_service.generate(ReportOptions(report_type, **kwargs))
    assert success, message
    return report


@pytest.mark.parametrize(
    "options, expected",
    [
        (ReportOptions("sales"), "Unknown report type: sales"),
        (ReportOptions("revenue", format="xlsx"), "Unknown report format: xlsx"),
        (ReportOptions("comparative", compare_period="fortnightly"), "Unknown comparison period: fortnightly"),
        (ReportOptions("segmentation", segment_type="age"), "Unknown segment type: age"),
        (ReportOptions("hourly", start_hour=24), "Hours must be between 0 and 23"),
        (
            ReportOptions(
                "revenue",
                start_date=datetime(2025, 6, 5, tzinfo=timezone.utc),
                end_date=datetime(2025, 6, 1, tzinfo=timezone.utc),
            ),
            "Start date must be before end date",
        ),
    ],
)
def test_invalid_options(report_service, options, expected):
    success, message, report = report_service.generate(options)
    assert not success
    assert message == expected
    assert report is None


def test_revenue_report(report_service, played_day):
    report = _generate(report_service, "revenue")

    assert [row["amount"] for row in report.rows] == [40.0, 40.0, 250.0]
    assert {row["paymentMethod"] for row in report.rows} == {"cash"}
    assert report.rows[0]["customer"] == "John Doe"
    assert report.rows[2]["sessionType"] == "hourly"
    assert report.title == "Infinity Gaming Lounge Revenue Report"


def test_financial_report_leads_with_totals(report_service, played_day):
    rows = _generate(report_service, "financial").rows

    total, day = rows
    assert total["date"] == "TOTAL"
    assert total["revenue"] == 330.0
    assert total["transactions"] == 3
    assert total["hourlyRevenue"] == 250.0
    assert total["perGameRevenue"] == 80.0
    assert day["date"] == "2025-06-04"
    assert day["averageTransaction"] == round(330 / 3, 2)


def test_usage_report(report_service, played_day):
    rows = {row["station"]: row for row in _generate(report_service, "usage").rows}

    assert rows["PS5 Station 1"]["sessions"] == 2
    assert rows["PS5 Station 1"]["revenue"] == 80.0
    assert rows["Gaming PC 1"]["hours"] == round(70 / 60, 2)
    assert rows["Gaming PC 1"]["revenue"] == 250.0
    assert rows["Gaming PC 1"]["lastUsed"] == "2025-06-04 11:00"


def test_games_report(report_service, played_day):
    (row,) = _generate(report_service, "games").rows
    assert row["game"] == "FIFA 24"
    assert row["sessions"] == 3
    assert row["averageHours"] == 0.5
    assert row["revenue"] == 330.0


def test_customers_report_skips_walk_ins(report_service, played_day):
    (row,) = _generate(report_service, "customers").rows
    assert row["gamingName"] == "ProGamer"
    assert row["visits"] == 1
    assert row["totalSpent"] == 80.0
    assert row["points"] == 10


def test_hourly_report_respects_hour_window(report_service, played_day):
    rows = _generate(report_service, "hourly", start_hour=10, end_hour=11).rows

    assert [row["hour"] for row in rows] == ["10:00", "11:00"]
    assert rows[0]["sessions"] == 2
    assert rows[0]["revenue"] == 80.0
    assert rows[0]["averageRevenue"] == 40.0
    assert rows[1]["sessions"] == 1
    assert rows[1]["transactions"] == 0


def test_hour_window_can_wrap_midnight(report_service, db_session):
    rows = _generate(report_service, "hourly", start_hour=22, end_hour=2).rows
    assert [row["hour"] for row in rows] == ["00:00", "01:00", "02:00", "22:00", "23:00"]


def test_loyalty_report(report_service, played_day):
    rows = _generate(
        report_service,
        "loyalty",
        start_date=datetime(2025, 1, 1, tzinfo=timezone.utc),
        end_date=datetime(2100, 1, 1, tzinfo=timezone.utc),
    ).rows

    tiers = [row for row in rows if row["section"] == "tier"]
    assert [row["label"] for row in tiers] == ["Bronze", "Silver", "Gold", "Platinum"]
    assert tiers[0]["customers"] == 1
    (top,) = [row for row in rows if row["section"] == "top_customer"]
    assert top["label"] == "ProGamer"
    assert top["points"] == 10
    assert top["earnedInPeriod"] == 10


def test_comparative_report(report_service, played_day):
    rows = {row["metric"]: row for row in _generate(report_service, "comparative", compare_period="daily").rows}

    assert rows["transactions"]["current"] == 3
    assert rows["transactions"]["previous"] == 0
    assert rows["transactions"]["change"] == 100.0
    assert rows["transactions"]["trend"] == "up"
    assert rows["uniqueCustomers"]["current"] == 2
    assert rows["revenue"]["current"] == 330.0


def test_predictive_report(report_service, played_day):
    rows = _generate(report_service, "predictive").rows

    assert len(rows) == 7
    assert rows[0]["date"] == "2025-06-05"
    wednesday = rows[-1]
    assert wednesday["weekday"] == "Wednesday"
    assert wednesday["averageRevenue"] == 330.0
    assert wednesday["confidence"] == 0.25
    assert wednesday["predictedRevenue"] == 82.5
    assert rows[0]["predictedRevenue"] == 0.0


def test_heatmap_report(report_service, played_day):
    rows = _generate(report_service, "heatmap", start_hour=10, end_hour=11).rows

    assert len(rows) == 14
    cells = {(row["day"], row["hour"]): row for row in rows}
    assert cells[("Wednesday", 10)]["sessions"] == 2
    assert cells[("Wednesday", 10)]["utilization"] == 16.7
    assert cells[("Wednesday", 11)]["utilization"] == 58.3
    assert cells[("Monday", 10)]["sessions"] == 0


@pytest.mark.parametrize(
    "segment_type, segment",
    [("frequency", "Occasional"), ("spending", "Low")],
)
def test_segmentation_report(report_service, played_day, segment_type, segment):
    rows = {row["segment"]: row for row in _generate(report_service, "segmentation", segment_type=segment_type).rows}
    assert rows[segment]["customers"] == 1
    assert rows[segment]["totalRevenue"] == 80.0
    assert sum(row["customers"] for row in rows.values()) == 1


def test_csv_rendering(report_service, played_day):
    report = _generate(report_service, "revenue")
    body, mimetype, filename = report_service.render(report, "csv")

    assert mimetype == "text/csv"
    assert filename == "revenue-report-20250604-1210.csv"
    rows = list(csv.DictReader(io.StringIO(body.decode("utf-8"))))
    assert len(rows) == 3
    assert rows[0]["game"] == "FIFA 24"


def test_json_rendering(report_service, played_day):
    report = _generate(report_service, "financial")
    body, mimetype, _ = report_service.render(report, "json")

    payload = json.loads(body)
    assert mimetype == "application/json"
    assert payload["reportType"] == "financial"
    assert payload["period"]["end"].startswith("2025-06-04T12:10")
    assert payload["data"][0]["date"] == "TOTAL"


def test_pdf_rendering(report_service, played_day):
    report = _generate(report_service, "usage")
    body, mimetype, filename = report_service.render(report, "pdf")
    assert body.startswith(b"%PDF")
    assert mimetype == "application/pdf"
    assert filename.endswith(".pdf")


def test_empty_report_still_renders(report_service, db_session):
    report = _generate(report_service, "revenue")
    assert report.rows == []
    assert report_service.render_pdf(report)[0].startswith(b"%PDF")
    assert report_service.render_csv(report)[0] == b"message\r\n"


def test_receipt_pdf(report_service, pending_transaction, payment_service):
    payment_service.pay_cash(pending_transaction.transactionID)
    body, mimetype, filename = report_service.render_receipt_pdf(pending_transaction)
    assert body.startswith(b"%PDF")
    assert filename == f"receipt-{pending_transaction.transactionID}.pdf"


def test_analytics_and_payment_stats(report_service, played_day):
    summary = report_service.analytics_summary("daily")
    assert summary["totalRevenue"] == 330.0
    assert summary["transactionCount"] == 3
    assert summary["sessionTypes"] == {"per_game": 2, "hourly": 1}
    assert summary["paymentMethods"] == {"cash": 3}

    stats = report_service.payment_stats("weekly")
    assert stats["completed"] == 3
    assert stats["successRate"] == 100.0
    assert stats["averageAmount"] == round(330 / 3, 2)

    assert report_service.payment_method_breakdown() == [
        {"method": "cash", "count": 3, "amount": 330.0, "share": 100.0}
    ]
    with pytest.raises(ValueError):
        report_service.analytics_summary("hourly")


@pytest.mark.parametrize(
    "current, previous, expected",
    [(150, 100, 50.0), (50, 100, -50.0), (10, 0, 100.0), (0, 0, 0.0)],
)
def test_percentage_change(current, previous, expected):
    assert percentage_change(current, previous) == expected
