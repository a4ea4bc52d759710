#!/usr/bin/env python3
import argparse
import json
import os
import sys
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.models import Booking
from app.services.safety import CHECK_IN_INTERVAL, check_in_status, safety_monitor


def _row(booking: Booking, now: datetime) -> Dict[str, Any]:
    status = check_in_status(booking, now)
    return {
        "booking_id": booking.id,
        "status": booking.status,
        "user_id": booking.user_id,
        "friend_id": booking.friend_id,
        "last_check_in": status.last_check_in.timestamp.isoformat() if status.last_check_in else None,
        "minutes_since_last": round(status.time_since_last_check_in or 0.0, 1),
        "sos_count": sum(1 for c in booking.check_ins if c.type == "sos"),
    }


def build_report(bookings: List[Booking], now: datetime) -> Dict[str, Any]:
    rows = [_row(booking, now) for booking in bookings]
    status_counts: Counter[str] = Counter(row["status"] for row in rows)
    with_sos = sum(1 for row in rows if row["sos_count"])
    return {
        "generated_at": now.isoformat(),
        "check_in_interval_minutes": int(CHECK_IN_INTERVAL.total_seconds() // 60),
        "overdue_bookings": len(rows),
        "status_counts": dict(status_counts),
        "bookings_with_sos": with_sos,
        "rows": sorted(rows, key=lambda row: row["minutes_since_last"], reverse=True),
    }


def print_human(report: Dict[str, Any]) -> None:
    print(f"Generated at: {report['generated_at']}")
    print(f"Check-in interval: {report['check_in_interval_minutes']} min")
    print(f"Overdue bookings: {report['overdue_bookings']} (with SOS: {report['bookings_with_sos']})")
    for status, count in sorted(report["status_counts"].items()):
        print(f"  - {status}: {count}")
    for row in report["rows"]:
        print(
            f"  {row['booking_id']} user={row['user_id']} friend={row['friend_id']} "
            f"last={row['last_check_in']} silent={row['minutes_since_last']}m sos={row['sos_count']}"
        )


def main() -> int:
    parser = argparse.ArgumentParser(description="List active bookings whose safety check-ins are overdue.")
    parser.add_argument(
        "--minutes-ahead",
        type=int,
        default=0,
        help="Evaluate as if this many minutes had passed, to see what will go overdue next.",
    )
    parser.add_argument("--json-out", default="", help="Optional path to write JSON summary.")
    args = parser.parse_args()

    now = datetime.now(timezone.utc) + timedelta(minutes=max(0, args.minutes_ahead))
    report = build_report(safety_monitor.overdue_bookings(now), now)
    print_human(report)

    if args.json_out:
        path = Path(args.json_out)
        path.write_text(json.dumps(report, indent=2) + "\n", encoding="utf-8")
        print(f"Wrote report: {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
