from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import datetime
from io import BytesIO
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .database import AttendanceDatabase, EventRecord
from .types import AttendanceStatus, CheckType, EventResult

REPORT_COLUMNS = OrderedDict(
    [
        ("date", "Date"),
        ("user_id", "User ID"),
        ("full_name", "Full Name"),
        ("check_in", "Check-in"),
        ("check_out", "Check-out"),
        ("duration_min", "Duration (min)"),
        ("status_in", "IN Status"),
        ("status_out", "OUT Status"),
    ]
)


@dataclass
class DailyRow:
    date: str
    user_id: str
    full_name: str
    check_in: Optional[str] = None
    check_out: Optional[str] = None
    duration_min: int = 0
    status_in: Optional[str] = None
    status_out: Optional[str] = None


@dataclass
class AttendanceKPIs:
    on_time: int
    late: int
    early_out: int
    total_min: int
    avg_min: int


def pair_daily_in_out(records: List[EventRecord]) -> List[DailyRow]:
    """One row per identity and day: the first IN paired with the next OUT."""
    grouped: Dict[Tuple[int, str], List[EventRecord]] = OrderedDict()
    for record in records:
        event = record.event
        if event.result is not EventResult.SUCCESS or event.identity_id is None:
            continue
        key = (event.identity_id, event.event_time.date().isoformat())
        grouped.setdefault(key, []).append(record)

    rows: List[DailyRow] = []
    for (_, day), items in grouped.items():
        items.sort(key=lambda item: item.event.event_time)
        check_in: Optional[datetime] = None
        check_out: Optional[datetime] = None
        status_in: Optional[str] = None
        status_out: Optional[str] = None

        for item in items:
            event = item.event
            if check_in is None and event.check_type is CheckType.IN:
                check_in = event.event_time
                status_in = "LATE" if event.status is AttendanceStatus.LATE else "ON_TIME"
            elif check_in is not None and event.check_type is CheckType.OUT:
                check_out = event.event_time
                status_out = "EARLY" if event.status is AttendanceStatus.EARLY else "ON_TIME"
                break

        duration = 0
        if check_in is not None and check_out is not None:
            duration = max(0, round((check_out - check_in).total_seconds() / 60.0))

        first = items[0]
        rows.append(
            DailyRow(
                date=day,
                user_id=first.external_user_id or "",
                full_name=first.display_name or "",
                check_in=check_in.isoformat(timespec="seconds") if check_in else None,
                check_out=check_out.isoformat(timespec="seconds") if check_out else None,
                duration_min=int(duration),
                status_in=status_in,
                status_out=status_out,
            )
        )
    return rows


def aggregate_kpis(rows: List[DailyRow]) -> AttendanceKPIs:
    days = len(rows)
    total = sum(row.duration_min for row in rows)
    return AttendanceKPIs(
        on_time=sum(1 for row in rows if row.status_in == "ON_TIME"),
        late=sum(1 for row in rows if row.status_in == "LATE"),
        early_out=sum(1 for row in rows if row.status_out == "EARLY"),
        total_min=total,
        avg_min=round(total / days) if days else 0,
    )


def group_by_date(rows: List[DailyRow]) -> Dict[str, List[DailyRow]]:
    grouped: Dict[str, List[DailyRow]] = OrderedDict()
    for row in rows:
        grouped.setdefault(row.date, []).append(row)
    return grouped


def rows_to_frame(rows: List[DailyRow]) -> pd.DataFrame:
    df = pd.DataFrame([asdict(row) for row in rows], columns=list(REPORT_COLUMNS.keys()))
    return df.rename(columns=REPORT_COLUMNS)


class ReportService:
    def __init__(self, db: AttendanceDatabase):
        self.db = db

    def daily_rows(self, date_from: str = "", date_to: str = "") -> List[DailyRow]:
        records = self.db.search_events(date_from=date_from, date_to=date_to, result=EventResult.SUCCESS)
        return pair_daily_in_out(records)

    def to_csv(self, date_from: str = "", date_to: str = "") -> str:
        return rows_to_frame(self.daily_rows(date_from, date_to)).to_csv(index=False)

    def to_excel(self, date_from: str = "", date_to: str = "") -> bytes:
        df = rows_to_frame(self.daily_rows(date_from, date_to))
        output = BytesIO()
        with pd.ExcelWriter(output, engine="openpyxl") as writer:
            df.to_excel(writer, index=False, sheet_name="Attendance")
            ws = writer.sheets["Attendance"]
            ws.freeze_panes = "A2"

        output.seek(0)
        return output.read()
