import argparse
import sys
from pathlib import Path

import cv2
import uvicorn

from kiosk_attendance.camera import CameraStream
from kiosk_attendance.config import CAMERA_INDEX, DB_PATH, DEVICE
from kiosk_attendance.database import AttendanceDatabase
from kiosk_attendance.exceptions import AttendanceError
from kiosk_attendance.face_engine import FaceEngine
from kiosk_attendance.imaging import encode_jpeg
from kiosk_attendance.kiosk_service import KioskService
from kiosk_attendance.logger import setup_logger
from kiosk_attendance.report_service import ReportService, aggregate_kpis, group_by_date
from kiosk_attendance.stability import AutoCaptureWorker
from kiosk_attendance.types import AttendanceFailure, AttendanceOutcome, AttendanceSuccess
from kiosk_attendance.web_app import create_web_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face Check-in Kiosk")
    parser.add_argument("--db", type=Path, default=DB_PATH, help="Path to the sqlite record store")

    subparsers = parser.add_subparsers(dest="command", required=True)

    enroll = subparsers.add_parser("enroll", help="Enroll a person from a reference photo")
    enroll.add_argument("--id", required=True, dest="user_id", help="External user ID")
    enroll.add_argument("--name", required=True, help="Display name")
    enroll.add_argument("--image", type=Path, required=True, help="Reference image file")
    enroll.add_argument("--shift-start", default=None, help="Shift start, HH:MM (24h)")
    enroll.add_argument("--shift-end", default=None, help="Shift end, HH:MM (24h)")
    enroll.add_argument("--grace", type=int, default=0, help="Grace minutes after shift start")

    shift = subparsers.add_parser("set-shift", help="Change an enrolled person's shift")
    shift.add_argument("--id", required=True, dest="user_id", help="External user ID")
    shift.add_argument("--shift-start", default=None, help="Shift start, HH:MM (24h)")
    shift.add_argument("--shift-end", default=None, help="Shift end, HH:MM (24h)")
    shift.add_argument("--grace", type=int, default=0, help="Grace minutes after shift start")

    remove = subparsers.add_parser("remove", help="Remove an enrolled person")
    remove.add_argument("--id", required=True, dest="user_id", help="External user ID")

    list_cmd = subparsers.add_parser("list-identities", help="List enrolled people")
    list_cmd.add_argument("--limit", type=int, default=100, help="Max rows to print")

    check_in = subparsers.add_parser("check-in", help="Mark attendance from an image file")
    check_in.add_argument("--image", type=Path, required=True, help="Probe image file")
    check_in.add_argument("--hint", default=None, help="Restrict matching to this user ID")

    kiosk = subparsers.add_parser("kiosk", help="Run the camera auto-capture kiosk loop")
    kiosk.add_argument("--camera", type=int, default=CAMERA_INDEX, help="Webcam index")

    report = subparsers.add_parser("report", help="Daily IN/OUT report")
    report.add_argument("--from", dest="date_from", default="", help="First date, YYYY-MM-DD")
    report.add_argument("--to", dest="date_to", default="", help="Last date, YYYY-MM-DD")
    report.add_argument("--output", type=Path, default=None, help="Write .csv or .xlsx instead of printing")

    web = subparsers.add_parser("web", help="Serve the kiosk HTTP API")
    web.add_argument("--host", default="0.0.0.0", help="Host interface")
    web.add_argument("--port", type=int, default=8000, help="Port")

    return parser


def build_service(db_path: Path) -> KioskService:
    db = AttendanceDatabase(db_path)
    engine = FaceEngine(device=DEVICE)
    return KioskService(db=db, oracle=engine)


def format_outcome(outcome: AttendanceOutcome) -> str:
    if isinstance(outcome, AttendanceSuccess):
        text = (
            f"{outcome.check_type.value} {outcome.identity.display_name} ({outcome.identity.external_user_id}) "
            f"{outcome.status.value} similarity={outcome.similarity:.2f}"
        )
        if outcome.late_minutes:
            text += f" late={outcome.late_minutes}min"
        return text
    if isinstance(outcome, AttendanceFailure):
        text = f"Not marked: {outcome.reason.value}"
        if outcome.similarity is not None:
            text += f" similarity={outcome.similarity:.2f}"
        return text
    raise TypeError(f"Unsupported attendance outcome: {outcome!r}")


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "enroll":
            service = build_service(args.db)
            identity = service.enroll(
                user_id=args.user_id,
                display_name=args.name,
                reference_image=args.image.read_bytes(),
                shift_start=args.shift_start,
                shift_end=args.shift_end,
                grace_minutes=args.grace,
            )
            print(f"Enrolled {identity.external_user_id} ({identity.display_name}).")
            return 0

        if args.command == "set-shift":
            service = build_service(args.db)
            identity = service.update_shift(args.user_id, args.shift_start, args.shift_end, args.grace)
            print(f"Shift updated for {identity.external_user_id}.")
            return 0

        if args.command == "remove":
            service = build_service(args.db)
            service.remove_identity(args.user_id)
            print(f"Removed {args.user_id}.")
            return 0

        if args.command == "list-identities":
            db = AttendanceDatabase(args.db)
            identities = db.list_identities()
            if not identities:
                print("No identities enrolled.")
                return 0

            print(f"{'User ID':<16} {'Shift':<13} {'Grace':<6} {'Name'}")
            print("-" * 60)
            for identity in identities[: args.limit]:
                shift = "-"
                if identity.shift_start or identity.shift_end:
                    start = identity.shift_start.strftime("%H:%M") if identity.shift_start else "--:--"
                    end = identity.shift_end.strftime("%H:%M") if identity.shift_end else "--:--"
                    shift = f"{start}-{end}"
                print(f"{identity.external_user_id:<16} {shift:<13} {identity.grace_minutes:<6} {identity.display_name}")
            return 0

        if args.command == "check-in":
            service = build_service(args.db)
            image = cv2.imread(str(args.image))
            if image is None:
                print(f"Error: cannot read image {args.image}")
                return 1
            outcome = service.check_in(image, hint_user_id=args.hint, keep_capture=True)
            print(format_outcome(outcome))
            return 0 if isinstance(outcome, AttendanceSuccess) else 2

        if args.command == "kiosk":
            service = build_service(args.db)
            with CameraStream(args.camera) as cam:
                worker = AutoCaptureWorker(
                    source=cam,
                    handler=service.match_probe,
                    recorder=lambda frame, verdict: service.record_attendance(verdict, capture=encode_jpeg(frame)),
                    on_result=lambda outcome: print(format_outcome(outcome)),
                )
                print("Kiosk running. Press Ctrl+C to stop.")
                try:
                    worker.run()
                finally:
                    worker.stop()
            return 0

        if args.command == "report":
            reports = ReportService(AttendanceDatabase(args.db))
            if args.output is not None:
                if args.output.suffix.lower() == ".xlsx":
                    args.output.write_bytes(reports.to_excel(args.date_from, args.date_to))
                else:
                    args.output.write_text(reports.to_csv(args.date_from, args.date_to), encoding="utf-8")
                print(f"Report written to {args.output}")
                return 0

            rows = reports.daily_rows(args.date_from, args.date_to)
            for day, day_rows in group_by_date(rows).items():
                print(f"== {day} ==")
                for row in day_rows:
                    print(
                        f"  {row.user_id:<12} {row.full_name:<24} "
                        f"in={row.check_in or '-'} ({row.status_in or '-'}) "
                        f"out={row.check_out or '-'} ({row.status_out or '-'}) {row.duration_min}min"
                    )
            kpis = aggregate_kpis(rows)
            print(
                f"On time: {kpis.on_time}  Late: {kpis.late}  Early out: {kpis.early_out}  "
                f"Total: {kpis.total_min}min  Average: {kpis.avg_min}min"
            )
            return 0

        if args.command == "web":
            app = create_web_app(build_service(args.db))
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

    except AttendanceError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
