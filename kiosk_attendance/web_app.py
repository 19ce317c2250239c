import base64
import binascii
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from .exceptions import EnrollmentError, InfrastructureError
from .imaging import decode_image
from .kiosk_service import KioskService
from .report_service import ReportService, aggregate_kpis, group_by_date
from .types import AttendanceFailure, AttendanceOutcome, AttendanceSuccess, Identity

logger = logging.getLogger("kiosk_attendance.web_app")


class EnrollBody(BaseModel):
    user_id: str
    full_name: str
    image_base64: str
    shift_start: Optional[str] = None
    shift_end: Optional[str] = None
    grace_minutes: int = 0


class ShiftBody(BaseModel):
    shift_start: Optional[str] = None
    shift_end: Optional[str] = None
    grace_minutes: int = 0


class AttendanceBody(BaseModel):
    image_base64: str
    hint_user_id: Optional[str] = None
    keep_capture: bool = False


def _decode_base64(payload: str) -> bytes:
    # Accept both raw base64 and data URLs.
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Image is not valid base64.") from exc


def _identity_json(identity: Identity) -> dict:
    return {
        "user_id": identity.external_user_id,
        "full_name": identity.display_name,
        "shift_start": identity.shift_start.strftime("%H:%M") if identity.shift_start else None,
        "shift_end": identity.shift_end.strftime("%H:%M") if identity.shift_end else None,
        "grace_minutes": identity.grace_minutes,
    }


def outcome_json(outcome: AttendanceOutcome) -> dict:
    if isinstance(outcome, AttendanceSuccess):
        return {
            "ok": True,
            "user_id": outcome.identity.external_user_id,
            "name": outcome.identity.display_name,
            "similarity": outcome.similarity,
            "checkType": outcome.check_type.value,
            "status": outcome.status.value,
            "lateMinutes": outcome.late_minutes,
            "eventTime": outcome.event_time.isoformat(),
        }
    if isinstance(outcome, AttendanceFailure):
        body = {"ok": False, "reason": outcome.reason.value}
        if outcome.similarity is not None:
            body["similarity"] = outcome.similarity
        return body
    raise TypeError(f"Unsupported attendance outcome: {outcome!r}")


def create_web_app(service: KioskService) -> FastAPI:
    app = FastAPI(title="Attendance Kiosk", version="1.0.0")
    reports = ReportService(service.db)

    @app.exception_handler(InfrastructureError)
    async def _infrastructure_error(request: Request, exc: InfrastructureError):
        logger.error("Infrastructure failure in %s: %s", exc.operation or "unknown", exc)
        return JSONResponse(
            status_code=503,
            content={"detail": str(exc), "operation": exc.operation},
        )

    @app.get("/api/health")
    def health():
        return {"ok": True}

    @app.get("/api/identities")
    def list_identities():
        return [_identity_json(identity) for identity in service.list_identities()]

    @app.post("/api/identities")
    def enroll(payload: EnrollBody):
        try:
            identity = service.enroll(
                user_id=payload.user_id,
                display_name=payload.full_name,
                reference_image=_decode_base64(payload.image_base64),
                shift_start=payload.shift_start,
                shift_end=payload.shift_end,
                grace_minutes=payload.grace_minutes,
            )
        except EnrollmentError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, **_identity_json(identity)}

    @app.patch("/api/identities/{user_id}/shift")
    def update_shift(user_id: str, payload: ShiftBody):
        try:
            identity = service.update_shift(user_id, payload.shift_start, payload.shift_end, payload.grace_minutes)
        except EnrollmentError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, **_identity_json(identity)}

    @app.delete("/api/identities/{user_id}")
    def remove(user_id: str):
        try:
            service.remove_identity(user_id)
        except EnrollmentError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"ok": True}

    @app.post("/api/attendance")
    def mark_attendance(payload: AttendanceBody):
        image = decode_image(_decode_base64(payload.image_base64))
        if image is None:
            raise HTTPException(status_code=400, detail="Image could not be decoded.")
        outcome = service.check_in(
            image,
            hint_user_id=payload.hint_user_id,
            keep_capture=payload.keep_capture,
        )
        return outcome_json(outcome)

    @app.get("/api/report")
    def report(date_from: str = "", date_to: str = "", format: str = "json"):
        if format == "csv":
            return PlainTextResponse(reports.to_csv(date_from, date_to), media_type="text/csv")
        rows = reports.daily_rows(date_from, date_to)
        kpis = aggregate_kpis(rows)
        return {
            "rows": [row.__dict__ for row in rows],
            "days": {day: len(day_rows) for day, day_rows in group_by_date(rows).items()},
            "kpis": kpis.__dict__,
        }

    return app
