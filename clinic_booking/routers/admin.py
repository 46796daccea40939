# clinic_booking/routers/admin.py
from __future__ import annotations
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from datetime import datetime
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..models import utcnow
from ..repositories import AppointmentRepository, SlotRepository
from ..services.scheduling import day_bounds

router = APIRouter(tags=["admin"])


# ──────────────────────────────────────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────────────────────────────────────
def _require_admin(x_admin_token: str | None) -> None:
    expected = (settings.ADMIN_TOKEN or "").strip()
    provided = (x_admin_token or "").strip()
    if not expected:
        raise HTTPException(status_code=403, detail="ADMIN_TOKEN not configured")
    if provided != expected:
        raise HTTPException(status_code=401, detail="Invalid token")


def _parse_date(s: str):
    try:
        return datetime.strptime(s, "%Y-%m-%d").date()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD.")


# ──────────────────────────────────────────────────────────────────────────────
# Basics (main.py mounts this router with prefix="/admin")
# ──────────────────────────────────────────────────────────────────────────────
@router.get("/ping")
def admin_ping():
    return {"ok": True, "ts": utcnow().isoformat()}


@router.get("/health")
def admin_health():
    return {
        "ok": True,
        "app": settings.APP_NAME,
        "env": settings.ENV,
        "tz": settings.TIMEZONE,
        "dry_run": settings.DRY_RUN,
        "ts": utcnow().isoformat(),
    }


# ──────────────────────────────────────────────────────────────────────────────
# DB diagnostics
# ──────────────────────────────────────────────────────────────────────────────
@router.get("/db/appointments")
def admin_db_appointments(
    x_admin_token: str | None = Header(default=None),
    date: str = Query(..., description="YYYY-MM-DD"),
    db: Session = Depends(get_db),
):
    """
    Lists active appointments of the given clinic-local date together with
    the counters of their slots. Handy when a slot looks full but the
    appointments say otherwise.
    """
    _require_admin(x_admin_token)
    bounds = day_bounds(_parse_date(date))

    items = []
    for ap in AppointmentRepository.find_active_in_range(db, bounds.start, bounds.end):
        slot = SlotRepository.find_slot(db, ap.slot_id) if ap.slot_id else None
        items.append({
            "id": ap.id,
            "doctor_id": ap.doctor_id,
            "patient_id": ap.patient_id,
            "appointment_time": ap.appointment_time.isoformat(),
            "status": ap.status.value,
            "slot_id": ap.slot_id,
            "slot_type": slot.slot_type.value if slot else None,
            "slot_booked_count": slot.booked_count if slot else None,
            "slot_is_available": slot.is_available if slot else None,
        })
    return {"ok": True, "date": date, "count": len(items), "appointments": items}
