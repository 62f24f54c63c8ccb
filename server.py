"""FastAPI server exposing the HostelSystem core.

Run locally:
  uvicorn server:app --reload

The caller's identity comes from the authentication layer in front of this
service, forwarded as headers:
  X-Actor-Id, X-Actor-Role (student|admin), X-Actor-Name

Environment: see ``hostel_config``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import date, datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, validator

from demo import seed_sample_data
from hostel_config import configure_logging, load_settings
from hostel_store import MongoStore
from hostel_system import (
    Actor,
    Conflict,
    HostelError,
    HostelSystem,
    NotFound,
    ReminderFilter,
    StoreUnavailable,
    ValidationError,
    fee_display_status,
)

logger = logging.getLogger(__name__)


def get_system() -> HostelSystem:
    settings = load_settings()
    configure_logging(settings.log_level, settings.log_format)
    if settings.db_backend == "mongodb":
        store = MongoStore(
            uri=settings.mongodb_uri,
            db_name=settings.db_name,
            collection_prefix=settings.collection_prefix,
        )
        logger.info("Using MongoDB backend (%s)", settings.db_name)
        return HostelSystem(store=store)
    return HostelSystem()


system = get_system()

app = FastAPI(title="Hostel Occupancy, Fee & Complaint Management")

# Enable CORS for the separately hosted UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def parse_date(s: str) -> date:
    return datetime.strptime(s, "%Y-%m-%d").date()


def _http_error(e: HostelError) -> HTTPException:
    if isinstance(e, NotFound):
        code = 404
    elif isinstance(e, Conflict):
        code = 409
    elif isinstance(e, ValidationError):
        code = 422
    elif isinstance(e, StoreUnavailable):
        code = 503
    else:
        code = 400
    if code == 503:
        logger.error("Request failed: %s", e.message)
    return HTTPException(status_code=code, detail={"message": e.message, "reason": e.reason})


# ---------- Identity ----------


def get_actor(
    x_actor_id: str = Header(...),
    x_actor_role: str = Header("student"),
    x_actor_name: str = Header(""),
) -> Actor:
    try:
        return Actor(id=x_actor_id, role=x_actor_role, display_name=x_actor_name)
    except HostelError as e:
        raise _http_error(e)


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail={"message": "Admin access required", "reason": "forbidden"})
    return actor


def _self_or_admin(actor: Actor, student_id: str) -> None:
    if not actor.is_admin and actor.id != student_id:
        raise HTTPException(status_code=403, detail={"message": "Not allowed for another student", "reason": "forbidden"})


# ---------- Pydantic Schemas ----------


class StudentIn(BaseModel):
    name: str
    email: str
    role: str = "student"
    course: Optional[str] = None
    year: Optional[int] = None
    phone: Optional[str] = None


class StudentUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    course: Optional[str] = None
    year: Optional[int] = None


class RoomIn(BaseModel):
    number: str
    floor: str
    type: str = "single"
    capacity: int = 1
    block: Optional[str] = None
    amenities: Optional[str] = None


class RoomUpdate(BaseModel):
    number: Optional[str] = None
    floor: Optional[str] = None
    type: Optional[str] = None
    capacity: Optional[int] = None
    block: Optional[str] = None
    amenities: Optional[str] = None


class RoomStatusIn(BaseModel):
    status: str


class RoomRequestIn(BaseModel):
    room_id: str
    student_id: Optional[str] = None


class AssignRoomIn(BaseModel):
    student_id: str


class RejectIn(BaseModel):
    reason: Optional[str] = None


class FeeIn(BaseModel):
    student_id: str
    amount: float
    due_date: str  # YYYY-MM-DD

    @validator("due_date")
    def _v_due_date(cls, v: str) -> str:
        parse_date(v)
        return v


class PaymentIn(BaseModel):
    payment_details: Optional[str] = None


class ReminderIn(BaseModel):
    student_id: str
    message: Optional[str] = None
    title: Optional[str] = None


class MassReminderIn(BaseModel):
    student_ids: Optional[List[str]] = None
    overdue_only: bool = False
    message: Optional[str] = None
    title: Optional[str] = None


class ComplaintIn(BaseModel):
    title: str
    description: str
    priority: str = "medium"
    room_number: Optional[str] = None
    student_id: Optional[str] = None


class ComplaintAssignIn(BaseModel):
    assignee: str = Field(min_length=1)


class PriorityIn(BaseModel):
    priority: str


class ResolveIn(BaseModel):
    note: Optional[str] = None


class BroadcastIn(BaseModel):
    targets: List[str] = Field(min_length=1)
    title: str
    message: str
    type: str = "info"


# ---------- Students ----------


@app.post("/api/students", status_code=201)
def register_student(payload: StudentIn):
    try:
        st = system.rooms.register_student(
            payload.name,
            payload.email,
            role=payload.role,
            course=payload.course,
            year=payload.year,
            phone=payload.phone,
        )
        return asdict(st)
    except HostelError as e:
        raise _http_error(e)


@app.get("/api/students")
def list_students(role: Optional[str] = None, admin: Actor = Depends(require_admin)):
    return [asdict(s) for s in system.rooms.list_students(role)]


@app.patch("/api/students/{student_id}")
def update_student(student_id: str, payload: StudentUpdate, actor: Actor = Depends(get_actor)):
    _self_or_admin(actor, student_id)
    try:
        return asdict(system.rooms.update_student(student_id, **payload.model_dump(exclude_unset=True)))
    except HostelError as e:
        raise _http_error(e)


@app.delete("/api/students/{student_id}")
def remove_student(student_id: str, admin: Actor = Depends(require_admin)):
    try:
        system.rooms.remove_student(student_id)
        return {"ok": True}
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/students/{student_id}/release")
def release_room(student_id: str, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.rooms.release_room(student_id))
    except HostelError as e:
        raise _http_error(e)


# ---------- Rooms ----------


@app.get("/api/rooms")
def list_rooms(status: Optional[str] = None, actor: Actor = Depends(get_actor)):
    try:
        return [asdict(r) for r in system.rooms.list_rooms(status)]
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/rooms", status_code=201)
def create_room(payload: RoomIn, admin: Actor = Depends(require_admin)):
    try:
        room = system.rooms.create_room(
            payload.number,
            payload.floor,
            payload.type,
            payload.capacity,
            block=payload.block,
            amenities=payload.amenities,
        )
        return asdict(room)
    except HostelError as e:
        raise _http_error(e)


@app.get("/api/rooms/summary")
def occupancy_summary(admin: Actor = Depends(require_admin)):
    return system.rooms.occupancy_summary()


@app.patch("/api/rooms/{room_id}")
def update_room(room_id: str, payload: RoomUpdate, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.rooms.update_room(room_id, **payload.model_dump(exclude_unset=True)))
    except HostelError as e:
        raise _http_error(e)


@app.put("/api/rooms/{room_id}/status")
def set_room_status(room_id: str, payload: RoomStatusIn, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.rooms.set_room_status(room_id, payload.status))
    except HostelError as e:
        raise _http_error(e)


@app.delete("/api/rooms/{room_id}")
def delete_room(room_id: str, admin: Actor = Depends(require_admin)):
    try:
        system.rooms.delete_room(room_id)
        return {"ok": True}
    except HostelError as e:
        raise _http_error(e)


@app.get("/api/rooms/{room_id}/occupants")
def room_occupants(room_id: str, admin: Actor = Depends(require_admin)):
    try:
        system.rooms.get_room(room_id)
        return [asdict(s) for s in system.rooms.occupants(room_id)]
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/rooms/{room_id}/assign")
def assign_room(room_id: str, payload: AssignRoomIn, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.rooms.assign_room_direct(payload.student_id, room_id, admin))
    except HostelError as e:
        raise _http_error(e)


# ---------- Room requests ----------


@app.post("/api/room-requests", status_code=201)
def request_room(payload: RoomRequestIn, actor: Actor = Depends(get_actor)):
    student_id = payload.student_id or actor.id
    _self_or_admin(actor, student_id)
    try:
        return asdict(system.rooms.request_room(student_id, payload.room_id))
    except HostelError as e:
        raise _http_error(e)


@app.get("/api/room-requests")
def list_requests(status: Optional[str] = None, admin: Actor = Depends(require_admin)):
    try:
        return [asdict(r) for r in system.rooms.list_requests(status)]
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/room-requests/{request_id}/approve")
def approve_request(request_id: str, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.rooms.approve_request(request_id, admin))
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/room-requests/{request_id}/reject")
def reject_request(request_id: str, payload: RejectIn, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.rooms.reject_request(request_id, payload.reason, admin))
    except HostelError as e:
        raise _http_error(e)


# ---------- Fees ----------


def _fee_out(fee) -> dict:
    out = asdict(fee)
    out["display_status"] = fee_display_status(fee, system.clock())
    return out


@app.post("/api/fees", status_code=201)
def create_fee(payload: FeeIn, admin: Actor = Depends(require_admin)):
    try:
        fee = system.fees.create_fee(
            payload.student_id,
            payload.amount,
            parse_date(payload.due_date),
            sender=admin.display_name or "Admin",
        )
        return _fee_out(fee)
    except HostelError as e:
        raise _http_error(e)


@app.get("/api/fees")
def list_fees(student_id: Optional[str] = None, actor: Actor = Depends(get_actor)):
    if not actor.is_admin:
        student_id = actor.id
    return [_fee_out(f) for f in system.fees.list_fees(student_id)]


@app.get("/api/fees/totals")
def fee_totals(student_id: Optional[str] = None, actor: Actor = Depends(get_actor)):
    if not actor.is_admin:
        student_id = actor.id
    return system.fees.totals_by_status(student_id)


@app.post("/api/fees/reminders", status_code=201)
def send_reminder(payload: ReminderIn, admin: Actor = Depends(require_admin)):
    try:
        note = system.fees.send_reminder(
            payload.student_id,
            payload.message,
            **({"title": payload.title} if payload.title else {}),
            sender=admin.display_name or "Admin",
        )
        return asdict(note)
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/fees/reminders/mass")
def send_mass_reminder(payload: MassReminderIn, admin: Actor = Depends(require_admin)):
    reminded = system.fees.send_mass_reminder(
        ReminderFilter(student_ids=payload.student_ids, overdue_only=payload.overdue_only),
        payload.message,
        **({"title": payload.title} if payload.title else {}),
        sender=admin.display_name or "Admin",
    )
    return {"reminded": reminded, "count": len(reminded)}


@app.post("/api/fees/{fee_id}/pay")
def mark_paid(fee_id: str, payload: PaymentIn, admin: Actor = Depends(require_admin)):
    try:
        return _fee_out(system.fees.mark_paid(fee_id, payload.payment_details))
    except HostelError as e:
        raise _http_error(e)


# ---------- Complaints ----------


@app.post("/api/complaints", status_code=201)
def file_complaint(payload: ComplaintIn, actor: Actor = Depends(get_actor)):
    student_id = payload.student_id or actor.id
    _self_or_admin(actor, student_id)
    try:
        c = system.complaints.file_complaint(
            student_id,
            payload.title,
            payload.description,
            payload.priority,
            room_number=payload.room_number,
        )
        return asdict(c)
    except HostelError as e:
        raise _http_error(e)


@app.get("/api/complaints")
def list_complaints(status: Optional[str] = None, actor: Actor = Depends(get_actor)):
    try:
        if actor.is_admin:
            return [asdict(c) for c in system.complaints.admin_queue(status)]
        return [asdict(c) for c in system.complaints.complaints_for(actor.id)]
    except HostelError as e:
        raise _http_error(e)


@app.get("/api/complaints/stats")
def complaint_stats(admin: Actor = Depends(require_admin)):
    return system.complaints.stats()


@app.post("/api/complaints/{complaint_id}/assign")
def assign_complaint(complaint_id: str, payload: ComplaintAssignIn, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.complaints.assign(complaint_id, payload.assignee, admin))
    except HostelError as e:
        raise _http_error(e)


@app.patch("/api/complaints/{complaint_id}/priority")
def set_priority(complaint_id: str, payload: PriorityIn, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.complaints.set_priority(complaint_id, payload.priority))
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/complaints/{complaint_id}/resolve")
def resolve_complaint(complaint_id: str, payload: ResolveIn, admin: Actor = Depends(require_admin)):
    try:
        return asdict(system.complaints.resolve(complaint_id, payload.note, admin))
    except HostelError as e:
        raise _http_error(e)


# ---------- Notifications ----------


@app.get("/api/notifications")
def list_notifications(unread_only: bool = False, actor: Actor = Depends(get_actor)):
    notes = system.notifications.visible_to(actor, unread_only=unread_only)
    return {"unread": system.notifications.unread_count(actor), "items": [asdict(n) for n in notes]}


@app.post("/api/notifications", status_code=201)
def broadcast(payload: BroadcastIn, admin: Actor = Depends(require_admin)):
    try:
        sent = system.notifications.broadcast(
            payload.targets,
            payload.title,
            payload.message,
            type=payload.type,
            sender=admin.display_name or "Admin",
        )
        return {"sent": len(sent), "ids": [n.id for n in sent]}
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/notifications/read-all")
def mark_all_read(actor: Actor = Depends(get_actor)):
    try:
        return {"marked": system.notifications.mark_all_read(actor)}
    except HostelError as e:
        raise _http_error(e)


@app.post("/api/notifications/{notification_id}/read")
def mark_read(notification_id: str, actor: Actor = Depends(get_actor)):
    try:
        changed = system.notifications.mark_read(notification_id, actor)
        return {"ok": True, "changed": changed}
    except HostelError as e:
        raise _http_error(e)


# ---------- Mock Data ----------


@app.post("/api/mock/seed")
def seed_mock_data():
    try:
        counts = seed_sample_data(system)
    except HostelError as e:
        raise _http_error(e)
    return {
        "inserted": counts,
        "occupancy": system.rooms.occupancy_summary(),
        "fees": system.fees.totals_by_status(),
        "complaints": system.complaints.stats(),
    }
