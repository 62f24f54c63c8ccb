"""
Hostel Occupancy, Fee & Complaint Management

Implements:
- Room allocation with request/approval flow, direct assignment and release
- Fee ledger with derived overdue classification and reminders
- Complaint workflow with enforced status transitions and priority ranking
- Notification fan-out to a user, a role, or everyone, with read tracking

All managers share one Entity Store (see ``hostel_store``) and never call each
other; they coordinate only through stored fields (``roomId`` on a student,
``studentId`` on fees and complaints). Multi-document transitions are ordered
sequences of single-document writes; the critical write is a compare-and-set
so that concurrent actors racing for the same room cannot both win.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, fields
from datetime import date, datetime, time, timezone
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from hostel_errors import Conflict, HostelError, NotFound, StoreUnavailable, ValidationError
from hostel_store import (
    ASCENDING,
    COMPLAINTS,
    DESCENDING,
    FEES,
    NOTIFICATIONS,
    ROOM_REQUESTS,
    ROOMS,
    USERS,
    BaseStore,
    InMemoryStore,
)

__all__ = [
    "Actor",
    "Complaint",
    "ComplaintWorkflow",
    "Conflict",
    "Fee",
    "FeeLedger",
    "HostelError",
    "HostelSystem",
    "NotFound",
    "Notification",
    "NotificationDispatcher",
    "ReminderFilter",
    "Room",
    "RoomAllocationManager",
    "RoomRequest",
    "StoreUnavailable",
    "Student",
    "ValidationError",
    "compute_overdue",
    "fee_display_status",
    "rank_complaints",
]

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Rooms
ROOM_TYPES = ("single", "double", "triple", "quad")
ROOM_AVAILABLE = "available"
ROOM_OCCUPIED = "occupied"
ROOM_MAINTENANCE = "maintenance"
ROOM_RESERVED = "reserved"
ROOM_STATUSES = (ROOM_AVAILABLE, ROOM_OCCUPIED, ROOM_MAINTENANCE, ROOM_RESERVED)
MANUAL_ROOM_STATUSES = (ROOM_AVAILABLE, ROOM_MAINTENANCE, ROOM_RESERVED)
MAX_ROOM_CAPACITY = 6
ROOM_EDITABLE_FIELDS = ("number", "floor", "block", "type", "capacity", "amenities")

# Users
ROLE_STUDENT = "student"
ROLE_ADMIN = "admin"
ROLES = (ROLE_STUDENT, ROLE_ADMIN)
STUDENT_PROFILE_FIELDS = ("name", "phone", "course", "year")

# Room requests
REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"
REQUEST_STATUSES = (REQUEST_PENDING, REQUEST_APPROVED, REQUEST_REJECTED)

# Fees; "overdue" is only ever derived, but older documents may still carry it
FEE_PENDING = "pending"
FEE_OVERDUE = "overdue"
FEE_PAID = "paid"
FEE_STATUSES = (FEE_PENDING, FEE_OVERDUE, FEE_PAID)
UNPAID_FEE_STATUSES = [FEE_PENDING, FEE_OVERDUE]

# Complaints
COMPLAINT_PENDING = "pending"
COMPLAINT_IN_PROGRESS = "in-progress"
COMPLAINT_RESOLVED = "resolved"
COMPLAINT_STATUSES = (COMPLAINT_PENDING, COMPLAINT_IN_PROGRESS, COMPLAINT_RESOLVED)
OPEN_COMPLAINT_STATUSES = [COMPLAINT_PENDING, COMPLAINT_IN_PROGRESS]
PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}

# Notifications
NOTIFICATION_TYPES = ("info", "warning", "success", "error")
TARGET_ALL = "all"

DEFAULT_REMINDER_TITLE = "Fee Payment Reminder"
DEFAULT_REMINDER_MESSAGE = (
    "This is a reminder to pay your pending hostel fees. Please make the payment as soon as possible."
)

# Attempts at a compare-and-set on a contended room before giving up
MAX_CAS_ATTEMPTS = 5


# -----------------------------
# Validation helpers
# -----------------------------


def _required(value: Optional[str], name: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ValidationError(f"{name} is required", reason=f"missing_{name}")
    return text


def _choice(value: str, choices: Sequence[str], name: str) -> str:
    if value not in choices:
        raise ValidationError(
            f"Invalid {name}: {value!r} (expected one of {', '.join(choices)})", reason=f"invalid_{name}"
        )
    return value


def _naive_utc(value: datetime) -> datetime:
    # The clock is naive UTC; aware values are shifted to UTC before comparison.
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _as_datetime(value: object, name: str) -> datetime:
    if isinstance(value, datetime):
        return _naive_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    if isinstance(value, str):
        try:
            return _naive_utc(datetime.fromisoformat(value))
        except ValueError:
            pass
    raise ValidationError(f"Invalid {name}: {value!r}", reason=f"invalid_{name}")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# -----------------------------
# Data Models
# -----------------------------


class _Document:
    """Mapping between a dataclass record and its camelCase store document."""

    def to_doc(self) -> dict:
        return {_camel(f.name): getattr(self, f.name) for f in fields(self) if f.name != "id"}

    @classmethod
    def from_doc(cls, doc: dict):
        kwargs = {f.name: doc[_camel(f.name)] for f in fields(cls) if _camel(f.name) in doc}
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ValidationError(f"Malformed {cls.__name__} document {doc.get('id')}: {e}") from e


@dataclass
class Actor:
    """The authenticated identity invoking an operation, supplied by the auth collaborator."""

    id: str
    role: str = ROLE_STUDENT
    display_name: str = ""

    def __post_init__(self) -> None:
        _choice(self.role, ROLES, "role")

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class Room(_Document):
    """A hostel room.

    ``occupancy`` mirrors the number of students whose ``roomId`` points here and
    is only changed through compare-and-set writes. Status is ``occupied`` exactly
    when occupancy is at least one.
    """

    id: str
    number: str
    floor: str
    type: str = "single"
    capacity: int = 1
    status: str = ROOM_AVAILABLE
    block: Optional[str] = None
    amenities: Optional[str] = None
    occupancy: int = 0
    assigned_date: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _choice(self.type, ROOM_TYPES, "room_type")
        _choice(self.status, ROOM_STATUSES, "room_status")

    @property
    def has_vacancy(self) -> bool:
        return self.status == ROOM_AVAILABLE and self.occupancy < self.capacity


@dataclass
class Student(_Document):
    id: str
    name: str
    email: str
    role: str = ROLE_STUDENT
    room_id: Optional[str] = None
    pending_request_id: Optional[str] = None
    status: str = "active"
    course: Optional[str] = None
    year: Optional[int] = None
    phone: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _choice(self.role, ROLES, "role")


@dataclass
class RoomRequest(_Document):
    """A student's request for a specific room. Status: pending -> approved | rejected."""

    id: str
    user_id: str
    room_id: str
    status: str = REQUEST_PENDING
    user_name: Optional[str] = None
    room_number: Optional[str] = None
    created_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    note: Optional[str] = None

    def __post_init__(self) -> None:
        _choice(self.status, REQUEST_STATUSES, "request_status")


@dataclass
class Fee(_Document):
    """A fee charged to a student. ``paid`` is terminal; overdue is derived, see ``compute_overdue``."""

    id: str
    student_id: str
    amount: float
    due_date: datetime
    status: str = FEE_PENDING
    student_name: Optional[str] = None
    payment_date: Optional[datetime] = None
    payment_details: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _choice(self.status, FEE_STATUSES, "fee_status")


@dataclass
class Complaint(_Document):
    """A student complaint.

    Status transitions: pending -> in-progress -> resolved, or pending -> resolved.
    ``resolved_at`` is set exactly when the complaint is resolved.
    """

    id: str
    student_id: str
    title: str
    description: str
    priority: str = "medium"
    status: str = COMPLAINT_PENDING
    room_number: str = "Not assigned"
    student_name: Optional[str] = None
    assigned_to: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        _choice(self.priority, tuple(PRIORITY_RANK), "priority")
        _choice(self.status, COMPLAINT_STATUSES, "complaint_status")


@dataclass
class Notification(_Document):
    id: str
    title: str
    message: str
    target: str
    type: str = "info"
    read: bool = False
    timestamp: Optional[datetime] = None
    sender: Optional[str] = None
    category: Optional[str] = None  # room_request | room_assigned | fee_reminder | ...

    def __post_init__(self) -> None:
        _choice(self.type, NOTIFICATION_TYPES, "notification_type")


@dataclass
class ReminderFilter:
    """Selects who receives a mass fee reminder."""

    student_ids: Optional[Iterable[str]] = None
    overdue_only: bool = False


# -----------------------------
# Pure rules
# -----------------------------


def compute_overdue(fee: Fee, now: datetime) -> bool:
    """A fee is overdue when it is still unpaid and its due date has passed.

    Never mutates the stored status.
    """
    if fee.status == FEE_OVERDUE:
        return True
    return fee.status == FEE_PENDING and now > fee.due_date


def fee_display_status(fee: Fee, now: datetime) -> str:
    if fee.status == FEE_PAID:
        return FEE_PAID
    return FEE_OVERDUE if compute_overdue(fee, now) else FEE_PENDING


def rank_complaints(complaints: Iterable[Complaint]) -> List[Complaint]:
    """Order complaints by priority (high first), then newest first, then id."""
    ordered = sorted(complaints, key=lambda c: c.id)
    ordered.sort(key=lambda c: c.created_at or datetime.min, reverse=True)
    ordered.sort(key=lambda c: PRIORITY_RANK[c.priority])
    return ordered


# -----------------------------
# Notification Dispatcher
# -----------------------------


class NotificationDispatcher:
    """Fan-out of system events to a user, a role ("student"/"admin") or everyone."""

    def __init__(self, store: BaseStore, clock: Optional[Clock] = None) -> None:
        self.store = store
        self.clock = clock or datetime.utcnow

    def publish(
        self,
        target: str,
        title: str,
        message: str,
        type: str = "info",
        sender: Optional[str] = None,
        category: Optional[str] = None,
    ) -> Notification:
        """Append one notification. Store failures propagate."""
        note = Notification(
            id="",
            title=_required(title, "title"),
            message=_required(message, "message"),
            target=_required(target, "target"),
            type=type,
            timestamp=self.clock(),
            sender=sender,
            category=category,
        )
        note.id = self.store.create(NOTIFICATIONS, note.to_doc())
        return note

    def notify(self, target: str, title: str, message: str, **kwargs) -> Optional[Notification]:
        """Best-effort publish used as a side effect of a state transition.

        A lost notification is logged and reported as None; it never unwinds the
        transition that caused it.
        """
        try:
            return self.publish(target, title, message, **kwargs)
        except StoreUnavailable:
            logger.warning("Notification %r to %s was lost", title, target, exc_info=True)
            return None

    def broadcast(
        self,
        targets: Iterable[str],
        title: str,
        message: str,
        type: str = "info",
        sender: Optional[str] = None,
    ) -> List[Notification]:
        sent = []
        for target in dict.fromkeys(targets):
            note = self.notify(target, title, message, type=type, sender=sender, category="broadcast")
            if note is not None:
                sent.append(note)
        logger.info("Broadcast %r delivered to %d target(s)", title, len(sent))
        return sent

    @staticmethod
    def _visible(actor: Actor) -> list:
        return [("target", "in", [actor.id, actor.role, TARGET_ALL])]

    def visible_to(self, actor: Actor, unread_only: bool = False) -> List[Notification]:
        predicates = self._visible(actor)
        if unread_only:
            predicates.append(("read", "==", False))
        docs = self.store.query(NOTIFICATIONS, predicates, order_by=[("timestamp", DESCENDING)])
        return [Notification.from_doc(d) for d in docs]

    def unread_count(self, actor: Actor) -> int:
        return len(self.store.query(NOTIFICATIONS, self._visible(actor) + [("read", "==", False)]))

    def mark_read(self, notification_id: str, actor: Optional[Actor] = None) -> bool:
        """Flip read to True. Returns False when it was already read.

        With an ``actor``, only a notification addressed to them can be marked;
        anything else is reported as not found.
        """
        expect = [("read", "==", False)]
        if actor is not None:
            expect += self._visible(actor)
        try:
            if self.store.update(NOTIFICATIONS, notification_id, {"read": True}, expect=expect):
                return True
        except NotFound:
            raise NotFound(f"Unknown notification: {notification_id}", reason="notification_not_found") from None
        doc = self.store.get(NOTIFICATIONS, notification_id)
        if doc is None or (actor is not None and doc.get("target") not in (actor.id, actor.role, TARGET_ALL)):
            raise NotFound(f"Unknown notification: {notification_id}", reason="notification_not_found")
        return False

    def mark_all_read(self, actor: Actor) -> int:
        """Mark every unread notification visible to ``actor`` as read.

        Not atomic: each notification is its own write. If some writes fail the
        rest are still attempted and a ``StoreUnavailable`` is raised at the end;
        calling again converges because ``mark_read`` is idempotent.
        """
        unread = self.store.query(NOTIFICATIONS, self._visible(actor) + [("read", "==", False)])
        marked = 0
        failed = 0
        last_error: Optional[StoreUnavailable] = None
        for doc in unread:
            try:
                if self.mark_read(doc["id"], actor):
                    marked += 1
            except NotFound:
                continue
            except StoreUnavailable as e:
                failed += 1
                last_error = e
                logger.warning("Could not mark notification %s read", doc["id"])
        if last_error is not None:
            raise StoreUnavailable(
                f"{failed} of {len(unread)} notifications could not be marked read",
                details={"marked": marked, "failed": failed},
            ) from last_error
        return marked

    def watch_for(self, actor: Actor) -> Iterator[List[Notification]]:
        """Live feed of the actor's notifications, newest first."""
        for docs in self.store.watch(NOTIFICATIONS, self._visible(actor)):
            notes = [Notification.from_doc(d) for d in docs]
            notes.sort(key=lambda n: n.timestamp or datetime.min, reverse=True)
            yield notes


# -----------------------------
# Room Allocation Manager
# -----------------------------


class RoomAllocationManager:
    """Room lifecycle, student registry and room request approval.

    Responsibilities:
    - Keep Room.status and Room.occupancy consistent with the students holding the room
    - Never let occupancy exceed capacity, even under concurrent assignment
    - Keep at most one room per student and one pending request per student
    """

    def __init__(
        self,
        store: BaseStore,
        notifications: NotificationDispatcher,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.clock = clock or datetime.utcnow

    # -------- Students --------

    def register_student(
        self,
        name: str,
        email: str,
        role: str = ROLE_STUDENT,
        course: Optional[str] = None,
        year: Optional[int] = None,
        phone: Optional[str] = None,
    ) -> Student:
        student = Student(
            id="",
            name=_required(name, "name"),
            email=_required(email, "email").lower(),
            role=role,
            course=course,
            year=year,
            phone=phone,
            created_at=self.clock(),
        )
        student.id = self.store.create(USERS, student.to_doc())
        logger.info("Registered %s %s (%s)", role, student.name, student.id)
        return student

    def get_student(self, student_id: str) -> Student:
        doc = self.store.get(USERS, student_id)
        if doc is None:
            raise NotFound(f"Unknown student: {student_id}", reason="student_not_found")
        return Student.from_doc(doc)

    def list_students(self, role: Optional[str] = None) -> List[Student]:
        predicates = [("role", "==", role)] if role else []
        return [Student.from_doc(d) for d in self.store.query(USERS, predicates, order_by=[("name", ASCENDING)])]

    def update_student(self, student_id: str, **changes) -> Student:
        """Edit profile fields. Room, role, email and request state are managed elsewhere."""
        unknown = set(changes) - set(STUDENT_PROFILE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot edit student fields: {', '.join(sorted(unknown))}", reason="invalid_field")
        student = self.get_student(student_id)
        if "name" in changes:
            changes["name"] = _required(changes["name"], "name")
        year = changes.get("year")
        if year is not None and (isinstance(year, bool) or not isinstance(year, int) or year < 1):
            raise ValidationError("Year must be a positive whole number", reason="invalid_year")
        if changes:
            self.store.update(USERS, student_id, {_camel(k): v for k, v in changes.items()})
            logger.info("Updated profile of %s (%s): %s", student.name, student_id, ", ".join(sorted(changes)))
        return self.get_student(student_id)

    def remove_student(self, student_id: str) -> None:
        """Delete a student, first releasing their room and closing any pending request."""
        student = self.get_student(student_id)
        if student.room_id:
            self.release_room(student_id)
        for req in self.list_requests(status=REQUEST_PENDING, user_id=student_id):
            self.store.update(
                ROOM_REQUESTS,
                req.id,
                {"status": REQUEST_REJECTED, "decidedAt": self.clock(), "note": "Student removed"},
                expect=[("status", "==", REQUEST_PENDING)],
            )
        if not self.store.delete(USERS, student_id, expect=[("roomId", "==", None)]):
            raise Conflict(f"{student.name} was assigned a room during removal", reason="student_has_room")
        logger.info("Removed student %s (%s)", student.name, student_id)

    # -------- Rooms --------

    def create_room(
        self,
        number: str,
        floor: str,
        type: str = "single",
        capacity: int = 1,
        block: Optional[str] = None,
        amenities: Optional[str] = None,
    ) -> Room:
        room = Room(
            id="",
            number=_required(number, "number"),
            floor=_required(floor, "floor"),
            type=type,
            capacity=self._check_capacity(capacity),
            block=block,
            amenities=amenities,
            created_at=self.clock(),
        )
        try:
            room.id = self.store.create(ROOMS, room.to_doc())
        except Conflict as e:
            raise Conflict(f"Room number already exists: {room.number}", reason="duplicate_room_number") from e
        logger.info("Created room %s (%s, capacity %d)", room.number, room.type, room.capacity)
        return room

    @staticmethod
    def _check_capacity(capacity: object) -> int:
        if isinstance(capacity, bool) or not isinstance(capacity, int) or not 1 <= capacity <= MAX_ROOM_CAPACITY:
            raise ValidationError(
                f"Capacity must be a whole number between 1 and {MAX_ROOM_CAPACITY}", reason="invalid_capacity"
            )
        return capacity

    def get_room(self, room_id: str) -> Room:
        doc = self.store.get(ROOMS, room_id)
        if doc is None:
            raise NotFound(f"Unknown room: {room_id}", reason="room_not_found")
        return Room.from_doc(doc)

    def list_rooms(self, status: Optional[str] = None) -> List[Room]:
        predicates = [("status", "==", _choice(status, ROOM_STATUSES, "room_status"))] if status else []
        docs = self.store.query(ROOMS, predicates, order_by=[("floor", ASCENDING), ("number", ASCENDING)])
        return [Room.from_doc(d) for d in docs]

    def occupants(self, room_id: str) -> List[Student]:
        return [Student.from_doc(d) for d in self.store.query(USERS, [("roomId", "==", room_id)])]

    def update_room(self, room_id: str, **changes) -> Room:
        """Edit a room's descriptive fields. Occupancy and status are not editable here."""
        unknown = set(changes) - set(ROOM_EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot edit room fields: {', '.join(sorted(unknown))}", reason="invalid_field")
        room = self.get_room(room_id)
        if "number" in changes:
            changes["number"] = _required(changes["number"], "number")
        if "floor" in changes:
            changes["floor"] = _required(changes["floor"], "floor")
        if "type" in changes:
            _choice(changes["type"], ROOM_TYPES, "room_type")
        if "capacity" in changes:
            self._check_capacity(changes["capacity"])
            if changes["capacity"] < room.occupancy:
                raise ValidationError(
                    f"Room {room.number} has {room.occupancy} occupant(s); capacity cannot drop to {changes['capacity']}",
                    reason="capacity_exceeded",
                )
        try:
            applied = self.store.update(ROOMS, room_id, changes, expect=[("occupancy", "==", room.occupancy)])
        except Conflict as e:
            raise Conflict(f"Room number already exists: {changes.get('number')}", reason="duplicate_room_number") from e
        if not applied:
            raise Conflict(f"Room {room.number} changed while editing; reload and retry", reason="room_changed")
        return self.get_room(room_id)

    def set_room_status(self, room_id: str, status: str) -> Room:
        """Move an empty room between available, maintenance and reserved."""
        _choice(status, MANUAL_ROOM_STATUSES, "room_status")
        room = self.get_room(room_id)
        if room.occupancy > 0:
            raise Conflict(f"Room {room.number} has occupants", reason="room_occupied")
        changes = {"status": status}
        if status == ROOM_AVAILABLE:
            changes["assignedDate"] = None
        if not self.store.update(ROOMS, room_id, changes, expect=[("occupancy", "==", 0)]):
            raise Conflict(f"Room {room.number} has occupants", reason="room_occupied")
        logger.info("Room %s status %s -> %s", room.number, room.status, status)
        return self.get_room(room_id)

    def delete_room(self, room_id: str) -> None:
        room = self.get_room(room_id)
        if room.occupancy > 0 or self.occupants(room_id):
            raise Conflict(f"Cannot delete room {room.number} with assigned students", reason="room_occupied")
        if not self.store.delete(ROOMS, room_id, expect=[("occupancy", "==", 0)]):
            raise Conflict(f"Cannot delete room {room.number} with assigned students", reason="room_occupied")
        logger.info("Deleted room %s", room.number)

    def occupancy_summary(self) -> Dict[str, int]:
        rooms = self.list_rooms()
        summary = {status: 0 for status in ROOM_STATUSES}
        for room in rooms:
            summary[room.status] += 1
        summary["rooms"] = len(rooms)
        summary["beds"] = sum(r.capacity for r in rooms)
        summary["occupied_beds"] = sum(r.occupancy for r in rooms)
        return summary

    def audit_occupancy(self) -> List[str]:
        """Return a description of every occupancy invariant currently violated."""
        problems = []
        rooms = {r.id: r for r in self.list_rooms()}
        counts: Dict[str, int] = {}
        for student in self.list_students():
            if not student.room_id:
                continue
            counts[student.room_id] = counts.get(student.room_id, 0) + 1
            room = rooms.get(student.room_id)
            if room is None:
                problems.append(f"student {student.id} references missing room {student.room_id}")
            elif room.status != ROOM_OCCUPIED:
                problems.append(f"student {student.id} holds room {room.number} with status {room.status}")
        for room in rooms.values():
            count = counts.get(room.id, 0)
            if count > room.capacity:
                problems.append(f"room {room.number} has {count} occupants for capacity {room.capacity}")
            if count != room.occupancy:
                problems.append(f"room {room.number} occupancy {room.occupancy} but {count} occupants")
            if (room.status == ROOM_OCCUPIED) != (count >= 1):
                problems.append(f"room {room.number} is {room.status} with {count} occupants")
        return problems

    # -------- Occupancy transitions --------

    def _take_bed(self, room_id: str) -> Room:
        """Compare-and-set one more occupant onto the room, or raise Conflict."""
        room = self.get_room(room_id)
        if not room.has_vacancy:
            raise Conflict(f"Room {room.number} is no longer available", reason="room_unavailable")
        changes = {"occupancy": room.occupancy + 1, "status": ROOM_OCCUPIED}
        if room.occupancy == 0:
            changes["assignedDate"] = self.clock()
        expect = [("occupancy", "==", room.occupancy), ("status", "==", ROOM_AVAILABLE)]
        if not self.store.update(ROOMS, room.id, changes, expect=expect):
            logger.info("Lost the race for room %s", room.number)
            raise Conflict(f"Room {room.number} is no longer available", reason="room_unavailable")
        return room

    def _free_bed(self, room_id: str) -> Optional[Room]:
        for _ in range(MAX_CAS_ATTEMPTS):
            doc = self.store.get(ROOMS, room_id)
            if doc is None:
                return None
            room = Room.from_doc(doc)
            remaining = max(room.occupancy - 1, 0)
            changes: dict = {"occupancy": remaining}
            if remaining == 0:
                changes.update(status=ROOM_AVAILABLE, assignedDate=None)
            if self.store.update(ROOMS, room_id, changes, expect=[("occupancy", "==", room.occupancy)]):
                return room
        raise Conflict(f"Room {room_id} kept changing; occupancy not updated", reason="room_contended")

    def _occupy(self, student_id: str, room_id: str) -> Room:
        """Ordered writes: Room (compare-and-set), then Student. Undoes the Room write if the Student write loses."""
        student = self.get_student(student_id)
        if student.room_id:
            raise Conflict(f"{student.name} already has a room", reason="student_has_room")
        room = self._take_bed(room_id)
        try:
            placed = self.store.update(USERS, student_id, {"roomId": room_id}, expect=[("roomId", "==", None)])
        except NotFound:
            self._free_bed(room_id)
            raise NotFound(f"Unknown student: {student_id}", reason="student_not_found") from None
        if not placed:
            self._free_bed(room_id)
            raise Conflict(f"{student.name} already has a room", reason="student_has_room")
        logger.info("Assigned room %s to %s", room.number, student.name)
        return room

    def assign_room_direct(self, student_id: str, room_id: str, admin: Optional[Actor] = None) -> Student:
        """Admin assignment bypassing the request flow."""
        room = self._occupy(student_id, room_id)
        self._announce_assignment(student_id, room, admin)
        return self.get_student(student_id)

    def release_room(self, student_id: str) -> Room:
        """Clear the student's room; the room reverts to available once empty."""
        student = self.get_student(student_id)
        if not student.room_id:
            raise Conflict(f"{student.name} has no room", reason="student_has_no_room")
        room_id = student.room_id
        if not self.store.update(USERS, student_id, {"roomId": None}, expect=[("roomId", "==", room_id)]):
            raise Conflict(f"{student.name}'s room changed; reload and retry", reason="student_room_changed")
        try:
            self._free_bed(room_id)
        except HostelError:
            logger.error(
                "Released %s from room %s but could not free the bed; room occupancy needs repair",
                student_id,
                room_id,
                exc_info=True,
            )
            raise
        logger.info("Released room %s from %s", room_id, student.name)
        return self.get_room(room_id)

    def _announce_assignment(self, student_id: str, room: Room, admin: Optional[Actor]) -> None:
        self.notifications.notify(
            student_id,
            "Room Assigned",
            f"You have been assigned to Room {room.number}",
            type="success",
            sender=admin.display_name if admin else None,
            category="room_assigned",
        )

    # -------- Room requests --------

    def _clear_pending(self, student_id: str, request_id: str) -> None:
        """Free the student's pending-request slot if it still holds ``request_id``."""
        try:
            self.store.update(USERS, student_id, {"pendingRequestId": None}, expect=[("pendingRequestId", "==", request_id)])
        except NotFound:
            logger.info("Student %s is gone; pending request %s needs no release", student_id, request_id)

    def get_request(self, request_id: str) -> RoomRequest:
        doc = self.store.get(ROOM_REQUESTS, request_id)
        if doc is None:
            raise NotFound(f"Unknown room request: {request_id}", reason="request_not_found")
        return RoomRequest.from_doc(doc)

    def list_requests(self, status: Optional[str] = None, user_id: Optional[str] = None) -> List[RoomRequest]:
        predicates = []
        if status:
            predicates.append(("status", "==", _choice(status, REQUEST_STATUSES, "request_status")))
        if user_id:
            predicates.append(("userId", "==", user_id))
        docs = self.store.query(ROOM_REQUESTS, predicates, order_by=[("createdAt", ASCENDING)])
        return [RoomRequest.from_doc(d) for d in docs]

    def request_room(self, student_id: str, room_id: str) -> RoomRequest:
        student = self.get_student(student_id)
        if student.room_id:
            raise Conflict(f"{student.name} already has a room", reason="student_has_room")
        if student.pending_request_id or self.list_requests(status=REQUEST_PENDING, user_id=student_id):
            raise Conflict(f"{student.name} already has a pending room request", reason="duplicate_pending_request")
        doc = self.store.get(ROOMS, room_id)
        if doc is None:
            raise NotFound(f"Unknown room: {room_id}", reason="room_not_found")
        room = Room.from_doc(doc)
        if not room.has_vacancy:
            raise NotFound(f"Room {room.number} is not available", reason="room_unavailable")

        req = RoomRequest(
            id=uuid.uuid4().hex,
            user_id=student_id,
            room_id=room_id,
            user_name=student.name,
            room_number=room.number,
            created_at=self.clock(),
        )
        # The student's pendingRequestId slot is claimed first; only one submission can win it.
        claimed = self.store.update(
            USERS,
            student_id,
            {"pendingRequestId": req.id},
            expect=[("pendingRequestId", "==", None), ("roomId", "==", None)],
        )
        if not claimed:
            current = self.get_student(student_id)
            if current.room_id:
                raise Conflict(f"{student.name} already has a room", reason="student_has_room")
            raise Conflict(f"{student.name} already has a pending room request", reason="duplicate_pending_request")
        try:
            self.store.create(ROOM_REQUESTS, dict(req.to_doc(), id=req.id))
        except HostelError:
            self._clear_pending(student_id, req.id)
            raise
        logger.info("%s requested room %s", student.name, room.number)
        self.notifications.notify(
            ROLE_ADMIN,
            "Room Request",
            f"{student.name} requested Room {room.number}",
            sender=student.name,
            category="room_request",
        )
        return req

    def approve_request(self, request_id: str, admin: Optional[Actor] = None) -> RoomRequest:
        """Approve a pending request, re-checking room availability at approval time."""
        req = self.get_request(request_id)
        if req.status != REQUEST_PENDING:
            raise Conflict(f"Room request {request_id} is already {req.status}", reason="request_not_pending")
        room = self._occupy(req.user_id, req.room_id)
        decided = {
            "status": REQUEST_APPROVED,
            "decidedAt": self.clock(),
            "decidedBy": admin.id if admin else None,
        }
        if not self.store.update(ROOM_REQUESTS, request_id, decided, expect=[("status", "==", REQUEST_PENDING)]):
            logger.warning("Room request %s was decided concurrently; room assignment stands", request_id)
        self._clear_pending(req.user_id, request_id)
        self._announce_assignment(req.user_id, room, admin)
        return self.get_request(request_id)

    def reject_request(self, request_id: str, reason: Optional[str] = None, admin: Optional[Actor] = None) -> RoomRequest:
        req = self.get_request(request_id)
        decided = {
            "status": REQUEST_REJECTED,
            "decidedAt": self.clock(),
            "decidedBy": admin.id if admin else None,
            "note": reason,
        }
        if req.status != REQUEST_PENDING or not self.store.update(
            ROOM_REQUESTS, request_id, decided, expect=[("status", "==", REQUEST_PENDING)]
        ):
            raise Conflict(f"Room request {request_id} is no longer pending", reason="request_not_pending")
        self._clear_pending(req.user_id, request_id)
        logger.info("Rejected room request %s", request_id)
        message = f"Your request for Room {req.room_number or req.room_id} was rejected."
        if reason:
            message += f" Reason: {reason}"
        self.notifications.notify(
            req.user_id,
            "Room Request Rejected",
            message,
            type="warning",
            sender=admin.display_name if admin else None,
            category="room_request",
        )
        return self.get_request(request_id)


# -----------------------------
# Fee Ledger
# -----------------------------


class FeeLedger:
    def __init__(
        self,
        store: BaseStore,
        notifications: NotificationDispatcher,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.clock = clock or datetime.utcnow

    def _student(self, student_id: str) -> Student:
        doc = self.store.get(USERS, student_id)
        if doc is None:
            raise NotFound(f"Unknown student: {student_id}", reason="student_not_found")
        return Student.from_doc(doc)

    @staticmethod
    def _check_amount(amount: object) -> float:
        if isinstance(amount, bool) or not isinstance(amount, (int, float)) or not amount > 0:
            raise ValidationError("Amount must be a positive number", reason="invalid_amount")
        return float(amount)

    def create_fee(
        self,
        student_id: str,
        amount: float,
        due_date: object,
        sender: Optional[str] = None,
    ) -> Fee:
        amount = self._check_amount(amount)
        due = _as_datetime(due_date, "due_date")
        student = self._student(student_id)
        fee = Fee(
            id="",
            student_id=student_id,
            amount=amount,
            due_date=due,
            student_name=student.name,
            created_at=self.clock(),
        )
        fee.id = self.store.create(FEES, fee.to_doc())
        logger.info("Created fee %s of %.2f for %s due %s", fee.id, amount, student.name, due.date())
        self.notifications.notify(
            student_id,
            "New Fee Added",
            f"A new fee of ₹{amount:,.2f} has been added to your account with due date {due.date().isoformat()}.",
            sender=sender,
            category="fee_created",
        )
        return fee

    def get_fee(self, fee_id: str) -> Fee:
        doc = self.store.get(FEES, fee_id)
        if doc is None:
            raise NotFound(f"Unknown fee: {fee_id}", reason="fee_not_found")
        return Fee.from_doc(doc)

    def list_fees(self, student_id: Optional[str] = None) -> List[Fee]:
        predicates = [("studentId", "==", student_id)] if student_id else []
        return [Fee.from_doc(d) for d in self.store.query(FEES, predicates, order_by=[("dueDate", ASCENDING)])]

    def mark_paid(self, fee_id: str, payment_details: Optional[str] = None) -> Fee:
        fee = self.get_fee(fee_id)
        if fee.status == FEE_PAID:
            raise Conflict(f"Fee {fee_id} is already paid", reason="fee_already_paid")
        changes = {"status": FEE_PAID, "paymentDate": self.clock(), "paymentDetails": payment_details}
        if not self.store.update(FEES, fee_id, changes, expect=[("status", "in", UNPAID_FEE_STATUSES)]):
            raise Conflict(f"Fee {fee_id} is already paid", reason="fee_already_paid")
        logger.info("Fee %s marked paid", fee_id)
        return self.get_fee(fee_id)

    def compute_overdue(self, fee: Fee, now: Optional[datetime] = None) -> bool:
        return compute_overdue(fee, now or self.clock())

    def totals_by_status(self, student_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, float]:
        """Sum fee amounts into paid/pending/overdue buckets for one student or everyone.

        Overdue is carved out of the unpaid fees, so the three buckets add up to total.
        """
        now = now or self.clock()
        totals = {FEE_PAID: 0.0, FEE_PENDING: 0.0, FEE_OVERDUE: 0.0}
        for fee in self.list_fees(student_id):
            totals[fee_display_status(fee, now)] += fee.amount
        totals["total"] = sum(totals.values())
        return totals

    def _unpaid(self, student_id: Optional[str] = None) -> List[Fee]:
        predicates = [("status", "in", UNPAID_FEE_STATUSES)]
        if student_id:
            predicates.append(("studentId", "==", student_id))
        return [Fee.from_doc(d) for d in self.store.query(FEES, predicates, order_by=[("dueDate", ASCENDING)])]

    def send_reminder(
        self,
        student_id: str,
        message: Optional[str] = None,
        title: str = DEFAULT_REMINDER_TITLE,
        sender: Optional[str] = None,
    ) -> Notification:
        student = self._student(student_id)
        if not self._unpaid(student_id):
            raise Conflict(f"{student.name} has no unpaid fees", reason="no_unpaid_fees")
        note = self.notifications.publish(
            student_id,
            title,
            message or DEFAULT_REMINDER_MESSAGE,
            type="warning",
            sender=sender,
            category="fee_reminder",
        )
        logger.info("Sent fee reminder to %s", student.name)
        return note

    def send_mass_reminder(
        self,
        reminder_filter: Optional[ReminderFilter] = None,
        message: Optional[str] = None,
        title: str = DEFAULT_REMINDER_TITLE,
        sender: Optional[str] = None,
    ) -> List[str]:
        """Remind every matched student who still owes money; returns the ids reminded.

        One notification per student however many unpaid fees they have. Lost
        notifications are logged and left out of the result.
        """
        flt = reminder_filter or ReminderFilter()
        wanted = set(flt.student_ids) if flt.student_ids is not None else None
        now = self.clock()
        students: List[str] = []
        for fee in self._unpaid():
            if wanted is not None and fee.student_id not in wanted:
                continue
            if flt.overdue_only and not compute_overdue(fee, now):
                continue
            if fee.student_id not in students:
                students.append(fee.student_id)
        reminded = []
        for student_id in students:
            note = self.notifications.notify(
                student_id,
                title,
                message or DEFAULT_REMINDER_MESSAGE,
                type="warning",
                sender=sender,
                category="fee_reminder",
            )
            if note is not None:
                reminded.append(student_id)
        logger.info("Mass fee reminder sent to %d of %d student(s)", len(reminded), len(students))
        return reminded


# -----------------------------
# Complaint Workflow
# -----------------------------


class ComplaintWorkflow:
    """Complaint lifecycle: pending -> in-progress -> resolved, with no way back from resolved."""

    def __init__(
        self,
        store: BaseStore,
        notifications: NotificationDispatcher,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.notifications = notifications
        self.clock = clock or datetime.utcnow

    def file_complaint(
        self,
        student_id: str,
        title: str,
        description: str,
        priority: str = "medium",
        room_number: Optional[str] = None,
    ) -> Complaint:
        title = _required(title, "title")
        description = _required(description, "description")
        _choice(priority, tuple(PRIORITY_RANK), "priority")
        doc = self.store.get(USERS, student_id)
        if doc is None:
            raise NotFound(f"Unknown student: {student_id}", reason="student_not_found")
        student = Student.from_doc(doc)
        if room_number is None:
            room_number = "Not assigned"
            if student.room_id:
                room_doc = self.store.get(ROOMS, student.room_id)
                if room_doc is not None:
                    room_number = room_doc["number"]

        complaint = Complaint(
            id="",
            student_id=student_id,
            title=title,
            description=description,
            priority=priority,
            room_number=room_number,
            student_name=student.name,
            created_at=self.clock(),
        )
        complaint.id = self.store.create(COMPLAINTS, complaint.to_doc())
        logger.info("Complaint %s filed by %s (%s priority)", complaint.id, student.name, priority)
        self.notifications.notify(
            ROLE_ADMIN,
            "New Complaint",
            f"New complaint: {title}",
            type="warning" if priority == "high" else "info",
            sender=student.name,
            category="new_complaint",
        )
        return complaint

    def get_complaint(self, complaint_id: str) -> Complaint:
        doc = self.store.get(COMPLAINTS, complaint_id)
        if doc is None:
            raise NotFound(f"Unknown complaint: {complaint_id}", reason="complaint_not_found")
        return Complaint.from_doc(doc)

    def _open(self, complaint_id: str) -> Complaint:
        complaint = self.get_complaint(complaint_id)
        if complaint.status == COMPLAINT_RESOLVED:
            raise Conflict(f"Complaint {complaint_id} is already resolved", reason="complaint_resolved")
        return complaint

    def _transition(self, complaint: Complaint, changes: dict) -> Complaint:
        if not self.store.update(
            COMPLAINTS, complaint.id, changes, expect=[("status", "in", OPEN_COMPLAINT_STATUSES)]
        ):
            raise Conflict(f"Complaint {complaint.id} is already resolved", reason="complaint_resolved")
        return self.get_complaint(complaint.id)

    def assign(self, complaint_id: str, assignee_name: str, admin: Optional[Actor] = None) -> Complaint:
        assignee_name = _required(assignee_name, "assignee")
        complaint = self._open(complaint_id)
        updated = self._transition(complaint, {"status": COMPLAINT_IN_PROGRESS, "assignedTo": assignee_name})
        logger.info("Complaint %s assigned to %s", complaint_id, assignee_name)
        self.notifications.notify(
            complaint.student_id,
            "Complaint Update",
            f'Your complaint regarding "{complaint.title}" has been assigned to {assignee_name} '
            "and is now being processed.",
            sender=admin.display_name if admin else None,
            category="complaint_update",
        )
        return updated

    def set_priority(self, complaint_id: str, priority: str) -> Complaint:
        _choice(priority, tuple(PRIORITY_RANK), "priority")
        complaint = self._open(complaint_id)
        return self._transition(complaint, {"priority": priority})

    def resolve(self, complaint_id: str, response_note: Optional[str] = None, admin: Optional[Actor] = None) -> Complaint:
        complaint = self._open(complaint_id)
        note = (response_note or "").strip()
        updated = self._transition(
            complaint,
            {"status": COMPLAINT_RESOLVED, "resolvedAt": self.clock(), "notes": note or "Issue resolved"},
        )
        logger.info("Complaint %s resolved", complaint_id)
        message = f'Your complaint regarding "{complaint.title}" has been resolved.'
        if note:
            message += f" Note: {note}"
        self.notifications.notify(
            complaint.student_id,
            "Complaint Resolved",
            message,
            type="success",
            sender=admin.display_name if admin else None,
            category="complaint_update",
        )
        return updated

    def admin_queue(self, status: Optional[str] = None) -> List[Complaint]:
        predicates = [("status", "==", _choice(status, COMPLAINT_STATUSES, "complaint_status"))] if status else []
        return rank_complaints(Complaint.from_doc(d) for d in self.store.query(COMPLAINTS, predicates))

    def complaints_for(self, student_id: str) -> List[Complaint]:
        docs = self.store.query(COMPLAINTS, [("studentId", "==", student_id)], order_by=[("createdAt", DESCENDING)])
        return [Complaint.from_doc(d) for d in docs]

    def stats(self) -> Dict[str, int]:
        """Counts recomputed from the stored status and priority of every complaint."""
        counts = {"total": 0, "pending": 0, "in_progress": 0, "resolved": 0, "high_priority": 0}
        for doc in self.store.query(COMPLAINTS):
            complaint = Complaint.from_doc(doc)
            counts["total"] += 1
            counts[complaint.status.replace("-", "_")] += 1
            if complaint.priority == "high":
                counts["high_priority"] += 1
        return counts


# -----------------------------
# Facade
# -----------------------------


class HostelSystem:
    """Composes the four managers over one Entity Store.

    The store is injected; without one an ``InMemoryStore`` is used.
    """

    def __init__(self, store: Optional[BaseStore] = None, clock: Optional[Clock] = None) -> None:
        self.store: BaseStore = store or InMemoryStore()
        self.clock = clock or datetime.utcnow
        self.notifications = NotificationDispatcher(self.store, self.clock)
        self.rooms = RoomAllocationManager(self.store, self.notifications, self.clock)
        self.fees = FeeLedger(self.store, self.notifications, self.clock)
        self.complaints = ComplaintWorkflow(self.store, self.notifications, self.clock)
