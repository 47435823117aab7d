from __future__ import annotations

import asyncio
import calendar
import logging
import re
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from app.core.intent import classify, normalize_question
from app.core.metrics import metrics
from app.core.models import (
    AttendanceAggregate,
    AttendanceResult,
    ClassListResult,
    ExcuseResult,
    GuidanceResult,
    Intent,
    RetrievalError,
    RetrievalOutcome,
    RetrievalPlan,
    RetrievalResult,
    Role,
    RoleScope,
    TeacherDirectoryResult,
    TimeWindow,
    UserSnapshot,
)
from app.core.settings import Settings
from app.core.store import AcademicStore

logger = logging.getLogger(__name__)

ATTENDANCE_STATUSES = ("present", "absent", "late", "excused")
EXCUSE_STATUSES = ("pending", "approved", "rejected")

_DATASETS: dict[Intent, tuple[str, ...]] = {
    Intent.ATTENDANCE: ("attendance_records",),
    Intent.SCHEDULE: ("class_models", "class_student"),
    Intent.CLASSES: ("class_models", "class_student"),
    Intent.TEACHER: ("teachers", "class_models"),
    Intent.EXCUSE: ("excuse_requests",),
    Intent.HELP: (),
    Intent.UNKNOWN: (),
}

# Only these intents read rows keyed by student identity.
_STUDENT_SCOPED = {Intent.ATTENDANCE, Intent.EXCUSE}

_WINDOW_PHRASES = (
    "this semester",
    "last month",
    "this month",
    "last week",
    "this week",
    "this year",
    "yesterday",
    "today",
)
_WINDOW_PATTERN = re.compile(r"\b(" + "|".join(re.escape(phrase) for phrase in _WINDOW_PHRASES) + r")\b")

_ATTENDANCE_STATUS_WORDS = (
    ("excused", "excused"),
    ("absent", "absent"),
    ("absence", "absent"),
    ("absences", "absent"),
    ("missed", "absent"),
    ("late", "late"),
    ("tardy", "late"),
    ("present", "present"),
)
_EXCUSE_STATUS_WORDS = (
    ("pending", "pending"),
    ("waiting", "pending"),
    ("approved", "approved"),
    ("accepted", "approved"),
    ("rejected", "rejected"),
    ("denied", "rejected"),
    ("declined", "rejected"),
)

_NAMED_STUDENT_LIMIT = 5
_NAME_TOKEN = re.compile(r"[A-Za-z][A-Za-z\-]*")
# capitalised words that open or pad a question rather than name someone
_NOT_NAMES = {
    "i", "my", "me", "we", "our", "what", "when", "where", "which", "who", "whose", "why", "how",
    "is", "are", "was", "were", "do", "does", "did", "can", "could", "show", "list", "give", "tell",
    "please", "the", "a", "an", "any", "all", "attendance", "excuse", "excuses", "today", "yesterday",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
}


def name_phrase(question: str) -> str:
    """Capitalised words of ``question`` as a padded, lower-cased phrase.

    Returns an empty string when nothing in the question reads like a name.
    """
    words = []
    for token in _NAME_TOKEN.findall(question or ""):
        if len(token) < 2 or not token[0].isupper() or token.lower() in _NOT_NAMES:
            continue
        words.append(token.lower())
    if not words:
        return ""
    return " " + " ".join(words) + " "


_CAPABILITIES: dict[Role, tuple[str, ...]] = {
    Role.STUDENT: (
        "your attendance rate and recent attendance records",
        "your class schedule and rooms",
        "the classes you are enrolled in",
        "who teaches your classes",
        "the status of your excuse requests",
    ),
    Role.TEACHER: (
        "attendance of students in your classes",
        "your teaching schedule",
        "the classes you handle",
        "excuse requests from students in your classes",
    ),
    Role.ADMIN: (
        "attendance across all students",
        "active classes and schedules",
        "the teacher directory",
        "excuse requests across all students",
    ),
}


# =========================
# Time windows
# =========================
def _day_start(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _day_end(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=0)


def _month_bounds(year: int, month: int) -> tuple[datetime, datetime]:
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, 1), datetime(year, month, last_day, 23, 59, 59)


def resolve_window(label: str, now: datetime) -> TimeWindow:
    today = _day_start(now)
    if label == "today":
        return TimeWindow(label, today, _day_end(now))
    if label == "yesterday":
        day = today - timedelta(days=1)
        return TimeWindow(label, day, _day_end(day))
    if label in ("this week", "last week"):
        monday = today - timedelta(days=today.weekday())
        if label == "last week":
            monday -= timedelta(days=7)
        return TimeWindow(label, monday, _day_end(monday + timedelta(days=6)))
    if label == "this month":
        start, end = _month_bounds(now.year, now.month)
        return TimeWindow(label, start, end)
    if label == "last month":
        year, month = (now.year - 1, 12) if now.month == 1 else (now.year, now.month - 1)
        start, end = _month_bounds(year, month)
        return TimeWindow(label, start, end)
    if label == "this semester":
        if now.month <= 6:
            return TimeWindow(label, datetime(now.year, 1, 1), datetime(now.year, 6, 30, 23, 59, 59))
        return TimeWindow(label, datetime(now.year, 7, 1), datetime(now.year, 12, 31, 23, 59, 59))
    if label == "this year":
        return TimeWindow(label, datetime(now.year, 1, 1), datetime(now.year, 12, 31, 23, 59, 59))
    raise ValueError(f"unknown time window: {label}")


def extract_time_window(question: str, now: datetime) -> Optional[TimeWindow]:
    match = _WINDOW_PATTERN.search(normalize_question(question))
    if not match:
        return None
    return resolve_window(match.group(1), now)


def default_window(intent: Intent, now: datetime) -> Optional[TimeWindow]:
    if intent == Intent.ATTENDANCE:
        return resolve_window("this month", now)
    if intent == Intent.EXCUSE:
        return resolve_window("this semester", now)
    return None


def parse_status_filter(question: str, intent: Intent) -> Optional[str]:
    if intent == Intent.ATTENDANCE:
        table = _ATTENDANCE_STATUS_WORDS
    elif intent == Intent.EXCUSE:
        table = _EXCUSE_STATUS_WORDS
    else:
        return None
    words = set(re.findall(r"[a-z]+", normalize_question(question)))
    for word, status in table:
        if word in words:
            return status
    return None


# =========================
# Aggregates
# =========================
def risk_tier(rate: float) -> str:
    if rate < 75:
        return "critical"
    if rate < 85:
        return "at_risk"
    if rate < 90:
        return "warning"
    return "good"


def attendance_aggregate(counts: dict[str, int]) -> AttendanceAggregate:
    merged = {status: 0 for status in ATTENDANCE_STATUSES}
    for status, value in counts.items():
        merged[status] = merged.get(status, 0) + int(value)
    total = sum(merged.values())
    if total <= 0:
        return AttendanceAggregate(counts=merged, total=0, rate=0.0, risk="no_data")
    rate = round(100.0 * (merged["present"] + merged["late"]) / total, 1)
    return AttendanceAggregate(counts=merged, total=total, rate=rate, risk=risk_tier(rate))


def excuse_counts(counts: dict[str, int]) -> dict[str, int]:
    merged = {status: 0 for status in EXCUSE_STATUSES}
    for status, value in counts.items():
        merged[status] = merged.get(status, 0) + int(value)
    return merged


def capabilities_for(role: Role) -> tuple[str, ...]:
    return _CAPABILITIES.get(role, _CAPABILITIES[Role.ADMIN])


# =========================
# Planner
# =========================
class RetrievalPlanner:
    """Turns a question into a role-scoped plan and runs it against storage.

    Scope is resolved before any query is built and travels into the SQL as
    an ``IN`` clause; results are never filtered after the fact. Storage
    failures end the retrieval with a ``RetrievalError`` and no partial data.
    """

    def __init__(
        self,
        store: AcademicStore,
        settings: Settings,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._now = now or datetime.now

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args),
            timeout=self.settings.chat_storage_timeout_sec,
        )

    def row_cap_for(self, role: Role) -> int:
        if role == Role.STUDENT:
            return self.settings.chat_student_row_cap
        return self.settings.chat_row_cap

    async def resolve_scope(self, snapshot: UserSnapshot, intent: Intent, question: str = "") -> RoleScope:
        role = snapshot.role
        cap = self.row_cap_for(role)
        if role == Role.STUDENT:
            student_id = snapshot.student_id
            ids = (student_id,) if student_id is not None else ()
            return RoleScope(role, ids, {"student_id": student_id}, "for you", cap)
        if role == Role.TEACHER:
            teacher_user_id = snapshot.teacher_user_id
            constraint: dict[str, Any] = {"teacher_user_id": teacher_user_id}
            if intent not in _STUDENT_SCOPED:
                # classes and directory lookups key on the teacher directly
                return RoleScope(role, None, constraint, "for your classes", cap)
            ids: tuple[int, ...] = ()
            if teacher_user_id is not None:
                ids = tuple(await self._call(self.store.enrolled_student_ids, teacher_user_id))
            constraint["student_count"] = len(ids)
            scope = RoleScope(role, ids, constraint, "for students in your classes", cap)
        else:
            scope = RoleScope(role, None, {}, "for all students", cap)
            if intent not in _STUDENT_SCOPED:
                return scope
        if scope.is_empty:
            return scope
        return await self._narrow_to_named(scope, question)

    async def _narrow_to_named(self, scope: RoleScope, question: str) -> RoleScope:
        phrase = name_phrase(question)
        if not phrase:
            return scope
        rows = await self._call(self.store.students_named, phrase, scope.student_ids, _NAMED_STUDENT_LIMIT)
        full_matches = [row for row in rows if f" {str(row['name']).lower()} " in phrase]
        rows = full_matches or rows
        if not rows:
            return scope
        ids = tuple(int(row["id"]) for row in rows)
        names = [str(row["name"]) for row in rows]
        constraint = dict(scope.constraint, named_students=names)
        label = ", ".join(f'"{name}"' for name in names)
        description = f"for student {label}" if len(names) == 1 else f"for students {label}"
        return RoleScope(scope.role, ids, constraint, description, scope.row_cap)

    def build_plan(
        self,
        intent: Intent,
        question: str,
        scope: RoleScope,
    ) -> RetrievalPlan:
        window = None
        if intent in _STUDENT_SCOPED:
            now = self._now()
            window = extract_time_window(question, now) or default_window(intent, now)
        return RetrievalPlan(
            intent=intent,
            datasets=_DATASETS[intent],
            time_window=window,
            status_filter=parse_status_filter(question, intent),
            role_constraints=dict(scope.constraint),
            row_cap=scope.row_cap,
        )

    async def plan_and_execute(self, question: str, snapshot: UserSnapshot) -> RetrievalOutcome:
        intent = classify(question)
        started = time.perf_counter()
        plan = RetrievalPlan(
            intent=intent,
            datasets=_DATASETS[intent],
            time_window=None,
            status_filter=None,
            role_constraints={},
            row_cap=self.row_cap_for(snapshot.role),
        )
        try:
            scope = await self.resolve_scope(snapshot, intent, question)
            plan = self.build_plan(intent, question, scope)
            result = await self._execute(plan, scope, snapshot)
        except Exception as exc:
            reason = str(exc) or type(exc).__name__
            logger.error(
                "retrieval failed user_id=%s role=%s intent=%s: %s",
                snapshot.user_id,
                snapshot.role.value,
                intent.value,
                reason,
            )
            metrics.inc("chat_retrieval_total", {"intent": intent.value, "result": "error"})
            return RetrievalOutcome(intent=intent, plan=plan, result=RetrievalError(error=reason))
        took_ms = int((time.perf_counter() - started) * 1000)
        metrics.observe_ms("chat_retrieval_latency_ms", took_ms, {"intent": intent.value})
        metrics.inc("chat_retrieval_total", {"intent": intent.value, "result": "ok"})
        return RetrievalOutcome(intent=intent, plan=plan, result=result)

    async def _execute(self, plan: RetrievalPlan, scope: RoleScope, snapshot: UserSnapshot) -> RetrievalResult:
        if plan.intent == Intent.ATTENDANCE:
            return await self._attendance(plan, scope)
        if plan.intent == Intent.EXCUSE:
            return await self._excuses(plan, scope)
        if plan.intent in (Intent.SCHEDULE, Intent.CLASSES):
            return await self._classes(plan, scope, snapshot)
        if plan.intent == Intent.TEACHER:
            return await self._teachers(plan, scope, snapshot)
        return GuidanceResult(capabilities=capabilities_for(snapshot.role), scope=scope.description)

    async def _attendance(self, plan: RetrievalPlan, scope: RoleScope) -> AttendanceResult:
        if scope.is_empty:
            metrics.inc("chat_retrieval_empty_scope_total", {"intent": plan.intent.value})
            return AttendanceResult(records=(), aggregate=attendance_aggregate({}), scope=scope.description)
        counts = await self._call(self.store.attendance_status_counts, scope.student_ids, plan.time_window)
        records = await self._call(
            self.store.attendance_records,
            scope.student_ids,
            plan.time_window,
            plan.status_filter,
            plan.row_cap,
        )
        return AttendanceResult(
            records=tuple(records[: plan.row_cap]),
            aggregate=attendance_aggregate(counts),
            scope=scope.description,
        )

    async def _excuses(self, plan: RetrievalPlan, scope: RoleScope) -> ExcuseResult:
        if scope.is_empty:
            metrics.inc("chat_retrieval_empty_scope_total", {"intent": plan.intent.value})
            return ExcuseResult(records=(), counts=excuse_counts({}), total=0, scope=scope.description)
        counts = excuse_counts(
            await self._call(self.store.excuse_status_counts, scope.student_ids, plan.time_window)
        )
        records = await self._call(
            self.store.excuse_records,
            scope.student_ids,
            plan.time_window,
            plan.status_filter,
            plan.row_cap,
        )
        return ExcuseResult(
            records=tuple(records[: plan.row_cap]),
            counts=counts,
            total=sum(counts.values()),
            scope=scope.description,
        )

    async def _classes(self, plan: RetrievalPlan, scope: RoleScope, snapshot: UserSnapshot) -> ClassListResult:
        cap = plan.row_cap
        if scope.role == Role.STUDENT:
            student_id = snapshot.student_id
            if student_id is None:
                return ClassListResult(classes=(), scope=scope.description)
            classes = await self._call(self.store.student_classes, student_id, cap)
            class_id = snapshot.student.class_id if snapshot.student else None
            if not classes and class_id:
                classes = await self._call(self.store.classes_by_id, class_id)
        elif scope.role == Role.TEACHER:
            teacher_user_id = snapshot.teacher_user_id
            if teacher_user_id is None:
                return ClassListResult(classes=(), scope=scope.description)
            classes = await self._call(self.store.teacher_classes, teacher_user_id, cap, True)
        else:
            classes = await self._call(self.store.active_classes, cap)
        return ClassListResult(classes=tuple(classes[:cap]), scope=scope.description)

    async def _teachers(
        self, plan: RetrievalPlan, scope: RoleScope, snapshot: UserSnapshot
    ) -> TeacherDirectoryResult:
        cap = plan.row_cap
        if scope.role == Role.STUDENT:
            student_id = snapshot.student_id
            if student_id is None:
                return TeacherDirectoryResult(teachers=(), scope=scope.description)
            teachers = await self._call(self.store.teachers_for_student, student_id, cap)
        elif scope.role == Role.TEACHER:
            teacher_user_id = snapshot.teacher_user_id
            if teacher_user_id is None:
                return TeacherDirectoryResult(teachers=(), scope=scope.description)
            teachers = await self._call(self.store.teacher_record, teacher_user_id)
        else:
            teachers = await self._call(self.store.teachers, cap)
        return TeacherDirectoryResult(teachers=tuple(teachers[:cap]), scope=scope.description)
