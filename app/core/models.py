from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"
    UNKNOWN = "unknown"


class Intent(str, Enum):
    ATTENDANCE = "attendance"
    SCHEDULE = "schedule"
    TEACHER = "teacher"
    CLASSES = "classes"
    EXCUSE = "excuse"
    HELP = "help"
    UNKNOWN = "unknown"


# =========================
# Snapshot (cached per user)
# =========================
class _Frozen(BaseModel):
    # student numbers and years are integers in some schemas
    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)


class ClassSummary(_Frozen):
    id: int
    name: Optional[str] = None
    class_code: Optional[str] = None
    course: Optional[str] = None
    section: Optional[str] = None
    subject: Optional[str] = None
    schedule_time: Optional[str] = None
    schedule_days: list[str] = Field(default_factory=list)
    room: Optional[str] = None
    academic_year: Optional[str] = None
    semester: Optional[str] = None


class AttendanceMark(_Frozen):
    id: int
    status: str
    marked_at: Optional[str] = None
    method: str = "manual"


class ExcuseSummary(_Frozen):
    id: int
    status: str
    reason: Optional[str] = None
    submitted_at: Optional[str] = None
    attendance_session_id: Optional[int] = None


class StudentStats(_Frozen):
    total_classes: int = 0
    recent_attendance_count: int = 0
    pending_requests: int = 0


class StudentProfile(_Frozen):
    id: int
    student_number: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    year: Optional[str] = None
    course: Optional[str] = None
    section: Optional[str] = None
    class_id: Optional[int] = None
    classes: list[ClassSummary] = Field(default_factory=list)
    recent_attendance: list[AttendanceMark] = Field(default_factory=list)
    recent_requests: list[ExcuseSummary] = Field(default_factory=list)
    stats: StudentStats = Field(default_factory=StudentStats)


class TeacherProfile(_Frozen):
    id: int
    user_id: int
    employee_number: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    classes: list[ClassSummary] = Field(default_factory=list)

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part).strip()


class AdminProfile(_Frozen):
    id: int
    name: Optional[str] = None
    email: Optional[str] = None


class UserSnapshot(_Frozen):
    user_id: int
    name: str = "User"
    email: Optional[str] = None
    role: Role = Role.UNKNOWN
    student: Optional[StudentProfile] = None
    teacher: Optional[TeacherProfile] = None
    admin: Optional[AdminProfile] = None
    built_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def student_id(self) -> Optional[int]:
        return self.student.id if self.student else None

    @property
    def teacher_user_id(self) -> Optional[int]:
        return self.teacher.user_id if self.teacher else None


# =========================
# Retrieval plan and results
# =========================
@dataclass(frozen=True)
class TimeWindow:
    label: str
    start: datetime
    end: datetime

    def as_dict(self) -> dict[str, str]:
        return {"label": self.label, "start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class RoleScope:
    """Identity restriction applied inside every query.

    ``student_ids`` of ``None`` means unrestricted (still row-capped); an
    empty tuple means the caller may see nobody and no query is issued.
    """

    role: Role
    student_ids: Optional[tuple[int, ...]]
    constraint: dict[str, Any]
    description: str
    row_cap: int

    @property
    def is_empty(self) -> bool:
        return self.student_ids is not None and len(self.student_ids) == 0


@dataclass(frozen=True)
class RetrievalPlan:
    intent: Intent
    datasets: tuple[str, ...]
    time_window: Optional[TimeWindow]
    status_filter: Optional[str]
    role_constraints: dict[str, Any]
    row_cap: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent.value,
            "datasets": list(self.datasets),
            "time_window": self.time_window.as_dict() if self.time_window else None,
            "status_filter": self.status_filter,
            "role_constraints": dict(self.role_constraints),
            "row_cap": self.row_cap,
        }


@dataclass(frozen=True)
class AttendanceAggregate:
    counts: dict[str, int]
    total: int
    rate: float
    risk: str

    def as_dict(self) -> dict[str, Any]:
        return {**self.counts, "total": self.total, "rate": self.rate, "risk": self.risk}


@dataclass(frozen=True)
class AttendanceResult:
    records: tuple[dict[str, Any], ...]
    aggregate: AttendanceAggregate
    scope: str
    kind: str = "attendance"


@dataclass(frozen=True)
class ClassListResult:
    classes: tuple[dict[str, Any], ...]
    scope: str
    kind: str = "classes"


@dataclass(frozen=True)
class TeacherDirectoryResult:
    teachers: tuple[dict[str, Any], ...]
    scope: str
    kind: str = "teachers"


@dataclass(frozen=True)
class ExcuseResult:
    records: tuple[dict[str, Any], ...]
    counts: dict[str, int]
    total: int
    scope: str
    kind: str = "excuses"


@dataclass(frozen=True)
class GuidanceResult:
    capabilities: tuple[str, ...]
    scope: str
    kind: str = "guidance"


@dataclass(frozen=True)
class RetrievalError:
    error: str
    kind: str = "error"


RetrievalResult = Union[
    AttendanceResult,
    ClassListResult,
    TeacherDirectoryResult,
    ExcuseResult,
    GuidanceResult,
    RetrievalError,
]


@dataclass(frozen=True)
class RetrievalOutcome:
    intent: Intent
    plan: RetrievalPlan
    result: RetrievalResult

    @property
    def failed(self) -> bool:
        return isinstance(self.result, RetrievalError)


@dataclass(frozen=True)
class StreamFragment:
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class ChatTurn:
    role: str
    content: str
