from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import pymysql

from app.core.db import Database, parse_json
from app.core.models import TimeWindow

logger = logging.getLogger(__name__)

_CLASS_COLUMNS = (
    "cm.id, cm.name, cm.class_code, cm.subject, cm.course, cm.section, "
    "cm.schedule_time, cm.schedule_days, cm.room, cm.academic_year, cm.semester"
)
_TEACHER_COLUMNS = (
    "t.id, t.user_id, t.teacher_id AS employee_number, t.first_name, t.last_name, "
    "t.email, t.department, t.position"
)


class EmptyScopeError(ValueError):
    """Raised when a query would run with an empty identity scope."""


def parse_schedule_days(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(item) for item in value]
    decoded = parse_json(value)
    if isinstance(decoded, list):
        return [str(item) for item in decoded]
    if isinstance(value, str) and value.strip():
        return [value.strip()]
    return []


def scope_clause(column: str, student_ids: Optional[Sequence[int]]) -> tuple[str, tuple]:
    if student_ids is None:
        return "", ()
    ids = tuple(int(item) for item in student_ids)
    if not ids:
        raise EmptyScopeError(f"empty scope for {column}")
    placeholders = ", ".join(["%s"] * len(ids))
    return f"{column} IN ({placeholders})", ids


def _where(clauses: List[tuple[str, tuple]]) -> tuple[str, tuple]:
    parts = [sql for sql, _ in clauses if sql]
    params: tuple = ()
    for sql, values in clauses:
        if sql:
            params += values
    if not parts:
        return "", ()
    return " WHERE " + " AND ".join(parts), params


def _window_clause(column: str, window: Optional[TimeWindow]) -> tuple[str, tuple]:
    if window is None:
        return "", ()
    return f"{column} BETWEEN %s AND %s", (window.start, window.end)


def _class_row(row: Dict[str, Any]) -> Dict[str, Any]:
    row = dict(row)
    row["schedule_days"] = parse_schedule_days(row.get("schedule_days"))
    return row


class AcademicStore:
    """Capped, parameterised reads over the attendance schema.

    Identity scoping is part of each statement's WHERE clause; callers pass
    the resolved ``student_ids`` (``None`` for unrestricted).
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # -- snapshot building -------------------------------------------------

    def get_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            "SELECT id, name, email, role FROM users WHERE id=%s LIMIT 1",
            (user_id,),
        )

    def get_student_by_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            "SELECT id, student_id AS student_number, name, email, phone, year, course, section, class_id "
            "FROM students WHERE user_id=%s LIMIT 1",
            (user_id,),
        )

    def get_teacher_by_user(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            "SELECT t.id, t.user_id, t.teacher_id AS employee_number, t.first_name, t.last_name, "
            "t.email, t.phone, t.department, t.position FROM teachers t WHERE t.user_id=%s LIMIT 1",
            (user_id,),
        )

    def is_admin(self, user_id: int) -> bool:
        try:
            row = self.db.fetch_one("SELECT 1 AS hit FROM admins WHERE user_id=%s LIMIT 1", (user_id,))
        except pymysql.err.ProgrammingError as exc:
            # deployments without an admins table rely on users.role only
            logger.debug("admins lookup skipped: %s", exc)
            return False
        return bool(row)

    def student_classes(self, student_id: int, limit: int) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all(
            f"SELECT {_CLASS_COLUMNS} FROM class_models cm "
            "JOIN class_student cs ON cs.class_model_id = cm.id "
            "WHERE cs.student_id=%s AND cs.status='enrolled' "
            "ORDER BY cm.name LIMIT %s",
            (student_id, limit),
        )
        return [_class_row(row) for row in rows]

    def recent_attendance(self, student_id: int, limit: int) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            "SELECT id, status, marked_at, COALESCE(method, 'manual') AS method "
            "FROM attendance_records WHERE student_id=%s ORDER BY marked_at DESC LIMIT %s",
            (student_id, limit),
        )

    def recent_excuses(self, student_id: int, limit: int) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            "SELECT id, status, reason, COALESCE(submitted_at, created_at) AS submitted_at, attendance_session_id "
            "FROM excuse_requests WHERE student_id=%s ORDER BY created_at DESC LIMIT %s",
            (student_id, limit),
        )

    def teacher_classes(self, teacher_user_id: int, limit: int, active_only: bool = True) -> List[Dict[str, Any]]:
        active = " AND COALESCE(cm.is_active, 1) = 1" if active_only else ""
        rows = self.db.fetch_all(
            f"SELECT {_CLASS_COLUMNS} FROM class_models cm "
            f"WHERE cm.teacher_id=%s{active} ORDER BY cm.schedule_time LIMIT %s",
            (teacher_user_id, limit),
        )
        return [_class_row(row) for row in rows]

    # -- scope resolution --------------------------------------------------

    def enrolled_student_ids(self, teacher_user_id: int) -> List[int]:
        rows = self.db.fetch_all(
            "SELECT DISTINCT cs.student_id FROM class_student cs "
            "JOIN class_models cm ON cm.id = cs.class_model_id "
            "WHERE cm.teacher_id=%s AND cs.status='enrolled' ORDER BY cs.student_id",
            (teacher_user_id,),
        )
        seen: list[int] = []
        for row in rows:
            student_id = int(row["student_id"])
            if student_id not in seen:
                seen.append(student_id)
        return seen

    def students_named(
        self, phrase: str, student_ids: Optional[Sequence[int]], limit: int
    ) -> List[Dict[str, Any]]:
        """Students whose full or first name appears as whole words in ``phrase``.

        ``phrase`` is lower-cased and padded with spaces; matching stays inside
        the caller's scope.
        """
        if not phrase.strip():
            return []
        where, params = _where(
            [
                scope_clause("s.id", student_ids),
                (
                    "(LOCATE(CONCAT(' ', LOWER(s.name), ' '), %s) > 0 "
                    "OR LOCATE(CONCAT(' ', LOWER(SUBSTRING_INDEX(s.name, ' ', 1)), ' '), %s) > 0)",
                    (phrase, phrase),
                ),
            ]
        )
        return self.db.fetch_all(
            f"SELECT s.id, s.name FROM students s{where} ORDER BY s.id LIMIT %s",
            params + (limit,),
        )

    # -- attendance --------------------------------------------------------

    def attendance_status_counts(
        self, student_ids: Optional[Sequence[int]], window: Optional[TimeWindow]
    ) -> Dict[str, int]:
        where, params = _where(
            [scope_clause("ar.student_id", student_ids), _window_clause("ar.marked_at", window)]
        )
        rows = self.db.fetch_all(
            f"SELECT ar.status, COUNT(*) AS total FROM attendance_records ar{where} GROUP BY ar.status",
            params,
        )
        return {str(row["status"]).lower(): int(row["total"]) for row in rows if row.get("status")}

    def attendance_records(
        self,
        student_ids: Optional[Sequence[int]],
        window: Optional[TimeWindow],
        status: Optional[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        clauses = [scope_clause("ar.student_id", student_ids), _window_clause("ar.marked_at", window)]
        if status:
            clauses.append(("ar.status=%s", (status,)))
        where, params = _where(clauses)
        return self.db.fetch_all(
            "SELECT ar.id, ar.student_id, s.name AS student_name, cm.name AS class_name, "
            "ar.status, ar.marked_at FROM attendance_records ar "
            "JOIN students s ON s.id = ar.student_id "
            "LEFT JOIN attendance_sessions sess ON sess.id = ar.attendance_session_id "
            "LEFT JOIN class_models cm ON cm.id = sess.class_id"
            f"{where} ORDER BY ar.marked_at DESC LIMIT %s",
            params + (limit,),
        )

    # -- classes and schedule ---------------------------------------------

    def classes_by_id(self, class_id: int) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all(f"SELECT {_CLASS_COLUMNS} FROM class_models cm WHERE cm.id=%s LIMIT 1", (class_id,))
        return [_class_row(row) for row in rows]

    def active_classes(self, limit: int) -> List[Dict[str, Any]]:
        rows = self.db.fetch_all(
            f"SELECT {_CLASS_COLUMNS} FROM class_models cm "
            "WHERE COALESCE(cm.is_active, 1) = 1 ORDER BY cm.name LIMIT %s",
            (limit,),
        )
        return [_class_row(row) for row in rows]

    # -- teacher directory -------------------------------------------------

    def teachers_for_student(self, student_id: int, limit: int) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            f"SELECT DISTINCT {_TEACHER_COLUMNS}, cm.name AS class_name FROM teachers t "
            "JOIN class_models cm ON cm.teacher_id = t.user_id "
            "JOIN class_student cs ON cs.class_model_id = cm.id "
            "WHERE cs.student_id=%s AND cs.status='enrolled' ORDER BY t.last_name LIMIT %s",
            (student_id, limit),
        )

    def teacher_record(self, teacher_user_id: int) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            f"SELECT {_TEACHER_COLUMNS} FROM teachers t WHERE t.user_id=%s LIMIT 1",
            (teacher_user_id,),
        )

    def teachers(self, limit: int) -> List[Dict[str, Any]]:
        return self.db.fetch_all(
            f"SELECT {_TEACHER_COLUMNS} FROM teachers t ORDER BY t.last_name LIMIT %s",
            (limit,),
        )

    # -- excuses -----------------------------------------------------------

    def excuse_status_counts(
        self, student_ids: Optional[Sequence[int]], window: Optional[TimeWindow]
    ) -> Dict[str, int]:
        where, params = _where(
            [
                scope_clause("er.student_id", student_ids),
                _window_clause("COALESCE(er.submitted_at, er.created_at)", window),
            ]
        )
        rows = self.db.fetch_all(
            f"SELECT er.status, COUNT(*) AS total FROM excuse_requests er{where} GROUP BY er.status",
            params,
        )
        return {str(row["status"]).lower(): int(row["total"]) for row in rows if row.get("status")}

    def excuse_records(
        self,
        student_ids: Optional[Sequence[int]],
        window: Optional[TimeWindow],
        status: Optional[str],
        limit: int,
    ) -> List[Dict[str, Any]]:
        clauses = [
            scope_clause("er.student_id", student_ids),
            _window_clause("COALESCE(er.submitted_at, er.created_at)", window),
        ]
        if status:
            clauses.append(("er.status=%s", (status,)))
        where, params = _where(clauses)
        return self.db.fetch_all(
            "SELECT er.id, er.student_id, s.name AS student_name, er.status, "
            "COALESCE(er.submitted_at, er.created_at) AS submitted_at FROM excuse_requests er "
            "JOIN students s ON s.id = er.student_id"
            f"{where} ORDER BY COALESCE(er.submitted_at, er.created_at) DESC LIMIT %s",
            params + (limit,),
        )
