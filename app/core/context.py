from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import ValidationError

from app.core.cache import CacheClient
from app.core.metrics import metrics
from app.core.models import (
    AdminProfile,
    AttendanceMark,
    ClassSummary,
    ExcuseSummary,
    Role,
    StudentProfile,
    StudentStats,
    TeacherProfile,
    UserSnapshot,
)
from app.core.settings import Settings
from app.core.store import AcademicStore

logger = logging.getLogger(__name__)

SNAPSHOT_KEY_PREFIX = "chat:snapshot:v1"
STUDENT_CLASS_LIMIT = 10
STUDENT_ATTENDANCE_LIMIT = 10
STUDENT_EXCUSE_LIMIT = 5
TEACHER_CLASS_LIMIT = 15
EXCUSE_REASON_CHARS = 100


def snapshot_key(user_id: int) -> str:
    return f"{SNAPSHOT_KEY_PREFIX}:{user_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clip(value: Any, limit: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if len(text) <= limit else text[:limit]


class SnapshotProvider:
    """Builds and caches the per-user context snapshot.

    Snapshots live in the injected cache for ``chat_snapshot_ttl_sec``. The
    chat pipeline only reads them; profile changes elsewhere call
    ``invalidate`` and the next request rebuilds.
    """

    def __init__(self, store: AcademicStore, cache: CacheClient, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings

    async def get_snapshot(self, user_id: int) -> UserSnapshot:
        cached = self.cache.get_json(snapshot_key(user_id))
        if isinstance(cached, dict):
            try:
                snapshot = UserSnapshot.model_validate(cached)
                metrics.inc("chat_snapshot_cache_total", {"result": "hit"})
                return snapshot
            except ValidationError as exc:
                logger.warning("discarding malformed cached snapshot user_id=%s: %s", user_id, exc)
        metrics.inc("chat_snapshot_cache_total", {"result": "miss"})
        return await self._build_and_store(user_id)

    def invalidate(self, user_id: int) -> None:
        self.cache.delete(snapshot_key(user_id))

    async def force_rebuild(self, user_id: int) -> UserSnapshot:
        self.invalidate(user_id)
        return await self._build_and_store(user_id)

    async def _build_and_store(self, user_id: int) -> UserSnapshot:
        try:
            snapshot = await asyncio.wait_for(
                asyncio.to_thread(self.build, user_id),
                timeout=self.settings.chat_storage_timeout_sec,
            )
        except Exception as exc:
            logger.error("snapshot build failed user_id=%s: %s", user_id, exc)
            metrics.inc("chat_snapshot_build_total", {"result": "error"})
            return UserSnapshot(user_id=user_id, role=Role.UNKNOWN, built_at=_now_iso(), error=str(exc) or type(exc).__name__)
        metrics.inc("chat_snapshot_build_total", {"result": "ok"})
        self.cache.set_json(
            snapshot_key(user_id),
            snapshot.model_dump(mode="json"),
            ttl=self.settings.chat_snapshot_ttl_sec,
        )
        return snapshot

    def build(self, user_id: int) -> UserSnapshot:
        user = self.store.get_user(user_id) or {}
        teacher_row = self.store.get_teacher_by_user(user_id)
        student_row = None if teacher_row else self.store.get_student_by_user(user_id)
        admin_flag = False if (teacher_row or student_row) else self.store.is_admin(user_id)

        if teacher_row:
            role = Role.TEACHER
        elif student_row:
            role = Role.STUDENT
        elif admin_flag:
            role = Role.ADMIN
        else:
            role = _role_from_column(user.get("role"))

        name = user.get("name") or "User"
        snapshot: Dict[str, Any] = {
            "user_id": user_id,
            "name": name,
            "email": user.get("email"),
            "role": role,
            "built_at": _now_iso(),
        }
        if role == Role.TEACHER and teacher_row:
            snapshot["teacher"] = self._teacher_profile(teacher_row)
        elif role == Role.STUDENT and student_row:
            snapshot["student"] = self._student_profile(student_row)
        elif role == Role.ADMIN:
            snapshot["admin"] = AdminProfile(id=user_id, name=name, email=user.get("email"))
        return UserSnapshot(**snapshot)

    def _student_profile(self, row: Dict[str, Any]) -> StudentProfile:
        student_id = int(row["id"])
        classes = [ClassSummary(**item) for item in self.store.student_classes(student_id, STUDENT_CLASS_LIMIT)]
        attendance = [AttendanceMark(**item) for item in self.store.recent_attendance(student_id, STUDENT_ATTENDANCE_LIMIT)]
        requests = [
            ExcuseSummary(**{**item, "reason": _clip(item.get("reason"), EXCUSE_REASON_CHARS)})
            for item in self.store.recent_excuses(student_id, STUDENT_EXCUSE_LIMIT)
        ]
        stats = StudentStats(
            total_classes=len(classes),
            recent_attendance_count=len(attendance),
            pending_requests=sum(1 for item in requests if item.status == "pending"),
        )
        return StudentProfile(
            **{key: row.get(key) for key in StudentProfile.model_fields if key in row},
            classes=classes,
            recent_attendance=attendance,
            recent_requests=requests,
            stats=stats,
        )

    def _teacher_profile(self, row: Dict[str, Any]) -> TeacherProfile:
        classes = [
            ClassSummary(**item)
            for item in self.store.teacher_classes(int(row["user_id"]), TEACHER_CLASS_LIMIT, active_only=True)
        ]
        return TeacherProfile(
            **{key: row.get(key) for key in TeacherProfile.model_fields if key in row},
            classes=classes,
        )


def _role_from_column(value: Any) -> Role:
    try:
        return Role(str(value or "").strip().lower())
    except ValueError:
        return Role.UNKNOWN
