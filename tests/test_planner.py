import asyncio
from dataclasses import replace
from datetime import datetime

import pytest

from app.core.models import (
    AttendanceResult,
    ClassListResult,
    ExcuseResult,
    GuidanceResult,
    Intent,
    RetrievalError,
    Role,
    StudentProfile,
    TeacherDirectoryResult,
    TeacherProfile,
    UserSnapshot,
)
from app.core.planner import (
    RetrievalPlanner,
    attendance_aggregate,
    extract_time_window,
    name_phrase,
    parse_status_filter,
    risk_tier,
)
from app.core.settings import load_settings

NOW = datetime(2024, 3, 14, 10, 30)


class FakeStore:
    def __init__(self, counts=None, records=None, enrolled=None, classes=None, fail=None, named=None):
        self.counts = counts or {}
        self.named = named or []
        self.records = records or []
        self.enrolled = enrolled or []
        self.classes = classes or []
        self.fail = fail
        self.calls = []

    def _record(self, name, *args):
        self.calls.append((name, args))
        if self.fail:
            raise self.fail

    def enrolled_student_ids(self, teacher_user_id):
        self._record("enrolled_student_ids", teacher_user_id)
        return list(self.enrolled)

    def students_named(self, phrase, student_ids, limit):
        self._record("students_named", phrase, student_ids, limit)
        return [row for row in self.named if student_ids is None or row["id"] in student_ids]

    def attendance_status_counts(self, student_ids, window):
        self._record("attendance_status_counts", student_ids, window)
        return dict(self.counts)

    def attendance_records(self, student_ids, window, status, limit):
        self._record("attendance_records", student_ids, window, status, limit)
        return [row for row in self.records if status is None or row["status"] == status]

    def excuse_status_counts(self, student_ids, window):
        self._record("excuse_status_counts", student_ids, window)
        return dict(self.counts)

    def excuse_records(self, student_ids, window, status, limit):
        self._record("excuse_records", student_ids, window, status, limit)
        return list(self.records)

    def student_classes(self, student_id, limit):
        self._record("student_classes", student_id, limit)
        return list(self.classes)

    def classes_by_id(self, class_id):
        self._record("classes_by_id", class_id)
        return [{"id": class_id, "name": "Homeroom"}]

    def teacher_classes(self, teacher_user_id, limit, active_only=True):
        self._record("teacher_classes", teacher_user_id, limit, active_only)
        return list(self.classes)

    def active_classes(self, limit):
        self._record("active_classes", limit)
        return list(self.classes)

    def teachers_for_student(self, student_id, limit):
        self._record("teachers_for_student", student_id, limit)
        return [{"id": 1, "first_name": "Ana", "last_name": "Cruz"}]

    def teacher_record(self, teacher_user_id):
        self._record("teacher_record", teacher_user_id)
        return [{"id": 2, "user_id": teacher_user_id}]

    def teachers(self, limit):
        self._record("teachers", limit)
        return [{"id": 1}, {"id": 2}]


def _settings(**overrides):
    return replace(load_settings(), **overrides)


def _student(student_id=7, class_id=None):
    return UserSnapshot(
        user_id=70,
        name="Sam",
        role=Role.STUDENT,
        student=StudentProfile(id=student_id, name="Sam", class_id=class_id),
    )


def _teacher(user_id=90):
    return UserSnapshot(
        user_id=user_id,
        name="Ms. Cruz",
        role=Role.TEACHER,
        teacher=TeacherProfile(id=3, user_id=user_id, first_name="Ana", last_name="Cruz"),
    )


def _planner(store, **overrides):
    return RetrievalPlanner(store, _settings(**overrides), now=lambda: NOW)


def _run(planner, question, snapshot):
    return asyncio.run(planner.plan_and_execute(question, snapshot))


def test_time_windows_resolve_relative_to_now():
    week = extract_time_window("attendance this week", NOW)
    assert week.start == datetime(2024, 3, 11)
    assert week.end == datetime(2024, 3, 17, 23, 59, 59)

    last_month = extract_time_window("absences LAST month", NOW)
    assert last_month.start == datetime(2024, 2, 1)
    assert last_month.end == datetime(2024, 2, 29, 23, 59, 59)

    yesterday = extract_time_window("was i late yesterday", NOW)
    assert yesterday.start == datetime(2024, 3, 13)

    semester = extract_time_window("excuses this semester", NOW)
    assert (semester.start, semester.end) == (datetime(2024, 1, 1), datetime(2024, 6, 30, 23, 59, 59))

    assert extract_time_window("attendance overall", NOW) is None


def test_last_month_in_january_wraps_year():
    window = extract_time_window("last month", datetime(2024, 1, 5))
    assert window.start == datetime(2023, 12, 1)
    assert window.end == datetime(2023, 12, 31, 23, 59, 59)


def test_status_filters_are_intent_specific():
    assert parse_status_filter("how many times was I absent", Intent.ATTENDANCE) == "absent"
    assert parse_status_filter("was I tardy", Intent.ATTENDANCE) == "late"
    assert parse_status_filter("which excuses were denied", Intent.EXCUSE) == "rejected"
    assert parse_status_filter("absent", Intent.SCHEDULE) is None


def test_rate_and_risk_tiers():
    aggregate = attendance_aggregate({"present": 23, "absent": 2})
    assert aggregate.total == 25
    assert aggregate.rate == 92.0
    assert aggregate.risk == "good"
    assert attendance_aggregate({"present": 8, "late": 1, "absent": 1}).rate == 90.0
    assert risk_tier(74.9) == "critical"
    assert risk_tier(75) == "at_risk"
    assert risk_tier(85) == "warning"
    assert risk_tier(90) == "good"
    empty = attendance_aggregate({})
    assert (empty.total, empty.rate, empty.risk) == (0, 0.0, "no_data")


def test_student_attendance_is_scoped_to_own_id_with_default_window():
    store = FakeStore(
        counts={"present": 23, "absent": 2},
        records=[{"id": 1, "student_id": 7, "status": "present"}],
    )
    outcome = _run(_planner(store), "What's my attendance rate?", _student())

    assert outcome.intent == Intent.ATTENDANCE
    assert isinstance(outcome.result, AttendanceResult)
    assert outcome.result.aggregate.as_dict() == {
        "present": 23,
        "absent": 2,
        "late": 0,
        "excused": 0,
        "total": 25,
        "rate": 92.0,
        "risk": "good",
    }
    assert outcome.result.scope == "for you"
    assert outcome.plan.time_window.label == "this month"
    assert outcome.plan.role_constraints == {"student_id": 7}
    assert outcome.plan.row_cap == 100
    for name, args in store.calls:
        assert args[0] == (7,), name


def test_status_filter_narrows_records_not_counts():
    store = FakeStore(
        counts={"present": 3, "absent": 1},
        records=[{"id": 1, "status": "present"}, {"id": 2, "status": "absent"}],
    )
    outcome = _run(_planner(store), "when was I absent this month", _student())
    assert outcome.plan.status_filter == "absent"
    assert [row["id"] for row in outcome.result.records] == [2]
    assert outcome.result.aggregate.total == 4


def test_teacher_scope_uses_enrolled_students_deduplicated():
    store = FakeStore(enrolled=[4, 5, 9], counts={"present": 1})
    outcome = _run(_planner(store), "attendance of my students today", _teacher())

    assert outcome.result.scope == "for students in your classes"
    assert store.calls[0] == ("enrolled_student_ids", (90,))
    counts_call = next(args for name, args in store.calls if name == "attendance_status_counts")
    assert counts_call[0] == (4, 5, 9)
    assert outcome.plan.row_cap == 200


def test_teacher_without_students_short_circuits():
    store = FakeStore(enrolled=[])
    outcome = _run(_planner(store), "attendance this week", _teacher())

    assert isinstance(outcome.result, AttendanceResult)
    assert outcome.result.aggregate.total == 0
    assert outcome.result.aggregate.rate == 0.0
    assert outcome.result.records == ()
    assert [name for name, _ in store.calls] == ["enrolled_student_ids"]


def test_student_without_record_issues_no_attendance_query():
    store = FakeStore()
    snapshot = UserSnapshot(user_id=5, role=Role.STUDENT)
    outcome = _run(_planner(store), "my attendance", snapshot)
    assert outcome.result.aggregate.total == 0
    assert store.calls == []


def test_admin_is_unrestricted_but_capped():
    store = FakeStore(counts={"present": 1})
    snapshot = UserSnapshot(user_id=1, role=Role.ADMIN)
    outcome = _run(_planner(store, chat_row_cap=50), "attendance last week", snapshot)

    assert outcome.result.scope == "for all students"
    records_call = next(args for name, args in store.calls if name == "attendance_records")
    assert records_call[0] is None
    assert records_call[-1] == 50


def test_records_are_capped_even_if_storage_returns_more():
    store = FakeStore(counts={"present": 300}, records=[{"id": i, "status": "present"} for i in range(300)])
    snapshot = UserSnapshot(user_id=1, role=Role.UNKNOWN)
    outcome = _run(_planner(store, chat_row_cap=200), "attendance", snapshot)
    assert len(outcome.result.records) == 200


def test_schedule_falls_back_to_direct_class():
    store = FakeStore(classes=[])
    outcome = _run(_planner(store), "what is my schedule", _student(class_id=12))

    assert isinstance(outcome.result, ClassListResult)
    assert outcome.result.classes == ({"id": 12, "name": "Homeroom"},)
    assert outcome.plan.time_window is None


def test_teacher_classes_use_own_identity():
    store = FakeStore(classes=[{"id": 1, "name": "Math"}])
    outcome = _run(_planner(store), "list my classes", _teacher())
    assert store.calls == [("teacher_classes", (90, 200, True))]
    assert outcome.result.scope == "for your classes"


def test_teacher_directory_for_student():
    store = FakeStore()
    outcome = _run(_planner(store), "who is my teacher", _student())
    assert isinstance(outcome.result, TeacherDirectoryResult)
    assert store.calls == [("teachers_for_student", (7, 100))]


def test_excuse_counts_default_to_semester():
    store = FakeStore(counts={"pending": 2, "approved": 1}, records=[{"id": 3, "status": "pending"}])
    outcome = _run(_planner(store), "status of my excuse requests", _student())

    assert isinstance(outcome.result, ExcuseResult)
    assert outcome.result.counts == {"pending": 2, "approved": 1, "rejected": 0}
    assert outcome.result.total == 3
    assert outcome.plan.time_window.label == "this semester"


def test_help_and_unknown_issue_no_query():
    store = FakeStore()
    outcome = _run(_planner(store), "what can you do", _student())
    assert isinstance(outcome.result, GuidanceResult)
    assert "your class schedule and rooms" in outcome.result.capabilities
    assert outcome.plan.datasets == ()

    unknown = _run(_planner(store), "tell me a joke", _teacher())
    assert unknown.intent == Intent.UNKNOWN
    assert "the classes you handle" in unknown.result.capabilities
    assert store.calls == []


def test_storage_failure_becomes_retrieval_error():
    store = FakeStore(fail=RuntimeError("connection refused"))
    outcome = _run(_planner(store), "my attendance", _student())

    assert outcome.failed
    assert isinstance(outcome.result, RetrievalError)
    assert outcome.result.error == "connection refused"


def test_storage_timeout_becomes_retrieval_error():
    class SlowStore(FakeStore):
        def attendance_status_counts(self, student_ids, window):
            import time

            time.sleep(0.5)
            return {}

    outcome = _run(_planner(SlowStore(), chat_storage_timeout_sec=0.1), "my attendance", _student())
    assert outcome.failed


@pytest.mark.parametrize("question", ["attendance today", "my schedule", "who teaches math", "excuses"])
def test_plan_reports_datasets(question):
    outcome = _run(_planner(FakeStore()), question, _student())
    assert outcome.plan.datasets
    assert outcome.plan.as_dict()["intent"] == outcome.intent.value


def test_name_phrase_keeps_capitalised_words_only():
    assert name_phrase("How is Maria's attendance this week?") == " maria "
    assert name_phrase("Show absences for Maria Santos") == " maria santos "
    assert name_phrase("how is attendance today?") == ""
    assert name_phrase("What are my excuses?") == ""


def test_teacher_question_about_one_student_narrows_scope():
    store = FakeStore(
        enrolled=[4, 5, 9],
        counts={"present": 3, "absent": 1},
        named=[{"id": 5, "name": "Maria Santos"}, {"id": 12, "name": "Maria Lopez"}],
    )
    outcome = _run(_planner(store), "How is Maria's attendance this month?", _teacher())

    assert outcome.result.scope == 'for student "Maria Santos"'
    assert outcome.plan.role_constraints["named_students"] == ["Maria Santos"]
    named_call = next(args for name, args in store.calls if name == "students_named")
    assert named_call == (" maria ", (4, 5, 9), 5)
    counts_call = next(args for name, args in store.calls if name == "attendance_status_counts")
    assert counts_call[0] == (5,)


def test_full_name_match_wins_over_first_name():
    store = FakeStore(named=[{"id": 5, "name": "Maria Santos"}, {"id": 12, "name": "Maria Lopez"}])
    snapshot = UserSnapshot(user_id=1, role=Role.ADMIN)
    outcome = _run(_planner(store), "Excuses from Maria Lopez", snapshot)

    assert outcome.result.scope == 'for student "Maria Lopez"'
    counts_call = next(args for name, args in store.calls if name == "excuse_status_counts")
    assert counts_call[0] == (12,)


def test_unmatched_name_keeps_class_wide_scope():
    store = FakeStore(enrolled=[4, 5], counts={"present": 2})
    outcome = _run(_planner(store), "Attendance for Zed this week", _teacher())

    assert outcome.result.scope == "for students in your classes"
    counts_call = next(args for name, args in store.calls if name == "attendance_status_counts")
    assert counts_call[0] == (4, 5)


def test_students_never_narrow_to_other_names():
    store = FakeStore(named=[{"id": 5, "name": "Maria Santos"}])
    outcome = _run(_planner(store), "What is Maria's attendance?", _student())

    assert outcome.result.scope == "for you"
    assert "students_named" not in [name for name, _ in store.calls]
