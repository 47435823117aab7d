from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Sequence

from app.core.models import (
    AttendanceResult,
    ChatTurn,
    ClassListResult,
    ExcuseResult,
    GuidanceResult,
    RetrievalError,
    RetrievalOutcome,
    Role,
    TeacherDirectoryResult,
    UserSnapshot,
)

TRUNCATION_MARKER = "\n\n[PROMPT TRUNCATED]"
DEFAULT_MAX_LIST_ITEMS = 10
DEFAULT_TRUNCATE_CHARS = 6000
HISTORY_MESSAGE_CHARS = 300

SECRET_KEYS = frozenset({"password", "remember_token", "api_token", "token", "secret"})
EXCLUDED_KEYS = frozenset({"phone"})

_ROLE_TONE = {
    Role.STUDENT: "Speak directly to the student in a friendly, encouraging way. Suggest a next step when attendance looks weak.",
    Role.TEACHER: "Be professional and concise. Focus on patterns across the teacher's classes and name students only when listed in the data.",
    Role.ADMIN: "Be neutral and summary-focused, highlighting totals and notable exceptions.",
    Role.UNKNOWN: "Be polite and general. Do not assume the user's role.",
}

_INSTRUCTIONS = (
    "You are the assistant of a school attendance system. Answer the QUESTION using only the USER CONTEXT "
    "and RETRIEVED DATA sections.\n"
    "\n"
    "INSTRUCTIONS:\n"
    "- Reply in plain conversational English.\n"
    "- Do not use code fences or inline code, and never output JSON, tables or raw field names.\n"
    "- Short bullet points are fine for lists.\n"
    "- Write percentages with a % sign (for example 92%).\n"
    "- If the data does not answer the question, say so briefly and suggest what the user can ask instead.\n"
    "- Never reveal data about people outside the retrieved data."
)


def strip_secrets(value: Any) -> Any:
    """Drop credential-like and excluded keys at any depth."""
    if isinstance(value, dict):
        return {
            key: strip_secrets(item)
            for key, item in value.items()
            if str(key).lower() not in SECRET_KEYS and str(key).lower() not in EXCLUDED_KEYS
        }
    if isinstance(value, (list, tuple)):
        return [strip_secrets(item) for item in value]
    return value


def _cap(items: Iterable[Any], limit: int) -> list[Any]:
    return list(items)[: max(0, limit)]


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _class_view(item: dict[str, Any]) -> dict[str, Any]:
    keys = ("name", "class_code", "subject", "course", "section", "schedule_time", "schedule_days", "room")
    return {key: item.get(key) for key in keys if item.get(key) not in (None, "", [])}


def snapshot_view(snapshot: UserSnapshot, max_items: int) -> dict[str, Any]:
    data = snapshot.model_dump(mode="json")
    view: dict[str, Any] = {"name": data.get("name"), "role": snapshot.role.value}
    student = data.get("student")
    if student:
        view["student"] = {
            "student_number": student.get("student_number"),
            "course": student.get("course"),
            "year": student.get("year"),
            "section": student.get("section"),
            "classes": [_class_view(item) for item in _cap(student.get("classes") or [], max_items)],
            "recent_attendance": [
                {"status": item.get("status"), "marked_at": item.get("marked_at")}
                for item in _cap(student.get("recent_attendance") or [], max_items)
            ],
            "recent_requests": [
                {"status": item.get("status"), "reason": item.get("reason"), "submitted_at": item.get("submitted_at")}
                for item in _cap(student.get("recent_requests") or [], max_items)
            ],
            "stats": student.get("stats"),
        }
    teacher = data.get("teacher")
    if teacher:
        view["teacher"] = {
            "name": snapshot.teacher.full_name if snapshot.teacher else None,
            "department": teacher.get("department"),
            "position": teacher.get("position"),
            "classes": [_class_view(item) for item in _cap(teacher.get("classes") or [], max_items)],
        }
    return strip_secrets(view)


def result_view(outcome: RetrievalOutcome, max_items: int) -> dict[str, Any]:
    result = outcome.result
    plan = outcome.plan
    view: dict[str, Any] = {"intent": outcome.intent.value}
    if plan.time_window is not None:
        view["period"] = plan.time_window.label
    if plan.status_filter:
        view["status_filter"] = plan.status_filter

    if isinstance(result, AttendanceResult):
        view["scope"] = result.scope
        view["summary"] = result.aggregate.as_dict()
        view["records"] = [
            {key: item.get(key) for key in ("student_name", "class_name", "status", "marked_at") if item.get(key)}
            for item in _cap(result.records, max_items)
        ]
        view["records_returned"] = len(result.records)
    elif isinstance(result, ClassListResult):
        view["scope"] = result.scope
        view["classes"] = [_class_view(item) for item in _cap(result.classes, max_items)]
        view["class_count"] = len(result.classes)
    elif isinstance(result, TeacherDirectoryResult):
        view["scope"] = result.scope
        view["teachers"] = [
            {
                "name": " ".join(part for part in (item.get("first_name"), item.get("last_name")) if part),
                "department": item.get("department"),
                "email": item.get("email"),
                "class_name": item.get("class_name"),
            }
            for item in _cap(result.teachers, max_items)
        ]
    elif isinstance(result, ExcuseResult):
        view["scope"] = result.scope
        view["summary"] = {**result.counts, "total": result.total}
        view["records"] = [
            {key: item.get(key) for key in ("student_name", "status", "submitted_at") if item.get(key)}
            for item in _cap(result.records, max_items)
        ]
    elif isinstance(result, GuidanceResult):
        view["scope"] = result.scope
        view["can_help_with"] = list(result.capabilities)
    elif isinstance(result, RetrievalError):
        view["error"] = "The requested data could not be loaded right now."
    return strip_secrets(view)


def _history_lines(history: Optional[Sequence[Any]], max_turns: int) -> list[str]:
    if not history or max_turns <= 0:
        return []
    lines = []
    for turn in list(history)[-max_turns:]:
        if isinstance(turn, ChatTurn):
            role, content = turn.role, turn.content
        elif isinstance(turn, dict):
            role, content = turn.get("role"), turn.get("content")
        else:
            continue
        if not isinstance(content, str) or not content.strip():
            continue
        text = " ".join(content.split())[:HISTORY_MESSAGE_CHARS]
        lines.append(f"{role or 'user'}: {text}")
    return lines


def instruction_block(role: Role) -> str:
    tone = _ROLE_TONE.get(role, _ROLE_TONE[Role.UNKNOWN])
    return f"{_INSTRUCTIONS}\n- Tone: {tone}"


def compose(
    snapshot: UserSnapshot,
    outcome: RetrievalOutcome,
    question: str,
    max_list_items: int = DEFAULT_MAX_LIST_ITEMS,
    truncate_chars: int = DEFAULT_TRUNCATE_CHARS,
    history: Optional[Sequence[Any]] = None,
    max_history_turns: int = 10,
) -> str:
    """Build the generation prompt.

    The instruction block and the question come first and are never cut.
    When the result is over ``truncate_chars`` the data blocks are cut from
    the tail and ``TRUNCATION_MARKER`` is appended.
    """
    instructions = instruction_block(snapshot.role)
    if len(instructions) + len(TRUNCATION_MARKER) > truncate_chars:
        raise ValueError("prompt budget is smaller than the instruction block")

    room = truncate_chars - len(instructions) - len(TRUNCATION_MARKER)
    question_block = f"\n\nQUESTION:\n{question.strip()}"[:room]
    head = instructions + question_block

    blocks = [
        f"\n\nUSER CONTEXT:\n{_dump(snapshot_view(snapshot, max_list_items))}",
        f"\n\nRETRIEVED DATA:\n{_dump(result_view(outcome, max_list_items))}",
    ]
    lines = _history_lines(history, max_history_turns)
    if lines:
        blocks.append("\n\nRECENT CONVERSATION:\n" + "\n".join(lines))
    data = "".join(blocks)

    prompt = head + data
    if len(prompt) <= truncate_chars:
        return prompt
    keep = max(0, truncate_chars - len(head) - len(TRUNCATION_MARKER))
    return head + data[:keep] + TRUNCATION_MARKER


def rewrite_prompt(text: str, question: str) -> str:
    return (
        "Rewrite the following assistant reply as a short, friendly answer in plain conversational English. "
        "Keep every fact and number, write percentages with a % sign, and do not use JSON, code, tables or "
        "field names. Return only the rewritten reply.\n\n"
        f"QUESTION:\n{question.strip()}\n\n"
        f"REPLY TO REWRITE:\n{text.strip()}"
    )
