from __future__ import annotations

import re

from app.core.models import Intent

# Checked in this order; the first category with any matching phrase wins.
_INTENT_PHRASES: tuple[tuple[Intent, tuple[str, ...]], ...] = (
    (
        Intent.ATTENDANCE,
        (
            "attendance",
            "attendance rate",
            "absent",
            "absence",
            "absences",
            "present",
            "late",
            "tardy",
            "missed class",
            "missed classes",
        ),
    ),
    (
        Intent.SCHEDULE,
        (
            "schedule",
            "timetable",
            "class time",
            "when is",
            "what time",
            "next class",
            "which room",
        ),
    ),
    (
        Intent.EXCUSE,
        (
            "excuse",
            "excuses",
            "excuse letter",
            "excuse request",
            "leave request",
            "medical certificate",
        ),
    ),
    (
        Intent.TEACHER,
        (
            "teacher",
            "teachers",
            "my teacher",
            "who teaches",
            "instructor",
            "professor",
            "advisor",
            "adviser",
        ),
    ),
    (
        Intent.CLASSES,
        (
            "class",
            "classes",
            "my classes",
            "subject",
            "subjects",
            "enrolled",
            "course",
            "courses",
        ),
    ),
    (
        Intent.HELP,
        (
            "help",
            "what can you do",
            "how do i",
            "how to",
            "hello",
            "hi",
            "hey",
        ),
    ),
)


def _compile(phrases: tuple[str, ...]) -> re.Pattern[str]:
    alternatives = sorted((re.escape(phrase) for phrase in phrases), key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(alternatives) + r")\b")


_PATTERNS = tuple((intent, _compile(phrases)) for intent, phrases in _INTENT_PHRASES)


def normalize_question(text: str) -> str:
    return " ".join(str(text or "").lower().split())


def classify(question: str) -> Intent:
    normalized = normalize_question(question)
    if not normalized:
        return Intent.UNKNOWN
    for intent, pattern in _PATTERNS:
        if pattern.search(normalized):
            return intent
    return Intent.UNKNOWN
