import pytest

from app.core.intent import classify, normalize_question
from app.core.models import Intent


@pytest.mark.parametrize(
    "question,expected",
    [
        ("What's my attendance rate this month?", Intent.ATTENDANCE),
        ("How many times was I ABSENT last week", Intent.ATTENDANCE),
        ("when is my next class", Intent.SCHEDULE),
        ("Show my timetable", Intent.SCHEDULE),
        ("Did my excuse letter get approved?", Intent.EXCUSE),
        ("who teaches physics", Intent.TEACHER),
        ("what subjects am I enrolled in", Intent.CLASSES),
        ("hello", Intent.HELP),
        ("what can you do", Intent.HELP),
        ("tell me a joke", Intent.UNKNOWN),
        ("", Intent.UNKNOWN),
    ],
)
def test_classify_examples(question, expected):
    assert classify(question) == expected


def test_classify_priority_order():
    # attendance beats schedule, schedule beats classes, excuse beats teacher
    assert classify("attendance for my schedule") == Intent.ATTENDANCE
    assert classify("class schedule") == Intent.SCHEDULE
    assert classify("send an excuse to my teacher") == Intent.EXCUSE
    assert classify("my teacher for this class") == Intent.TEACHER


def test_classify_matches_whole_words_only():
    assert classify("this is a lately added feature") == Intent.UNKNOWN
    assert classify("high score") == Intent.UNKNOWN


def test_classify_is_deterministic():
    question = "  Was I   LATE today?  "
    assert normalize_question(question) == "was i late today?"
    assert {classify(question) for _ in range(5)} == {Intent.ATTENDANCE}
