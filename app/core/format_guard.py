from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from app.core.composer import rewrite_prompt
from app.core.llm_client import GenerationClient
from app.core.metrics import metrics

logger = logging.getLogger(__name__)

_STRUCTURAL_ONLY = re.compile(r"^[\s\d.,:;%+\-*/=<>()\[\]{}|_#\"']+$")
_CODE_MARKERS = re.compile(r"```|`[^`\n]+`")
_BRACED_PAIRS = re.compile(r"\{[^{}]*\"?[\w ]+\"?\s*:\s*[^{}]*\}")
_BRACKETED_LIST = re.compile(r"\[\s*(?:\"[^\"]*\"|\{|-?\d+(?:\.\d+)?)\s*(?:,[^\[\]]*)?\]")

REPLY_KEYS = ("reply", "response", "message", "text", "answer")


def _parse_structured(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def is_technical_looking(text: Optional[str]) -> bool:
    stripped = (text or "").strip()
    if not stripped:
        return False
    if isinstance(_parse_structured(stripped), (dict, list)):
        return True
    if _STRUCTURAL_ONLY.match(stripped):
        return True
    if _CODE_MARKERS.search(stripped):
        return True
    if _BRACED_PAIRS.search(stripped) or _BRACKETED_LIST.search(stripped):
        return True
    return False


def extract_reply_text(text: Optional[str]) -> str:
    stripped = (text or "").strip()
    parsed = _parse_structured(stripped)
    if isinstance(parsed, dict):
        for key in REPLY_KEYS:
            value = parsed.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return ""
    if isinstance(parsed, list):
        return ""
    return stripped


class FormatGuard:
    """Rewrites replies that read like raw data, at most once per reply."""

    def __init__(self, client: GenerationClient) -> None:
        self.client = client

    async def apply(self, text: str, question: str) -> str:
        if not is_technical_looking(text):
            metrics.inc("chat_format_guard_total", {"result": "pass"})
            return text
        try:
            rewritten = extract_reply_text(await self.client.generate(rewrite_prompt(text, question)))
        except Exception as exc:
            logger.warning("format rewrite failed (%s); keeping original reply", exc)
            metrics.inc("chat_format_guard_total", {"result": "rewrite_failed"})
            return text
        if not rewritten:
            logger.warning("format rewrite returned nothing; keeping original reply")
            metrics.inc("chat_format_guard_total", {"result": "rewrite_failed"})
            return text
        metrics.inc("chat_format_guard_total", {"result": "rewritten"})
        return rewritten
