from __future__ import annotations

import json
import logging
import time
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, Optional, Sequence

from app.core.cache import get_cache
from app.core.composer import compose
from app.core.context import SnapshotProvider
from app.core.db import Database
from app.core.format_guard import FormatGuard
from app.core.llm_client import GenerationClient
from app.core.metrics import metrics
from app.core.models import Role, UserSnapshot
from app.core.planner import RetrievalPlanner
from app.core.settings import SETTINGS, Settings
from app.core.store import AcademicStore

logger = logging.getLogger(__name__)

RETRIEVAL_FAILED = "RETRIEVAL_FAILED"
GENERATION_UNAVAILABLE = "GENERATION_UNAVAILABLE"
ACCESS_CONTEXT_MISSING = "ACCESS_CONTEXT_MISSING"
INTERNAL_ERROR = "INTERNAL_ERROR"

FALLBACK_REPLIES = {
    RETRIEVAL_FAILED: (
        "I'm sorry, I couldn't retrieve the information you requested. "
        "Please try rephrasing your question or try again later."
    ),
    GENERATION_UNAVAILABLE: "I'm having trouble generating a response right now. Please try again.",
    ACCESS_CONTEXT_MISSING: (
        "I couldn't find the student or teacher profile linked to your account, so I can't look that up. "
        "Please contact your administrator."
    ),
    INTERNAL_ERROR: "An unexpected error occurred. Please try again.",
}


class AccessContextMissing(Exception):
    pass


class SnapshotUnavailable(Exception):
    pass


def validate_access(snapshot: UserSnapshot) -> None:
    # a snapshot that failed to build must not fall through to the unrestricted role
    if snapshot.error:
        raise SnapshotUnavailable(snapshot.error)
    if snapshot.role == Role.STUDENT and snapshot.student_id is None:
        raise AccessContextMissing("student context missing")
    if snapshot.role == Role.TEACHER and snapshot.teacher_user_id is None:
        raise AccessContextMissing("teacher context missing")


def _sse_event(name: str, data: dict | str) -> str:
    payload = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    return f"event: {name}\ndata: {payload}\n\n"


class ChatPipeline:
    """Runs one chat request: snapshot, retrieval, prompt, generation, guard.

    Nothing raises out of ``run_query`` or ``run_chat_stream``; failures
    become a friendly reply with a ``reason_code``.
    """

    def __init__(
        self,
        settings: Settings,
        snapshots: SnapshotProvider,
        planner: RetrievalPlanner,
        client: GenerationClient,
        guard: Optional[FormatGuard] = None,
    ) -> None:
        self.settings = settings
        self.snapshots = snapshots
        self.planner = planner
        self.client = client
        self.guard = guard or FormatGuard(client)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChatPipeline":
        store = AcademicStore(Database(settings))
        client = GenerationClient(settings)
        return cls(
            settings=settings,
            snapshots=SnapshotProvider(store, get_cache(), settings),
            planner=RetrievalPlanner(store, settings),
            client=client,
        )

    def _fallback(self, reason_code: str, intent: str, detail: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "reply": FALLBACK_REPLIES[reason_code],
            "retrieval": None,
            "intent": intent,
            "reason_code": reason_code,
        }
        if detail and not self.settings.is_production:
            body["debug"] = detail
        return body

    def _compose(self, snapshot: UserSnapshot, outcome, text: str, history: Optional[Sequence[Any]] = None) -> str:
        return compose(
            snapshot,
            outcome,
            text,
            max_list_items=self.settings.chat_prompt_max_list_items,
            truncate_chars=self.settings.chat_prompt_max_chars,
            history=history,
            max_history_turns=self.settings.chat_history_max_turns,
        )

    async def run_query(
        self,
        user_id: int,
        text: str,
        history: Optional[Sequence[Any]] = None,
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        question = text.strip()
        intent = "unknown"
        try:
            snapshot = await self.snapshots.get_snapshot(user_id)
            validate_access(snapshot)
            outcome = await self.planner.plan_and_execute(question, snapshot)
            intent = outcome.intent.value
            if outcome.failed:
                metrics.inc("chat_requests_total", {"mode": "query", "result": "retrieval_failed"})
                return self._fallback(RETRIEVAL_FAILED, intent, getattr(outcome.result, "error", None))
            prompt = self._compose(snapshot, outcome, question, history)
            reply = await self.client.generate(prompt)
            if reply is None or not reply.strip():
                metrics.inc("chat_requests_total", {"mode": "query", "result": "generation_unavailable"})
                body = self._fallback(GENERATION_UNAVAILABLE, intent, "generation backend returned no text")
                body["retrieval"] = outcome.plan.as_dict()
                return body
            reply = await self.guard.apply(reply.strip(), question)
        except SnapshotUnavailable as exc:
            metrics.inc("chat_requests_total", {"mode": "query", "result": "retrieval_failed"})
            return self._fallback(RETRIEVAL_FAILED, intent, str(exc))
        except AccessContextMissing as exc:
            logger.warning("chat access rejected user_id=%s: %s", user_id, exc)
            metrics.inc("chat_requests_total", {"mode": "query", "result": "access_denied"})
            return self._fallback(ACCESS_CONTEXT_MISSING, intent, str(exc))
        except Exception as exc:
            logger.exception("chat query failed user_id=%s intent=%s", user_id, intent)
            metrics.inc("chat_requests_total", {"mode": "query", "result": "error"})
            return self._fallback(INTERNAL_ERROR, intent, str(exc) or type(exc).__name__)
        metrics.inc("chat_requests_total", {"mode": "query", "result": "ok"})
        metrics.observe_ms("chat_request_latency_ms", int((time.perf_counter() - started) * 1000), {"mode": "query"})
        return {"reply": reply, "retrieval": outcome.plan.as_dict(), "intent": intent}

    async def run_chat_stream(self, user_id: int, text: str) -> AsyncIterator[str]:
        question = text.strip()
        try:
            snapshot = await self.snapshots.get_snapshot(user_id)
            validate_access(snapshot)
            outcome = await self.planner.plan_and_execute(question, snapshot)
            if outcome.failed:
                metrics.inc("chat_requests_total", {"mode": "stream", "result": "retrieval_failed"})
                yield _sse_event("error", {"code": RETRIEVAL_FAILED, "message": FALLBACK_REPLIES[RETRIEVAL_FAILED]})
                yield _sse_event("done", {"status": "error"})
                return
            prompt = self._compose(snapshot, outcome, question)
        except SnapshotUnavailable:
            metrics.inc("chat_requests_total", {"mode": "stream", "result": "retrieval_failed"})
            yield _sse_event("error", {"code": RETRIEVAL_FAILED, "message": FALLBACK_REPLIES[RETRIEVAL_FAILED]})
            yield _sse_event("done", {"status": "error"})
            return
        except AccessContextMissing as exc:
            logger.warning("chat stream access rejected user_id=%s: %s", user_id, exc)
            metrics.inc("chat_requests_total", {"mode": "stream", "result": "access_denied"})
            yield _sse_event("error", {"code": ACCESS_CONTEXT_MISSING, "message": FALLBACK_REPLIES[ACCESS_CONTEXT_MISSING]})
            yield _sse_event("done", {"status": "error"})
            return
        except Exception as exc:
            logger.exception("chat stream setup failed user_id=%s", user_id)
            metrics.inc("chat_requests_total", {"mode": "stream", "result": "error"})
            error: Dict[str, Any] = {"code": INTERNAL_ERROR, "message": FALLBACK_REPLIES[INTERNAL_ERROR]}
            if not self.settings.is_production:
                error["debug"] = str(exc) or type(exc).__name__
            yield _sse_event("error", error)
            yield _sse_event("done", {"status": "error"})
            return

        status = "ok"
        try:
            async with aclosing(self.client.stream_generate(prompt)) as fragments:
                async for fragment in fragments:
                    if fragment.is_error:
                        status = "error"
                        yield _sse_event("error", {"code": GENERATION_UNAVAILABLE, "message": fragment.text})
                        break
                    yield _sse_event("delta", {"delta": fragment.text})
        except Exception:
            logger.exception("chat stream interrupted user_id=%s", user_id)
            status = "error"
            yield _sse_event("error", {"code": INTERNAL_ERROR, "message": FALLBACK_REPLIES[INTERNAL_ERROR]})
        metrics.inc("chat_requests_total", {"mode": "stream", "result": status})
        yield _sse_event("done", {"status": status, "intent": outcome.intent.value})

    async def status(self) -> Dict[str, Any]:
        return await self.client.health_check()


_pipeline: ChatPipeline | None = None


def get_pipeline() -> ChatPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = ChatPipeline.from_settings(SETTINGS)
    return _pipeline
