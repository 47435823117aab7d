import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse

from app.api.schemas import ChatQueryRequest, ChatStreamRequest
from app.core.chat import ChatPipeline, get_pipeline
from app.core.metrics import metrics

router = APIRouter()
logger = logging.getLogger(__name__)


def require_user_id(x_user_id: Optional[str] = Header(default=None, alias="x-user-id")) -> int:
    """Identity set by the authenticating gateway in front of this service."""
    raw = (x_user_id or "").strip()
    if not raw.isdigit() or int(raw) <= 0:
        metrics.inc("chat_auth_rejected_total")
        raise HTTPException(status_code=401, detail={"error": "Authentication required."})
    return int(raw)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.post("/chatbot/query")
async def chatbot_query(
    payload: ChatQueryRequest,
    user_id: int = Depends(require_user_id),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    history = [message.model_dump() for message in payload.conversation_history]
    response = await pipeline.run_query(user_id, payload.message, history)
    return JSONResponse(content=response)


@router.post("/chatbot/stream")
async def chatbot_stream(
    payload: ChatStreamRequest,
    user_id: int = Depends(require_user_id),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    return StreamingResponse(
        pipeline.run_chat_stream(user_id, payload.query),
        media_type="text/event-stream",
        headers={"cache-control": "no-cache", "x-accel-buffering": "no"},
    )


@router.get("/chatbot/status")
async def chatbot_status(
    user_id: int = Depends(require_user_id),
    pipeline: ChatPipeline = Depends(get_pipeline),
):
    health = await pipeline.status()
    if not health.get("ok"):
        logger.warning("chatbot status degraded user_id=%s base_url=%s", user_id, health.get("base_url"))
    return JSONResponse(content={"ai": health}, status_code=200 if health.get("ok") else 503)
