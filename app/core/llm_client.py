from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from app.core.metrics import metrics
from app.core.models import StreamFragment
from app.core.settings import Settings

logger = logging.getLogger(__name__)

UNREACHABLE_MESSAGE = "The assistant is not reachable right now. Please try again in a moment."
STREAM_FAILED_MESSAGE = "The assistant stopped responding. Please try again."
STREAM_TIMEOUT_MESSAGE = "The assistant took too long to respond. Please try again."


def chunk_text(chunk: Dict[str, Any]) -> str:
    text = chunk.get("response")
    if isinstance(text, str):
        return text
    message = chunk.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return ""


class NdjsonDecoder:
    """Incremental newline-delimited JSON decoder.

    Text is fed as it arrives; complete lines are decoded in order and any
    trailing partial line waits for its terminator. Lines that are not JSON
    objects are dropped with a warning.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, data: str) -> List[Dict[str, Any]]:
        self._buffer += data
        *lines, self._buffer = self._buffer.split("\n")
        return [chunk for chunk in (self._decode(line) for line in lines) if chunk is not None]

    def flush(self) -> List[Dict[str, Any]]:
        remainder, self._buffer = self._buffer, ""
        chunk = self._decode(remainder)
        return [chunk] if chunk is not None else []

    @staticmethod
    def _decode(line: str) -> Optional[Dict[str, Any]]:
        line = line.strip()
        if not line:
            return None
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("dropping malformed backend line: %.80s", line)
            metrics.inc("chat_llm_malformed_lines_total")
            return None
        if not isinstance(value, dict):
            logger.warning("dropping non-object backend line: %.80s", line)
            metrics.inc("chat_llm_malformed_lines_total")
            return None
        return value


def collect_response_text(body: str) -> str:
    """Join the text of a single JSON reply or an NDJSON chunk sequence."""
    decoder = NdjsonDecoder()
    parts: List[str] = []
    for chunk in decoder.feed(body) + decoder.flush():
        parts.append(chunk_text(chunk))
        if chunk.get("done") is True:
            break
    return "".join(parts)


async def _next_chunk(chunks: AsyncIterator[str]) -> str:
    return await chunks.__anext__()


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class GenerationClient:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def generate_url(self) -> str:
        return f"{self.settings.llm_base_url}/api/generate"

    def payload(self, prompt: str, stream: bool) -> Dict[str, Any]:
        return {
            "model": self.settings.llm_model,
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": self.settings.llm_temperature,
                "top_p": self.settings.llm_top_p,
                "max_tokens": self.settings.llm_max_tokens,
                "stop_sequences": list(self.settings.llm_stop_sequences),
            },
        }

    def backoff_seconds(self, attempt: int) -> float:
        schedule = self.settings.llm_backoff_ms
        return schedule[min(attempt - 1, len(schedule) - 1)] / 1000.0

    async def probe(self) -> bool:
        timeout = httpx.Timeout(
            self.settings.llm_probe_timeout_sec,
            connect=self.settings.llm_probe_connect_timeout_sec,
        )
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.get(f"{self.settings.llm_base_url}/")
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.error("generation backend unreachable base_url=%s: %s", self.settings.llm_base_url, exc)
            metrics.inc("chat_llm_probe_total", {"result": "unreachable"})
            return False
        ok = response.status_code < 500
        metrics.inc("chat_llm_probe_total", {"result": "ok" if ok else f"http_{response.status_code}"})
        if not ok:
            logger.error("generation backend probe failed status=%s", response.status_code)
        return ok

    async def health_check(self) -> Dict[str, Any]:
        ok = await self.probe()
        return {"ok": ok, "base_url": self.settings.llm_base_url, "model": self.settings.llm_model}

    async def _send(self, prompt: str) -> str:
        timeout = httpx.Timeout(self.settings.llm_timeout_sec, connect=self.settings.llm_connect_timeout_sec)
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(self.generate_url, json=self.payload(prompt, stream=False))
            response.raise_for_status()
            return collect_response_text(response.text)

    async def generate(self, prompt: str) -> Optional[str]:
        if not await self.probe():
            return None
        attempts = self.settings.llm_max_attempts
        started = time.perf_counter()
        for attempt in range(1, attempts + 1):
            try:
                text = await self._send(prompt)
            except httpx.HTTPStatusError as exc:
                status_code = exc.response.status_code
                metrics.inc("chat_llm_attempt_total", {"result": f"http_{status_code}"})
                if not is_retryable_status(status_code):
                    logger.error("generation rejected status=%s attempt=%s", status_code, attempt)
                    return None
                reason = f"http_{status_code}"
            except httpx.TransportError as exc:
                metrics.inc("chat_llm_attempt_total", {"result": "transport_error"})
                reason = str(exc) or type(exc).__name__
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                logger.error("generation failed attempt=%s: %s", attempt, exc)
                metrics.inc("chat_llm_attempt_total", {"result": "error"})
                return None
            else:
                metrics.inc("chat_llm_attempt_total", {"result": "ok"})
                metrics.observe_ms("chat_llm_generate_latency_ms", int((time.perf_counter() - started) * 1000))
                return text
            if attempt < attempts:
                delay = self.backoff_seconds(attempt)
                logger.warning(
                    "generation attempt %s/%s failed (%s); retrying in %.0fms",
                    attempt,
                    attempts,
                    reason,
                    delay * 1000,
                )
                metrics.inc("chat_llm_retry_total")
                await asyncio.sleep(delay)
        logger.error("generation failed after %s attempts", attempts)
        metrics.inc("chat_llm_exhausted_total")
        return None

    async def stream_generate(self, prompt: str) -> AsyncIterator[StreamFragment]:
        """Yield reply fragments in backend order.

        Never retried. Any failure ends the iterator with a single error
        fragment. Closing the iterator closes the backend connection.
        """
        if not await self.probe():
            yield StreamFragment(UNREACHABLE_MESSAGE, is_error=True)
            return
        timeout = httpx.Timeout(self.settings.llm_stream_timeout_sec, connect=self.settings.llm_connect_timeout_sec)
        deadline = time.monotonic() + self.settings.llm_stream_timeout_sec
        decoder = NdjsonDecoder()
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                async with client.stream("POST", self.generate_url, json=self.payload(prompt, stream=True)) as response:
                    if response.status_code >= 400:
                        logger.error("generation stream rejected status=%s", response.status_code)
                        metrics.inc("chat_llm_stream_total", {"result": f"http_{response.status_code}"})
                        yield StreamFragment(STREAM_FAILED_MESSAGE, is_error=True)
                        return
                    chunks = response.aiter_text()
                    while True:
                        # each read is bounded by what is left of the overall budget
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            raise TimeoutError
                        try:
                            data = await asyncio.wait_for(_next_chunk(chunks), remaining)
                        except StopAsyncIteration:
                            break
                        for chunk in decoder.feed(data):
                            text = chunk_text(chunk)
                            if text:
                                yield StreamFragment(text)
                            if chunk.get("done") is True:
                                metrics.inc("chat_llm_stream_total", {"result": "ok"})
                                return
                    for chunk in decoder.flush():
                        text = chunk_text(chunk)
                        if text:
                            yield StreamFragment(text)
        except TimeoutError:
            logger.error("generation stream exceeded %ss", self.settings.llm_stream_timeout_sec)
            metrics.inc("chat_llm_stream_total", {"result": "timeout"})
            yield StreamFragment(STREAM_TIMEOUT_MESSAGE, is_error=True)
            return
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.error("generation stream failed: %s", exc)
            metrics.inc("chat_llm_stream_total", {"result": "error"})
            yield StreamFragment(STREAM_FAILED_MESSAGE, is_error=True)
            return
        metrics.inc("chat_llm_stream_total", {"result": "ok"})
