from fastapi.testclient import TestClient

from app.core.chat import get_pipeline
from app.core.metrics import metrics
from app.main import app


class FakePipeline:
    def __init__(self, healthy=True):
        self.healthy = healthy
        self.queries = []

    async def run_query(self, user_id, text, history=None):
        self.queries.append((user_id, text, history))
        return {"reply": "Your rate is 92%.", "retrieval": {"intent": "attendance"}, "intent": "attendance"}

    async def run_chat_stream(self, user_id, text):
        yield 'event: delta\ndata: {"delta": "Hi"}\n\n'
        yield 'event: done\ndata: {"status": "ok"}\n\n'

    async def status(self):
        return {"ok": self.healthy, "base_url": "http://llm.test", "model": "m"}


def _client(pipeline):
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    return TestClient(app)


def teardown_function(_):
    app.dependency_overrides.clear()


def test_query_requires_identity():
    pipeline = FakePipeline()
    client = _client(pipeline)

    assert client.post("/chatbot/query", json={"message": "hi"}).status_code == 401
    assert client.post("/chatbot/query", json={"message": "hi"}, headers={"x-user-id": "abc"}).status_code == 401
    assert pipeline.queries == []


def test_query_returns_reply_and_passes_history():
    pipeline = FakePipeline()
    client = _client(pipeline)
    response = client.post(
        "/chatbot/query",
        json={"message": "  my rate?  ", "conversation_history": [{"role": "user", "content": "hello"}]},
        headers={"x-user-id": "70"},
    )

    assert response.status_code == 200
    assert response.json()["reply"] == "Your rate is 92%."
    assert pipeline.queries == [(70, "my rate?", [{"role": "user", "content": "hello"}])]


def test_query_validation_errors():
    client = _client(FakePipeline())
    headers = {"x-user-id": "70"}
    assert client.post("/chatbot/query", json={}, headers=headers).status_code == 422
    assert client.post("/chatbot/query", json={"message": "   "}, headers=headers).status_code == 422
    assert client.post("/chatbot/query", json={"message": "x" * 2001}, headers=headers).status_code == 422


def test_stream_sets_no_buffering_headers():
    client = _client(FakePipeline())
    response = client.post("/chatbot/stream", json={"query": "hi"}, headers={"x-user-id": "70"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"
    assert "event: delta" in response.text
    assert response.text.rstrip().endswith('data: {"status": "ok"}')


def test_status_maps_health_to_http_code():
    client = _client(FakePipeline(healthy=True))
    ok = client.get("/chatbot/status", headers={"x-user-id": "1"})
    assert ok.status_code == 200
    assert ok.json() == {"ai": {"ok": True, "base_url": "http://llm.test", "model": "m"}}

    app.dependency_overrides[get_pipeline] = lambda: FakePipeline(healthy=False)
    assert client.get("/chatbot/status", headers={"x-user-id": "1"}).status_code == 503


def test_health_and_metrics():
    metrics.reset()
    client = _client(FakePipeline())
    client.post("/chatbot/query", json={"message": "hi"})

    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/metrics").json()["chat_auth_rejected_total"] == 1
