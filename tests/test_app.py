import json
import logging

import pytest
from fastapi.testclient import TestClient

from lumie.app import configure_logging, create_app
from lumie.config import load_settings


@pytest.fixture
def settings(tmp_path, monkeypatch):
    data = tmp_path / "intents.json"
    data.write_text(
        json.dumps(
            [
                {"intent": "greeting", "utterances": ["hi", "hello"], "answers": ["Hi!", "Hello!"]},
                {"intent": "None", "utterances": [], "answers": ["Sorry?"]},
            ]
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("TRAINING_DATA_FILES", str(data))
    monkeypatch.setenv("FRONTEND_DIR", str(tmp_path / "no-frontend"))
    monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "2")
    monkeypatch.setenv("RATE_LIMIT_WINDOW_MS", "60000")
    monkeypatch.setenv("SWEEP_INTERVAL_SEC", "0")
    monkeypatch.delenv("INTENT_LOG_PATH", raising=False)
    return load_settings()


@pytest.fixture
def client(settings):
    return TestClient(create_app(settings=settings))


def test_chat_exact_match(client):
    response = client.post("/api/chat", json={"message": "hi", "userId": "u1"})

    assert response.status_code == 200
    body = response.json()
    assert body["intent"] == "greeting"
    assert body["confidence"] == 1
    assert body["context"] == "none"
    assert body["reply"] in {"Hi!", "Hello!"}


def test_chat_rate_limited(client):
    for _ in range(2):
        assert client.post("/api/chat", json={"message": "hi", "userId": "u1"}).status_code == 200

    response = client.post("/api/chat", json={"message": "hi", "userId": "u1"})

    assert response.status_code == 200
    body = response.json()
    assert body["context"] == "rate-limit"
    assert "retryAt" in body
    assert "Please wait" in body["reply"]


def test_user_id_falls_back_to_header_then_client(client):
    for _ in range(2):
        client.post("/api/chat", json={"message": "hi"}, headers={"x-user-id": "header-user"})
    limited = client.post("/api/chat", json={"message": "hi"}, headers={"x-user-id": "header-user"})
    other = client.post("/api/chat", json={"message": "hi"})

    assert limited.json()["context"] == "rate-limit"
    assert other.json()["intent"] == "greeting"


@pytest.mark.parametrize(
    "payload",
    [{}, {"message": ""}, {"message": "   "}, {"message": 5}, {"message": "hi", "userId": ["x"]}, [1, 2]],
)
def test_invalid_input_is_client_error(client, payload):
    response = client.post("/api/chat", json=payload)

    assert response.status_code == 400
    body = response.json()
    assert body["context"] == "invalid-input"
    assert body["confidence"] == 0


def test_root_without_frontend(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.text == "Lumie API is running..."


def test_root_serves_frontend(settings, tmp_path, monkeypatch):
    frontend = tmp_path / "frontend"
    frontend.mkdir()
    (frontend / "index.html").write_text("<html>lumie</html>", encoding="utf-8")
    monkeypatch.setenv("FRONTEND_DIR", str(frontend))

    client = TestClient(create_app(settings=load_settings()))

    assert "lumie" in client.get("/").text
    assert client.get("/static/index.html").status_code == 200


def test_health_reports_counts(client):
    client.post("/api/chat", json={"message": "hi", "userId": "u1"})
    body = client.get("/health").json()

    assert body == {"status": "ok", "intents": 2, "sessions": 1}


def test_intent_log_written(settings, tmp_path, monkeypatch):
    log_path = tmp_path / "intent_logs.txt"
    monkeypatch.setenv("INTENT_LOG_PATH", str(log_path))
    logged_settings = load_settings()
    client = TestClient(create_app(settings=logged_settings))
    intent_logger = logging.getLogger("lumie.intents")
    try:
        client.post("/api/chat", json={"message": "Hello", "userId": "u9"})
        for handler in intent_logger.handlers:
            handler.flush()
        line = log_path.read_text(encoding="utf-8").strip()
    finally:
        configure_logging(settings)

    assert '| u9 | Intent: greeting | Message: "Hello"' in line


def test_lifespan_starts_and_stops_sweeper(settings, monkeypatch):
    monkeypatch.setenv("SWEEP_INTERVAL_SEC", "30")
    app = create_app(settings=load_settings())

    with TestClient(app):
        assert app.state.sweeper.running
    assert not app.state.sweeper.running


def test_intent_log_escapes_newlines(settings, tmp_path, monkeypatch):
    log_path = tmp_path / "intent_logs.txt"
    monkeypatch.setenv("INTENT_LOG_PATH", str(log_path))
    client = TestClient(create_app(settings=load_settings()))
    intent_logger = logging.getLogger("lumie.intents")
    forged = 'hi"\n2026-01-01T00:00:00+00:00 | admin | Intent: greeting | Message: "x'
    try:
        client.post("/api/chat", json={"message": forged, "userId": "u\nadmin"})
        for handler in intent_logger.handlers:
            handler.flush()
        lines = log_path.read_text(encoding="utf-8").splitlines()
    finally:
        configure_logging(settings)

    assert len(lines) == 1
    assert "| u\\nadmin | Intent:" in lines[0]
    assert lines[0].endswith(json.dumps(forged))


def test_intent_log_handler_replaced_when_path_changes(settings, tmp_path, monkeypatch):
    intent_logger = logging.getLogger("lumie.intents")
    first, second = tmp_path / "first.txt", tmp_path / "second.txt"
    try:
        monkeypatch.setenv("INTENT_LOG_PATH", str(first))
        create_app(settings=load_settings())
        monkeypatch.setenv("INTENT_LOG_PATH", str(second))
        create_app(settings=load_settings())

        file_handlers = [h for h in intent_logger.handlers if isinstance(h, logging.FileHandler)]
        assert [h.baseFilename for h in file_handlers] == [str(second.resolve())]
    finally:
        configure_logging(settings)

    assert not [h for h in intent_logger.handlers if isinstance(h, logging.FileHandler)]
    assert intent_logger.disabled
