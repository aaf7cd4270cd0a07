import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError
from unittest.mock import MagicMock

from main import app
from routers.dependencies import get_credit_ledger, get_generation_orchestrator, get_history_recorder
from services.credits import CreditLedger
from services.generation import GenerationOrchestrator, PollPolicy
from services.history import HistoryRecorder
from services.provider import PollResult, PollStatus
from services.rate_limiter import LocalCounterStore, RateLimiter
from services.session_token import create_session_token


TTS_USER_ID = "tts-user"
TTS_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TTS_USER_ID, 'tts@example.com')['token']}"}


class ScriptedProvider:
    def __init__(self):
        self.outcome = PollResult(PollStatus.COMPLETED, result_url="https://cdn.test/tts.mp3")
        self.submitted = 0

    async def submit(self, text, voice_id, voice_settings=None):
        self.submitted += 1
        return f"task-{self.submitted}"

    async def poll(self, job_id):
        return self.outcome


async def _no_sleep(delay):
    return None


@pytest_asyncio.fixture
async def tts_client(session_maker):
    provider = ScriptedProvider()
    ledger = CreditLedger(session_maker)
    history = HistoryRecorder(session_maker)
    orchestrator = GenerationOrchestrator(
        ledger,
        RateLimiter(LocalCounterStore()),
        provider,
        history,
        PollPolicy(max_attempts=3, interval_seconds=0.0),
        reconciler=MagicMock(),
        sleep=_no_sleep,
    )

    app.dependency_overrides[get_generation_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_credit_ledger] = lambda: ledger
    app.dependency_overrides[get_history_recorder] = lambda: history
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, provider

    app.dependency_overrides.pop(get_generation_orchestrator, None)
    app.dependency_overrides.pop(get_credit_ledger, None)
    app.dependency_overrides.pop(get_history_recorder, None)


@pytest.mark.asyncio
async def test_tts_requires_session_token(tts_client):
    client, provider = tts_client

    response = await client.post("/tts", json={"text": "Hello", "voice_id": "voice_a"})

    assert response.status_code == 401
    payload = response.json()
    assert payload["success"] is False
    assert payload["kind"] == "Unauthenticated"
    assert provider.submitted == 0


@pytest.mark.asyncio
async def test_tts_generates_and_reports_usage(tts_client):
    client, _ = tts_client

    response = await client.post(
        "/tts",
        json={"text": "Hello there", "voice_id": "voice_a", "voice_settings": {"speed": 1.1}},
        headers=TTS_AUTH_HEADER,
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["audio_url"] == "https://cdn.test/tts.mp3"
    assert payload["task_id"] == "task-1"
    assert payload["billing_status"] == "billed"
    assert payload["usage"] == {"characters": 11, "credits_used": 11, "credits_remaining": 4989}

    history = await client.get("/account/history", headers=TTS_AUTH_HEADER)
    assert history.status_code == 200
    assert history.json()["count"] == 1
    assert history.json()["history"][0]["task_id"] == "task-1"


@pytest.mark.asyncio
async def test_tts_insufficient_credits_returns_402(tts_client, make_account):
    client, provider = tts_client
    await make_account(TTS_USER_ID, remaining=500)

    response = await client.post("/tts", json={"text": "a" * 600, "voice_id": "voice_a"}, headers=TTS_AUTH_HEADER)

    assert response.status_code == 402
    payload = response.json()
    assert payload["kind"] == "InsufficientFunds"
    assert payload["credits_needed"] == 600
    assert payload["credits_remaining"] == 500
    assert "Upgrade" in payload["message"]
    assert provider.submitted == 0


@pytest.mark.asyncio
async def test_tts_rate_limit_returns_retry_after(tts_client):
    client, _ = tts_client

    for _ in range(3):
        ok = await client.post("/tts", json={"text": "Hi", "voice_id": "voice_a"}, headers=TTS_AUTH_HEADER)
        assert ok.status_code == 200

    response = await client.post("/tts", json={"text": "Hi", "voice_id": "voice_a"}, headers=TTS_AUTH_HEADER)

    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) > 0
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert response.json()["kind"] == "RateLimited"
    assert response.json()["retry_after"] > 0


@pytest.mark.asyncio
async def test_tts_timeout_is_reported_as_still_processing(tts_client):
    client, provider = tts_client
    provider.outcome = PollResult(PollStatus.PENDING)

    response = await client.post("/tts", json={"text": "Hello", "voice_id": "voice_a"}, headers=TTS_AUTH_HEADER)

    assert response.status_code == 202
    payload = response.json()
    assert payload["kind"] == "GenerationTimedOut"
    assert payload["state"] == "timed_out"
    assert payload["task_id"] == "task-1"
    assert payload["retryable"] is True

    credits = await client.get("/account/credits", headers=TTS_AUTH_HEADER)
    assert credits.json()["balance"]["remaining_credits"] == 5000


@pytest.mark.asyncio
async def test_tts_provider_failure_returns_502(tts_client):
    client, provider = tts_client
    provider.outcome = PollResult(PollStatus.FAILED, error_message="voice unavailable")

    response = await client.post("/tts", json={"text": "Hello", "voice_id": "voice_a"}, headers=TTS_AUTH_HEADER)

    assert response.status_code == 502
    assert response.json()["kind"] == "GenerationFailed"
    assert "voice unavailable" in response.json()["message"]


@pytest.mark.asyncio
async def test_tts_rejects_malformed_voice_id(tts_client):
    client, provider = tts_client

    response = await client.post("/tts", json={"text": "Hello", "voice_id": "../etc"}, headers=TTS_AUTH_HEADER)

    assert response.status_code == 422
    assert provider.submitted == 0


@pytest.mark.asyncio
async def test_history_store_outage_returns_503(tts_client):
    client, _ = tts_client

    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    app.dependency_overrides[get_history_recorder] = lambda: HistoryRecorder(broken_session)
    response = await client.get("/account/history", headers=TTS_AUTH_HEADER)

    assert response.status_code == 503
    assert response.json()["kind"] == "StoreUnavailable"
