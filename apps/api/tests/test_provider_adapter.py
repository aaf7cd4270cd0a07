import json

import httpx
import pytest

from services.errors import ProviderRejected, ProviderUnavailable
from services.provider import PollStatus, ProviderAdapter, VoiceSettings


def _adapter(handler):
    return ProviderAdapter(
        base_url="https://provider.test/api/v1",
        api_key="test-key",
        model="tts-model",
        transport=httpx.MockTransport(handler),
    )


def _envelope(data, code=200, msg="success"):
    return httpx.Response(200, json={"code": code, "msg": msg, "data": data})


@pytest.mark.asyncio
async def test_submit_posts_task_and_returns_task_id():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return _envelope({"taskId": "task-123"})

    job_id = await _adapter(handler).submit("Hello world", "voice_a", VoiceSettings(speed=1.1))

    assert job_id == "task-123"
    assert seen["path"] == "/api/v1/jobs/createTask"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == "tts-model"
    assert seen["body"]["input"]["text"] == "Hello world"
    assert seen["body"]["input"]["voice"] == "voice_a"
    assert seen["body"]["input"]["speed"] == 1.1
    assert seen["body"]["input"]["use_speaker_boost"] is True


@pytest.mark.asyncio
async def test_submit_maps_4xx_to_rejected():
    adapter = _adapter(lambda request: httpx.Response(422, json={"error": "bad voice"}))

    with pytest.raises(ProviderRejected) as exc_info:
        await adapter.submit("Hello", "voice_a")
    assert exc_info.value.provider_status == 422


@pytest.mark.asyncio
async def test_submit_maps_5xx_to_unavailable():
    adapter = _adapter(lambda request: httpx.Response(503, text="upstream down"))

    with pytest.raises(ProviderUnavailable):
        await adapter.submit("Hello", "voice_a")


@pytest.mark.asyncio
async def test_submit_maps_network_error_to_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailable):
        await _adapter(handler).submit("Hello", "voice_a")


@pytest.mark.asyncio
async def test_envelope_error_codes_are_classified():
    rejected = _adapter(lambda request: _envelope(None, code=402, msg="insufficient provider balance"))
    unavailable = _adapter(lambda request: _envelope(None, code=500, msg="internal"))

    with pytest.raises(ProviderRejected):
        await rejected.submit("Hello", "voice_a")
    with pytest.raises(ProviderUnavailable):
        await unavailable.submit("Hello", "voice_a")


@pytest.mark.asyncio
async def test_poll_success_returns_first_result_url():
    def handler(request):
        assert request.url.params["taskId"] == "task-1"
        return _envelope(
            {
                "state": "success",
                "resultJson": json.dumps({"resultUrls": ["https://cdn.test/a.mp3", "https://cdn.test/b.mp3"]}),
            }
        )

    result = await _adapter(handler).poll("task-1")

    assert result.status == PollStatus.COMPLETED
    assert result.result_url == "https://cdn.test/a.mp3"


@pytest.mark.asyncio
async def test_poll_success_without_url_is_failure():
    result = await _adapter(lambda request: _envelope({"state": "success", "resultJson": "{}"})).poll("task-1")

    assert result.status == PollStatus.FAILED


@pytest.mark.asyncio
async def test_poll_failed_carries_provider_message():
    handler = lambda request: _envelope({"state": "fail", "failMsg": "voice unavailable"})

    result = await _adapter(handler).poll("task-1")

    assert result.status == PollStatus.FAILED
    assert result.error_message == "voice unavailable"


@pytest.mark.asyncio
@pytest.mark.parametrize("state", ["waiting", "queuing", "generating", ""])
async def test_poll_non_terminal_states_are_pending(state):
    result = await _adapter(lambda request: _envelope({"state": state})).poll("task-1")

    assert result.status == PollStatus.PENDING


def test_voice_settings_are_bounded():
    with pytest.raises(ValueError):
        VoiceSettings(speed=2.0)
    with pytest.raises(ValueError):
        VoiceSettings(stability=-0.1)
    defaults = VoiceSettings()
    assert (defaults.stability, defaults.similarity_boost, defaults.style, defaults.speed) == (0.5, 0.75, 0.0, 1.0)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        [1, 2],
        "not an envelope",
        {"code": "oops", "msg": "success", "data": {"state": "success"}},
        {"code": 200, "msg": "success", "data": ["task-1"]},
    ],
)
async def test_poll_malformed_envelope_is_unavailable(body):
    adapter = _adapter(lambda request: httpx.Response(200, json=body))

    with pytest.raises(ProviderUnavailable):
        await adapter.poll("task-1")


@pytest.mark.asyncio
async def test_submit_with_list_body_is_unavailable():
    adapter = _adapter(lambda request: httpx.Response(200, json=[{"taskId": "task-1"}]))

    with pytest.raises(ProviderUnavailable):
        await adapter.submit("Hello", "voice_a")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result_json",
    [
        {"resultUrls": "https://cdn.test/a.mp3"},
        {"resultUrls": []},
        {"resultUrls": [None]},
        {"resultUrls": [42]},
        ["https://cdn.test/a.mp3"],
    ],
)
async def test_poll_success_with_malformed_result_urls_is_failure(result_json):
    handler = lambda request: _envelope({"state": "success", "resultJson": json.dumps(result_json)})

    result = await _adapter(handler).poll("task-1")

    assert result.status == PollStatus.FAILED
    assert result.result_url is None
