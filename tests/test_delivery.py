import json

import httpx
import pytest

from babygpt.delivery import (
    DeliveryManager,
    DeliveryState,
    compute_delay_ms,
    retry_hint_seconds,
)

ENDPOINT = "https://api.telegram.org/botTOKEN/sendMessage"
PAYLOAD = {"chat_id": "42", "text": "hello"}


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


def scripted_transport(responses, requests):
    """Serve scripted steps in order, repeating the last one.

    A step is a response factory or a transport error class to raise.
    """
    script = list(responses)

    def handler(request):
        requests.append(json.loads(request.content))
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, type) and issubclass(step, httpx.TransportError):
            raise step("network down", request=request)
        return step()

    return httpx.MockTransport(handler)


def ok_response():
    return httpx.Response(200, json={"ok": True, "result": {"message_id": 7}})


def status(code, **kwargs):
    return lambda: httpx.Response(code, **kwargs)


class TestComputeDelay:
    def test_exponential_schedule_is_capped(self):
        assert [compute_delay_ms(n) for n in range(7)] == [250, 500, 1000, 2000, 4000, 4000, 4000]
        assert compute_delay_ms(10_000) == 4000

    def test_hint_overrides_schedule(self):
        assert compute_delay_ms(0, hint_seconds=3) == 3000
        assert compute_delay_ms(5, hint_seconds=0.5) == 500
        assert compute_delay_ms(2, hint_seconds=0) == 0

    def test_custom_bounds(self):
        assert compute_delay_ms(3, base_delay_ms=100, max_delay_ms=500) == 500
        assert compute_delay_ms(1, base_delay_ms=100, max_delay_ms=500) == 200


class TestRetryHint:
    def test_header(self):
        assert retry_hint_seconds(httpx.Response(429, headers={"Retry-After": "3"})) == 3.0

    def test_body_parameters(self):
        response = httpx.Response(429, json={"ok": False, "parameters": {"retry_after": 7}})
        assert retry_hint_seconds(response) == 7.0

    def test_unparseable_hint(self):
        response = httpx.Response(503, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, text="busy")
        assert retry_hint_seconds(response) is None


class TestDeliveryManager:
    @pytest.mark.asyncio
    async def test_success_first_try(self):
        requests = []
        sleep = RecordingSleep()
        async with httpx.AsyncClient(transport=scripted_transport([ok_response], requests)) as client:
            ack = await DeliveryManager(client, sleep=sleep).send(ENDPOINT, PAYLOAD)
        assert ack == {"ok": True, "result": {"message_id": 7}}
        assert requests == [PAYLOAD]
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_rate_limited_twice_with_hint_then_success(self):
        limited = status(429, json={"ok": False, "parameters": {"retry_after": 3}})
        requests = []
        sleep = RecordingSleep()
        transport = scripted_transport([limited, limited, ok_response], requests)
        async with httpx.AsyncClient(transport=transport) as client:
            report = await DeliveryManager(client, sleep=sleep).deliver(ENDPOINT, PAYLOAD)
        assert report.outcome is DeliveryState.SUCCESS
        assert len(report.attempts) == 3
        assert len(requests) == 3
        assert sleep.calls == [3.0, 3.0]
        assert report.waited_ms >= 6000

    @pytest.mark.asyncio
    async def test_server_and_transport_errors_back_off(self):
        requests = []
        sleep = RecordingSleep()
        transport = scripted_transport([status(502), httpx.ConnectError, ok_response], requests)
        async with httpx.AsyncClient(transport=transport) as client:
            report = await DeliveryManager(client, sleep=sleep).deliver(ENDPOINT, PAYLOAD)
        assert report.outcome is DeliveryState.SUCCESS
        assert sleep.calls == [0.25, 0.5]
        assert [attempt.status for attempt in report.attempts] == [502, None, 200]

    @pytest.mark.asyncio
    async def test_exhausts_after_fifty_retries(self):
        requests = []
        sleep = RecordingSleep()
        transport = scripted_transport([status(503)], requests)
        async with httpx.AsyncClient(transport=transport) as client:
            manager = DeliveryManager(client, sleep=sleep)
            report = await manager.deliver(ENDPOINT, PAYLOAD)
            ack = await manager.send(ENDPOINT, PAYLOAD)
        assert report.outcome is DeliveryState.EXHAUSTED
        assert len(report.attempts) == 51
        assert len(requests) == 102
        assert ack is None
        assert sleep.calls[:5] == [0.25, 0.5, 1.0, 2.0, 4.0]
        assert max(sleep.calls) == 4.0
        assert len(sleep.calls) == 100

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self):
        requests = []
        sleep = RecordingSleep()
        bad_request = status(400, json={"ok": False, "description": "Bad Request: chat not found"})
        async with httpx.AsyncClient(transport=scripted_transport([bad_request], requests)) as client:
            manager = DeliveryManager(client, sleep=sleep)
            report = await manager.deliver(ENDPOINT, PAYLOAD)
        assert report.outcome is DeliveryState.PERMANENT_FAILURE
        assert report.status == 400
        assert "chat not found" in report.error
        assert len(requests) == 1
        assert sleep.calls == []

    @pytest.mark.asyncio
    async def test_custom_retry_ceiling(self):
        requests = []
        transport = scripted_transport([status(500)], requests)
        async with httpx.AsyncClient(transport=transport) as client:
            manager = DeliveryManager(client, max_retries=2, sleep=RecordingSleep())
            assert await manager.send(ENDPOINT, PAYLOAD) is None
        assert len(requests) == 3

    @pytest.mark.asyncio
    async def test_non_json_success_body(self):
        requests = []
        transport = scripted_transport([status(200, text="OK")], requests)
        async with httpx.AsyncClient(transport=transport) as client:
            assert await DeliveryManager(client, sleep=RecordingSleep()).send(ENDPOINT, PAYLOAD) == {}
