"""Best-effort outbound delivery with bounded retries and adaptive backoff.

Each send runs a small state machine:

    ATTEMPTING(n) -> SUCCESS
                  -> PERMANENT_FAILURE        (non-retryable status)
                  -> WAITING(delay) -> ATTEMPTING(n + 1)
                  -> EXHAUSTED                (retry ceiling reached)

HTTP 429, 5xx and transport errors are retryable. The wait before retry n
(n = 0 for the first retry) is min(max_delay, base_delay * 2**n), unless the
server supplied a wait hint, which replaces the computed delay for that retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from .errors import PermanentChannelError, TransientChannelError

logger = logging.getLogger("babygpt.delivery")

DEFAULT_BASE_DELAY_MS = 250
DEFAULT_MAX_DELAY_MS = 4000
DEFAULT_MAX_RETRIES = 50

Sleeper = Callable[[float], Awaitable[None]]


class DeliveryState(str, Enum):
    ATTEMPTING = "attempting"
    WAITING = "waiting"
    SUCCESS = "success"
    PERMANENT_FAILURE = "permanent_failure"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class DeliveryAttempt:
    endpoint: str
    payload: Dict[str, Any]
    attempt_number: int
    next_delay_ms: Optional[int] = None
    status: Optional[int] = None


@dataclass
class DeliveryReport:
    outcome: DeliveryState
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    ack: Optional[Dict[str, Any]] = None
    status: Optional[int] = None
    error: str = ""

    @property
    def waited_ms(self) -> int:
        return sum(attempt.next_delay_ms or 0 for attempt in self.attempts)


def compute_delay_ms(
    retry_index: int,
    hint_seconds: Optional[float] = None,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
) -> int:
    """Delay before retry `retry_index`; a server hint overrides the exponential schedule."""
    if hint_seconds is not None and hint_seconds >= 0:
        return int(round(hint_seconds * 1000))
    # Cap the exponent so huge indexes do not build enormous integers.
    exponent = min(max(retry_index, 0), 32)
    return min(max_delay_ms, base_delay_ms * (2 ** exponent))


def retry_hint_seconds(response: httpx.Response) -> Optional[float]:
    """Purpose: Read a server-supplied wait hint from a failed response.
    Inputs/Outputs: Input is an httpx.Response; output is seconds or None.
    Side Effects / State: None.
    Dependencies: Retry-After header, then the Telegram `parameters.retry_after` body field.
    Failure Modes: Unparseable values (including HTTP-date headers) are ignored.
    If Removed: Rate-limited sends retry too early and keep getting 429s.
    Testing Notes: Cover header-only, body-only, and malformed hints.
    """
    header = response.headers.get("Retry-After")
    if header:
        try:
            return max(0.0, float(header.strip()))
        except ValueError:
            pass
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        parameters = body.get("parameters")
        if isinstance(parameters, dict) and isinstance(parameters.get("retry_after"), (int, float)):
            return max(0.0, float(parameters["retry_after"]))
    return None


class DeliveryManager:
    def __init__(
        self,
        client: httpx.AsyncClient,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """Purpose: Configure retry policy around a shared httpx client.
        Inputs/Outputs: Inputs are the client, backoff bounds, retry ceiling and a sleep
            coroutine; no return value.
        Side Effects / State: None at init.
        Dependencies: httpx.AsyncClient; asyncio.sleep unless a test sleeper is injected.
        Failure Modes: None at init.
        If Removed: Replies are lost on the first 429 or network blip.
        Testing Notes: Inject a recording sleeper and an httpx.MockTransport.
        """
        self._client = client
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._max_retries = max_retries
        self._sleep = sleep

    async def send(self, endpoint: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Send once with retries; returns the acknowledgment body or None. Never raises."""
        report = await self.deliver(endpoint, payload)
        return report.ack

    async def deliver(self, endpoint: str, payload: Dict[str, Any]) -> DeliveryReport:
        """Purpose: Run the delivery state machine for one payload.
        Inputs/Outputs: Inputs are endpoint URL and JSON payload; output is a DeliveryReport.
        Side Effects / State: HTTP POSTs and sleeps between retries.
        Dependencies: _attempt, compute_delay_ms.
        Failure Modes: None raised; PERMANENT_FAILURE and EXHAUSTED are reported outcomes.
        If Removed: send() has no retry semantics.
        Testing Notes: 1 + max_retries attempts at most; delays follow the schedule.
        """
        attempts: List[DeliveryAttempt] = []
        attempt_number = 1
        retry_index = 0
        state = DeliveryState.ATTEMPTING
        label = endpoint.rsplit("/", 1)[-1]

        while state is DeliveryState.ATTEMPTING:
            try:
                ack, status = await self._attempt(endpoint, payload)
            except TransientChannelError as exc:
                if retry_index >= self._max_retries:
                    attempts.append(DeliveryAttempt(endpoint, payload, attempt_number, None, exc.status))
                    logger.error(
                        "delivery exhausted method=%s attempts=%s last_error=%s", label, attempt_number, exc
                    )
                    return DeliveryReport(DeliveryState.EXHAUSTED, attempts, None, exc.status, str(exc))
                delay_ms = compute_delay_ms(
                    retry_index, exc.retry_after, self._base_delay_ms, self._max_delay_ms
                )
                attempts.append(DeliveryAttempt(endpoint, payload, attempt_number, delay_ms, exc.status))
                logger.warning(
                    "delivery retry method=%s attempt=%s status=%s delay_ms=%s hinted=%s",
                    label,
                    attempt_number,
                    exc.status,
                    delay_ms,
                    exc.retry_after is not None,
                )
                state = DeliveryState.WAITING
                await self._sleep(delay_ms / 1000.0)
                retry_index += 1
                attempt_number += 1
                state = DeliveryState.ATTEMPTING
                continue
            except PermanentChannelError as exc:
                attempts.append(DeliveryAttempt(endpoint, payload, attempt_number, None, exc.status))
                logger.error("delivery failed method=%s attempt=%s error=%s", label, attempt_number, exc)
                return DeliveryReport(DeliveryState.PERMANENT_FAILURE, attempts, None, exc.status, str(exc))

            attempts.append(DeliveryAttempt(endpoint, payload, attempt_number, None, status))
            logger.info("delivery ok method=%s attempts=%s", label, attempt_number)
            return DeliveryReport(DeliveryState.SUCCESS, attempts, ack, status)

        raise AssertionError(f"unreachable delivery state {state}")

    async def _attempt(self, endpoint: str, payload: Dict[str, Any]) -> Tuple[Dict[str, Any], int]:
        try:
            response = await self._client.post(endpoint, json=payload)
        except httpx.TransportError as exc:
            raise TransientChannelError(f"transport error: {exc!r}") from exc

        status = response.status_code
        if response.is_success:
            return _parse_ack(response), status
        if status == 429 or status >= 500:
            raise TransientChannelError(
                f"HTTP {status}: {response.text[:200]}", status=status, retry_after=retry_hint_seconds(response)
            )
        raise PermanentChannelError(f"HTTP {status}: {response.text[:200]}", status=status)


def _parse_ack(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"result": body}
