"""Bounded retries for outbound source-system calls."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt

from ..connectors.base import CallResult
from ..models.repository import IntegrationLogCreate
from ..monitoring.metrics import record_outbound_attempt
from ..schemas.connector import RetryPolicy
from .log_writer import IntegrationLogWriter

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class AttemptContext:
    """Identifies the run and operation that outbound attempts belong to."""

    connector_id: int
    correlation_id: str
    operation_type: str
    initiated_by: str


def is_retryable(result: CallResult) -> bool:
    """Retry decision: only transient outcomes are retried."""

    return result.is_transient


def _wait_for(policy: RetryPolicy) -> Callable[[RetryCallState], float]:
    def _wait(retry_state: RetryCallState) -> float:
        return policy.delay_before_attempt(retry_state.attempt_number + 1)

    return _wait


def _return_last_result(retry_state: RetryCallState) -> CallResult:
    outcome = retry_state.outcome
    if outcome is None:  # pragma: no cover - tenacity always sets an outcome
        raise RuntimeError("Retry attempt completed without outcome")
    return outcome.result()


class RetryPolicyExecutor:
    """Run one outbound operation under a connector's retry policy.

    Every attempt is written as its own integration log entry under the
    caller's correlation id. Exhaustion returns the last failed result.
    """

    def __init__(self, log_writer: IntegrationLogWriter, *, sleep: Sleep = asyncio.sleep):
        self._log_writer = log_writer
        self._sleep = sleep

    async def execute(
        self,
        operation: Callable[[], Awaitable[CallResult]],
        policy: RetryPolicy,
        context: AttemptContext,
    ) -> CallResult:
        total_attempts = policy.max_attempts + 1
        attempt_number = 0

        async def _attempt() -> CallResult:
            nonlocal attempt_number
            attempt_number += 1
            started_at = datetime.now(timezone.utc)
            result = await operation()
            record_outbound_attempt(context.operation_type, result.kind.value)

            if result.ok:
                status = "success"
            elif is_retryable(result) and attempt_number < total_attempts:
                status = "retrying"
            else:
                status = "failure"
            await self._log_writer.awrite(
                IntegrationLogCreate(
                    connector_id=context.connector_id,
                    correlation_id=context.correlation_id,
                    operation_type=context.operation_type,
                    status=status,
                    initiated_by=context.initiated_by,
                    http_method=result.method,
                    endpoint=result.endpoint,
                    http_status_code=result.status_code,
                    attempt=attempt_number,
                    error_message=result.error_message,
                    error_details=(
                        json.dumps(result.error_details, default=str)
                        if result.error_details
                        else None
                    ),
                    duration_ms=result.duration_ms,
                    started_at=started_at,
                    completed_at=started_at + timedelta(milliseconds=result.duration_ms),
                )
            )
            return result

        retrying = AsyncRetrying(
            stop=stop_after_attempt(total_attempts),
            wait=_wait_for(policy),
            retry=retry_if_result(is_retryable),
            sleep=self._sleep,
            retry_error_callback=_return_last_result,
            reraise=True,
        )
        return await retrying(_attempt)
