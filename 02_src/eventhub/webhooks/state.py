"""Delivery record state machine.

    pending ──ok──────────────▶ success
    pending ──fail, retries──▶ retrying ──ok──▶ success
    retrying ──fail, exhausted or permanent──▶ failed

``success`` and ``failed`` are terminal; only a manual retry may attempt a
``failed`` record again, and it stays ``failed`` if that attempt fails too.
Functions here are pure: they return new records and never do I/O.
"""

from dataclasses import replace
from datetime import datetime, timedelta

from ..errors import DeliveryStateError
from ..models import (
    AttemptOutcome,
    DeliveryRecord,
    DeliveryResponse,
    DeliveryStatus,
    RetryPolicy,
)

# 4xx answers that are worth retrying
RETRYABLE_CLIENT_ERRORS = frozenset({408, 425, 429})


def is_permanent_failure(outcome: AttemptOutcome) -> bool:
    """A client error the endpoint will keep returning."""
    code = outcome.status_code
    return code is not None and 400 <= code < 500 and code not in RETRYABLE_CLIENT_ERRORS


def describe_failure(outcome: AttemptOutcome) -> str:
    if outcome.error:
        return outcome.error
    return f"HTTP {outcome.status_code}"


def can_attempt(record: DeliveryRecord, manual: bool = False) -> bool:
    if record.status is DeliveryStatus.SUCCESS:
        return False
    if record.status is DeliveryStatus.FAILED:
        return manual
    return True


def apply_outcome(
    record: DeliveryRecord,
    outcome: AttemptOutcome,
    policy: RetryPolicy,
    now: datetime,
    manual: bool = False,
) -> DeliveryRecord:
    """Record one attempt and move the record to its next state."""
    if not can_attempt(record, manual):
        raise DeliveryStateError(
            f"Delivery {record.id} is {record.status.value} and cannot be attempted"
        )

    attempts = record.attempts + 1
    response = record.last_response
    if outcome.status_code is not None:
        response = DeliveryResponse.truncated(outcome.status_code, outcome.body)

    common = dict(
        attempts=attempts,
        last_attempt_at=now,
        last_response=response,
        duration_ms=outcome.duration_ms,
        updated_at=now,
    )

    if outcome.ok:
        return replace(
            record,
            status=DeliveryStatus.SUCCESS,
            next_retry_at=None,
            last_error=None,
            **common,
        )

    error = describe_failure(outcome)
    exhausted = attempts >= policy.max_retries
    if record.status is DeliveryStatus.FAILED or exhausted or is_permanent_failure(outcome):
        return replace(
            record,
            status=DeliveryStatus.FAILED,
            next_retry_at=None,
            last_error=error,
            **common,
        )

    return replace(
        record,
        status=DeliveryStatus.RETRYING,
        next_retry_at=now + timedelta(seconds=policy.delay_for(attempts)),
        last_error=error,
        **common,
    )
