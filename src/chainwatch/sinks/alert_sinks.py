"""
AlertSink implementations.

- LogAlertSink: writes alerts to the process log (local runs, dry runs)
- SnsAlertSink: publishes alerts to an SNS topic; subscribers fan out to
  e-mail, chat, ticketing, ...
"""

import asyncio
import json
import logging
from typing import Any

import boto3

from chainwatch.framework.interfaces import AlertSink
from chainwatch.framework.models import DeadLetter, ScoredEvent

logger = logging.getLogger(__name__)

ALERT_TYPE_SCORED = "compliance_alert"
ALERT_TYPE_EXHAUSTED = "processing_exhausted"


def alert_message(scored: ScoredEvent, flags: tuple[str, ...]) -> dict[str, Any]:
    event = scored.event
    return {
        "alert_type": ALERT_TYPE_SCORED,
        "event_id": scored.event_id,
        "source_id": event.source_id,
        "subscription_id": event.subscription_id,
        "position": event.position,
        "kind": event.kind.value,
        "from_address": event.from_address,
        "to_address": event.to_address,
        "amount": str(event.amount) if event.amount is not None else None,
        "asset": event.asset,
        "reference": event.reference,
        "risk_score": scored.risk_score,
        "flags": list(flags),
        "compliance_status": scored.status.value,
        "details": [o.detail for o in scored.outcomes if o.fired and o.detail],
        "_lineage": scored.lineage,
    }


def exhausted_message(dead_letter: DeadLetter) -> dict[str, Any]:
    return {
        "alert_type": ALERT_TYPE_EXHAUSTED,
        "job_id": dead_letter.job_id,
        "attempts": dead_letter.attempts,
        "last_error": dead_letter.last_error,
        "source_id": dead_letter.event.source_id,
        "position": dead_letter.event.position,
    }


class LogAlertSink(AlertSink):
    async def notify(self, scored: ScoredEvent, flags: tuple[str, ...]) -> None:
        logger.warning(
            "ALERT | event_id=%s | source=%s | score=%d | status=%s | flags=%s",
            scored.event_id,
            scored.event.source_id,
            scored.risk_score,
            scored.status.value,
            ",".join(flags),
        )

    async def notify_exhausted(self, dead_letter: DeadLetter) -> None:
        logger.error(
            "ALERT processing exhausted | job_id=%s | attempts=%d | error=%s",
            dead_letter.job_id,
            dead_letter.attempts,
            dead_letter.last_error,
        )


class SnsAlertSink(AlertSink):
    """
    Publishes JSON alert messages to SNS.

    boto3 calls run in the default executor. Errors propagate so the result
    sink can retry delivery.
    """

    _MAX_SUBJECT = 100  # SNS subject limit

    def __init__(self, topic_arn: str, region: str) -> None:
        self._topic_arn = topic_arn
        self._sns = boto3.client("sns", region_name=region)

    async def notify(self, scored: ScoredEvent, flags: tuple[str, ...]) -> None:
        subject = f"[{scored.status.value}] score {scored.risk_score} on {scored.event.source_id}"
        await self._publish(subject, alert_message(scored, flags), ALERT_TYPE_SCORED)

    async def notify_exhausted(self, dead_letter: DeadLetter) -> None:
        subject = f"Processing exhausted for job {dead_letter.job_id}"
        await self._publish(subject, exhausted_message(dead_letter), ALERT_TYPE_EXHAUSTED)

    async def _publish(self, subject: str, message: dict[str, Any], alert_type: str) -> None:
        await asyncio.get_event_loop().run_in_executor(
            None,
            lambda: self._sns.publish(
                TopicArn=self._topic_arn,
                Subject=subject[: self._MAX_SUBJECT],
                Message=json.dumps(message, default=str),
                MessageAttributes={"alert_type": {"DataType": "String", "StringValue": alert_type}},
            ),
        )
