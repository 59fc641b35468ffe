"""
Webhook signature verification for billing events

Stripe signing scheme: the Stripe-Signature header carries `t=<unix ts>`
and one or more `v1=<hex hmac>` entries, where the HMAC-SHA256 is computed
over "<t>.<raw body>" with the endpoint secret.

Verification is pure: no database access, no side effects.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import stripe

from vinclub.core.exceptions import InvalidSignature, ExpiredTimestamp, MalformedPayload

logger = logging.getLogger(__name__)


@dataclass
class VerifiedEvent:
    """A billing event whose signature and timestamp have been checked."""
    id: str
    type: str
    data: Dict[str, Any]  # event["data"]["object"]
    created: Optional[int] = None


def _extract_timestamp(sig_header: str) -> Optional[int]:
    for item in sig_header.split(","):
        key, _, value = item.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


class WebhookVerifier:
    """
    Verifies and parses inbound billing events.

    Args:
        secret: Shared webhook signing secret
        tolerance_seconds: Max allowed distance between the signed timestamp and now
        clock: Returns the current unix time (injectable for tests)
    """

    def __init__(self, secret: str, tolerance_seconds: int = 300, clock: Callable[[], float] = time.time):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def verify(self, payload: bytes, sig_header: Optional[str]) -> VerifiedEvent:
        """
        Verify signature and timestamp, then parse the event.

        Raises:
            InvalidSignature: Missing/bad header or HMAC mismatch
            ExpiredTimestamp: Authentic payload signed outside the tolerance window
            MalformedPayload: Body is not a JSON event with id, type and data.object
        """
        if not self.secret:
            logger.error("Billing webhook received but STRIPE_WEBHOOK_SECRET not configured")
            raise InvalidSignature("Webhook signing secret not configured")

        if not sig_header:
            raise InvalidSignature("Missing signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedPayload("Payload is not valid UTF-8")

        timestamp = _extract_timestamp(sig_header)
        if timestamp is None:
            raise InvalidSignature("Signature header has no valid timestamp")

        try:
            # Tolerance is checked below so an old-but-authentic event gets its own error
            stripe.WebhookSignature.verify_header(body, sig_header, self.secret, tolerance=None)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(f"Signature verification failed: {e}")

        now = self._clock()
        if abs(now - timestamp) > self.tolerance_seconds:
            raise ExpiredTimestamp(
                f"Timestamp {timestamp} outside tolerance of {self.tolerance_seconds}s",
                timestamp=timestamp,
                tolerance=self.tolerance_seconds,
            )

        return self.parse(body)

    @staticmethod
    def parse(body: str) -> VerifiedEvent:
        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise MalformedPayload(f"Invalid JSON: {e}")

        if not isinstance(event, dict):
            raise MalformedPayload("Event must be a JSON object")

        event_id = event.get("id")
        event_type = event.get("type")
        data = event.get("data")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedPayload("Event has no id")
        if not isinstance(event_type, str) or not event_type:
            raise MalformedPayload("Event has no type", details={"event_id": event_id})
        if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
            raise MalformedPayload("Event has no data.object", details={"event_id": event_id})

        created = event.get("created")
        return VerifiedEvent(
            id=event_id,
            type=event_type,
            data=data["object"],
            created=created if isinstance(created, int) else None,
        )
