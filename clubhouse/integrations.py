# clubhouse/integrations.py
"""
External collaborators for the booking core
- Payments: create / query / cancel / refund payment intents
- Notifications: fire-and-forget member and staff messages
- Calendar: best-effort event cleanup

The Mock* classes log and return canned results. Production deployments
pass real clients in an `Integrations` bundle.
"""

import logging
import random
import string
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_intent(
        self,
        customer_ref: str,
        amount_cents: int,
        purpose: str,
        description: str,
        metadata: Optional[dict] = None,
    ) -> dict: ...

    def get_status(self, payment_intent_id: str) -> str: ...

    def cancel_intent(self, payment_intent_id: str) -> dict: ...

    def refund_intent(self, payment_intent_id: str, amount_cents: Optional[int] = None) -> dict: ...


class Notifier(Protocol):
    def notify(self, recipient: str, title: str, message: str, related_id: Optional[int] = None) -> None: ...


class CalendarClient(Protocol):
    def delete_event(self, calendar_id: str, event_id: str) -> None: ...


def _mock_id(prefix: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=14))
    return f"{prefix}_{datetime.now().strftime('%Y%m%d')}{suffix}"


class MockPaymentGateway:
    """Mock payment processor - replace with the real client in production"""

    def __init__(self):
        self.intents: dict[str, dict] = {}

    def create_intent(self, customer_ref, amount_cents, purpose, description, metadata=None) -> dict:
        intent_id = _mock_id("pi")
        self.intents[intent_id] = {
            "customer_ref": customer_ref,
            "amount_cents": int(amount_cents),
            "purpose": purpose,
            "description": description,
            "metadata": dict(metadata or {}),
            "status": "requires_payment_method",
        }
        logger.info("[PAYMENTS] Created intent %s for %s (%s cents)", intent_id, customer_ref, amount_cents)
        return {"payment_intent_id": intent_id, "client_secret": f"{intent_id}_secret"}

    def get_status(self, payment_intent_id) -> str:
        return self.intents.get(payment_intent_id, {}).get("status", "unknown")

    def cancel_intent(self, payment_intent_id) -> dict:
        logger.info("[PAYMENTS] Cancelling intent %s", payment_intent_id)
        if payment_intent_id in self.intents:
            self.intents[payment_intent_id]["status"] = "canceled"
        return {"payment_intent_id": payment_intent_id, "status": "canceled"}

    def refund_intent(self, payment_intent_id, amount_cents=None) -> dict:
        logger.info("[PAYMENTS] Refunding intent %s (%s cents)", payment_intent_id, amount_cents)
        if payment_intent_id in self.intents:
            self.intents[payment_intent_id]["status"] = "refunded"
        return {"payment_intent_id": payment_intent_id, "refund_id": _mock_id("re"), "status": "refunded"}


class LoggingNotifier:
    def notify(self, recipient, title, message, related_id=None) -> None:
        logger.info("[NOTIFY] to=%s title=%s related=%s: %s", recipient, title, related_id, message)


class MockCalendarClient:
    def delete_event(self, calendar_id, event_id) -> None:
        logger.info("[CALENDAR] Deleting event %s from %s", event_id, calendar_id)


STAFF_RECIPIENT = "staff"


@dataclass
class Integrations:
    payments: PaymentGateway = field(default_factory=MockPaymentGateway)
    notifier: Notifier = field(default_factory=LoggingNotifier)
    calendar: CalendarClient = field(default_factory=MockCalendarClient)


# Process defaults
default_integrations = Integrations()
