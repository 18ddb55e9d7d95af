"""Inbound event contract: topics, envelope and payload families.

Every topic the service consumes is a member of ``EventTopic`` and maps to
exactly one payload model in ``TOPIC_PAYLOADS``. The ingestion router relies
on that mapping being total.
"""

import datetime
import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel


class MalformedEventError(ValueError):
    """The payload can never be applied; it is dropped, not retried."""


class EventTopic(str, Enum):
    USER_CREATED = "users.user.created"
    USER_UPDATED = "users.user.updated"
    PRODUCT_CREATED = "inventory.product.created"
    PRODUCT_UPDATED = "inventory.product.updated"
    STOCK_LOW = "inventory.stock.low"
    ORDER_CREATED = "sales.order.created"
    ORDER_UPDATED = "sales.order.updated"
    INVOICE_PAID = "sales.invoice.paid"
    TRANSACTION_CREATED = "financial.transaction.created"
    BUDGET_EXCEEDED = "financial.budget.exceeded"

    @classmethod
    def parse(cls, topic: str) -> Optional["EventTopic"]:
        try:
            return cls(topic)
        except ValueError:
            return None


class EventPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def natural_key(self) -> Optional[str]:
        """Business id that identifies the event's entity, if the family has one."""
        return None


class UserEventData(EventPayload):
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None

    def natural_key(self) -> Optional[str]:
        return self.user_id


class ProductEventData(EventPayload):
    product_id: str
    name: Optional[str] = None
    category: Optional[str] = None
    stock_level: Optional[int] = None
    price: Optional[float] = None

    def natural_key(self) -> Optional[str]:
        return self.product_id


class OrderEventData(EventPayload):
    order_id: str
    customer_id: Optional[str] = None
    total_amount: float = 0.0
    status: Optional[str] = None
    item_count: Optional[int] = None

    def natural_key(self) -> Optional[str]:
        return self.order_id


class TransactionEventData(EventPayload):
    transaction_id: Optional[str] = None
    transaction_number: Optional[str] = None
    transaction_date: Optional[datetime.datetime] = None
    type: str = "Sale"
    total_amount: float = Field(validation_alias=AliasChoices("totalAmount", "amount", "total_amount"))

    def natural_key(self) -> Optional[str]:
        return self.transaction_id or self.transaction_number

    @property
    def is_income(self) -> bool:
        return self.type.lower() in ("sale", "revenue", "income")

    @property
    def is_expense(self) -> bool:
        return self.type.lower() in ("expense", "payment", "purchase")


class BudgetEventData(EventPayload):
    budget_id: str
    budget_name: str
    account_name: Optional[str] = None
    budget_amount: float = 0.0
    spent_amount: float = 0.0
    exceeded_amount: float = 0.0
    percentage_used: float = 0.0


TOPIC_PAYLOADS: Dict[EventTopic, Type[EventPayload]] = {
    EventTopic.USER_CREATED: UserEventData,
    EventTopic.USER_UPDATED: UserEventData,
    EventTopic.PRODUCT_CREATED: ProductEventData,
    EventTopic.PRODUCT_UPDATED: ProductEventData,
    EventTopic.STOCK_LOW: ProductEventData,
    EventTopic.ORDER_CREATED: OrderEventData,
    EventTopic.ORDER_UPDATED: OrderEventData,
    EventTopic.INVOICE_PAID: OrderEventData,
    EventTopic.TRANSACTION_CREATED: TransactionEventData,
    EventTopic.BUDGET_EXCEEDED: BudgetEventData,
}

# Topics whose events introduce a new entity; the natural business id is
# only a valid dedup token for these. Any other event is keyed by its digest.
CREATION_TOPICS = frozenset({
    EventTopic.USER_CREATED,
    EventTopic.PRODUCT_CREATED,
    EventTopic.ORDER_CREATED,
    EventTopic.TRANSACTION_CREATED,
})


@dataclass(frozen=True)
class IngestedEvent:
    topic: EventTopic
    event_type: str
    timestamp: datetime.datetime
    data: Any
    digest: str

    @property
    def idempotency_key(self) -> str:
        natural = self.data.natural_key() if self.is_creation else None
        return natural or self.digest

    @property
    def is_creation(self) -> bool:
        """The eventType discriminator wins over the topic it arrived on."""
        discriminator = self.event_type.lower()
        if discriminator.endswith("updated"):
            return False
        if discriminator.endswith("created"):
            return True
        return self.topic in CREATION_TOPICS


def canonical_digest(body: Any) -> str:
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _parse_timestamp(raw: Any) -> datetime.datetime:
    now = datetime.datetime.now(datetime.timezone.utc)
    if not raw:
        return now
    if isinstance(raw, str):
        try:
            parsed = datetime.datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError as exc:
            raise MalformedEventError(f"Invalid timestamp {raw!r}") from exc
    elif isinstance(raw, (int, float)):
        parsed = datetime.datetime.fromtimestamp(raw / 1000 if raw > 1e11 else raw, datetime.timezone.utc)
    else:
        raise MalformedEventError(f"Invalid timestamp {raw!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.astimezone(datetime.timezone.utc)


def parse_event(topic: EventTopic, raw: bytes) -> IngestedEvent:
    """Decode a raw message into a typed event.

    Accepts the ``{eventType, timestamp, data}`` envelope as well as a flat
    body carrying the payload fields at the top level.
    """
    try:
        body = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedEventError(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise MalformedEventError("Payload must be a JSON object")

    data = body.get("data") if "data" in body else body
    if not isinstance(data, dict):
        raise MalformedEventError("Event data must be a JSON object")

    event_type = body.get("eventType") or body.get("event_type") or topic.value
    if not isinstance(event_type, str):
        raise MalformedEventError("eventType must be a string")

    try:
        payload = TOPIC_PAYLOADS[topic].model_validate(data)
    except ValidationError as exc:
        raise MalformedEventError(f"Payload does not match {topic.value}: {exc.error_count()} errors") from exc

    return IngestedEvent(
        topic=topic,
        event_type=event_type,
        timestamp=_parse_timestamp(body.get("timestamp") or data.get("timestamp")),
        data=payload,
        digest=canonical_digest(body),
    )
