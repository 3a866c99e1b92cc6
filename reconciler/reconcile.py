"""
Reconciliation of inbound signals against the order lifecycle.

Two ingress paths share one state machine and transition table:
- vendor webhooks (authenticated by HMAC, translated by the vendor mapping registry)
- customer actions (only events that do not come from the vendor, e.g. files_resubmitted)

Every outcome is a ReconcileResult; failures are never raised to the caller and never
reported as processed. Per-order writes use optimistic concurrency: load (status, version),
transition in memory, compare-and-swap, retry on conflict.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import NamedTuple, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from reconciler.metrics import (
    reconcile_outcomes_total,
    transitions_rejected_total,
    unknown_vendor_status_total,
)
from reconciler.order_state import TRANSITIONS, OrderStatus, Transition
from reconciler.signature import verify_signature
from reconciler.state_machine import OrderStateMachine
from reconciler.vendor_mapping import VendorMappingRegistry

logger = logging.getLogger(__name__)


class ReconcileError(str, Enum):
    SIGNATURE_VALIDATION_FAILURE = "SignatureValidationFailure"
    MALFORMED_SIGNAL = "MalformedSignal"
    UNKNOWN_VENDOR_STATUS = "UnknownVendorStatus"
    ORDER_NOT_FOUND = "OrderNotFound"
    INVALID_TRANSITION = "InvalidTransition"
    PERSISTENCE_CONFLICT = "PersistenceConflict"
    FORBIDDEN_EVENT = "ForbiddenEvent"


class SignalDetails(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tracking_number: str | None = Field(default=None, alias="trackingNumber")
    hold_reason: str | None = Field(default=None, alias="holdReason")
    estimated_delivery: date | None = Field(default=None, alias="estimatedDelivery")
    message: str | None = None

    @field_validator("estimated_delivery", mode="before")
    @classmethod
    def _delivery_date(cls, value):
        """
        Vendors send either a date or a full ISO-8601 timestamp; only the calendar date is kept.
        An unreadable value is dropped so it cannot block the status update it rides on.
        """
        if isinstance(value, datetime):
            return value.date()
        if value is None or isinstance(value, date):
            return value
        try:
            return date.fromisoformat(str(value).strip()[:10])
        except ValueError:
            logger.warning("Ignoring unreadable estimatedDelivery %r", value)
            return None


class WebhookSignal(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., min_length=1, alias="orderId", description="Order this signal belongs to")
    vendor_id: str = Field(..., min_length=1, alias="vendorId", description="Vendor that sent the signal")
    status: str = Field(..., min_length=1, description="Status in the vendor's own vocabulary")
    timestamp: datetime = Field(..., description="When the vendor emitted the signal (ISO-8601)")
    details: SignalDetails | None = None


class OrderSnapshot(NamedTuple):
    status: OrderStatus
    version: int


@dataclass(frozen=True)
class StatusChange:
    """What the repository records alongside a status write."""
    from_status: OrderStatus
    event: str
    source: str
    tracking_number: str | None = None
    hold_reason: str | None = None
    estimated_delivery: date | None = None
    notes: str | None = None


class OrderRepository(Protocol):
    async def load(self, order_id: str) -> OrderSnapshot | None: ...

    async def compare_and_swap(
        self,
        order_id: str,
        expected_version: int,
        new_status: OrderStatus,
        change: StatusChange,
    ) -> bool: ...


class NotificationDispatcher(Protocol):
    async def notify(self, order_id: str, new_status: OrderStatus) -> None: ...


class VendorSecretStore(Protocol):
    def get_secret(self, vendor_id: str) -> str | None: ...


class SignalLedger(Protocol):
    async def lookup(self, key: str) -> dict | None: ...

    async def record(self, key: str, value: dict) -> None: ...


@dataclass(frozen=True)
class ReconcileResult:
    success: bool
    order_id: str | None = None
    internal_status: OrderStatus | None = None
    event: str | None = None
    notify_customer: bool = False
    replayed: bool = False
    error_code: ReconcileError | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_response(self) -> dict:
        body: dict = {"success": self.success, "timestamp": self.timestamp.isoformat()}
        if self.success:
            body["data"] = {
                "internalStatus": self.internal_status.value if self.internal_status else None,
                "event": self.event,
                "replayed": self.replayed,
            }
        else:
            body["error"] = self.error
            body["errorCode"] = self.error_code.value if self.error_code else None
        return body


def _failure(code: ReconcileError, message: str, order_id: str | None = None) -> ReconcileResult:
    return ReconcileResult(success=False, order_id=order_id, error_code=code, error=message)


def signal_key(vendor_id: str, raw_body: bytes) -> str:
    return f"signal:{vendor_id}:{hashlib.sha256(raw_body).hexdigest()}"


class Reconciler:
    def __init__(
        self,
        registry: VendorMappingRegistry,
        repository: OrderRepository,
        secrets: VendorSecretStore,
        ledger: SignalLedger | None = None,
        max_retries: int = 3,
        transitions: tuple[Transition, ...] = TRANSITIONS,
    ):
        self.registry = registry
        self.repository = repository
        self.secrets = secrets
        self.ledger = ledger
        self.max_retries = max_retries
        self.transitions = transitions

    async def reconcile(self, vendor_id: str, raw_body: bytes, signature: str | None) -> ReconcileResult:
        """Vendor ingress: authenticate, parse, map, then apply to the order."""
        if not verify_signature(self.secrets.get_secret(vendor_id), raw_body, signature):
            logger.warning("Rejected webhook from vendor=%s: signature validation failed", vendor_id)
            return self._finish(_failure(
                ReconcileError.SIGNATURE_VALIDATION_FAILURE,
                f"Signature validation failed for vendor '{vendor_id}'",
            ))

        key = signal_key(vendor_id, raw_body)
        if self.ledger is not None:
            seen = await self.ledger.lookup(key)
            if seen is not None:
                logger.info("Duplicate delivery from vendor=%s order_id=%s, already reconciled", vendor_id, seen.get("orderId"))
                return self._finish(ReconcileResult(
                    success=True,
                    order_id=seen.get("orderId"),
                    internal_status=OrderStatus(seen["internalStatus"]),
                    event=seen.get("event"),
                    replayed=True,
                ))

        try:
            signal = WebhookSignal.model_validate_json(raw_body)
        except ValidationError as e:
            logger.warning("Malformed webhook body from vendor=%s: %s", vendor_id, e)
            return self._finish(_failure(ReconcileError.MALFORMED_SIGNAL, f"Malformed signal: {e.error_count()} validation error(s)"))
        if signal.vendor_id != vendor_id:
            logger.warning("Webhook signed by vendor=%s claims vendorId=%s", vendor_id, signal.vendor_id)
            return self._finish(_failure(
                ReconcileError.MALFORMED_SIGNAL,
                f"Signal vendorId '{signal.vendor_id}' does not match authenticated vendor '{vendor_id}'",
                signal.order_id,
            ))

        result = await self.reconcile_signal(signal)
        if result.success and self.ledger is not None:
            await self.ledger.record(key, {
                "orderId": result.order_id,
                "internalStatus": result.internal_status.value,
                "event": result.event,
            })
        return result

    async def reconcile_signal(self, signal: WebhookSignal) -> ReconcileResult:
        """Map an authenticated vendor signal and apply it."""
        resolved = self.registry.resolve(signal.vendor_id, signal.status)
        if resolved is None:
            unknown_vendor_status_total.labels(vendor_id=signal.vendor_id).inc()
            logger.warning(
                "Unknown vendor status: vendor=%s status=%r order_id=%s (mapping needs onboarding)",
                signal.vendor_id,
                signal.status,
                signal.order_id,
            )
            return self._finish(_failure(
                ReconcileError.UNKNOWN_VENDOR_STATUS,
                f"Unknown status '{signal.status}' from vendor '{signal.vendor_id}'",
                signal.order_id,
            ))

        details = signal.details or SignalDetails()
        return await self._apply(
            signal.order_id,
            resolved.event,
            source=f"vendor:{signal.vendor_id}",
            details=details,
        )

    async def reconcile_customer_action(self, order_id: str, event: str) -> ReconcileResult:
        """Customer ingress: only events the vendor does not originate are allowed here."""
        rows = [row for row in self.transitions if row.event == event]
        if not rows or any(row.requires_vendor_update for row in rows):
            logger.warning("Rejected customer action order_id=%s event=%s: not a customer event", order_id, event)
            return self._finish(_failure(
                ReconcileError.FORBIDDEN_EVENT,
                f"Event '{event}' cannot be triggered by a customer",
                order_id,
            ))
        return await self._apply(order_id, event, source="customer", details=SignalDetails())

    async def _apply(self, order_id: str, event: str, source: str, details: SignalDetails) -> ReconcileResult:
        for attempt in range(self.max_retries + 1):
            snapshot = await self.repository.load(order_id)
            if snapshot is None:
                logger.warning("Signal for unknown order_id=%s event=%s source=%s", order_id, event, source)
                return self._finish(_failure(ReconcileError.ORDER_NOT_FOUND, f"Order '{order_id}' not found", order_id))

            machine = OrderStateMachine(snapshot.status, self.transitions)
            outcome = machine.transition(event)
            if not outcome.success:
                if machine.is_replay(event):
                    logger.info("Replayed event=%s for order_id=%s already at %s, no-op", event, order_id, snapshot.status.value)
                    return self._finish(ReconcileResult(
                        success=True,
                        order_id=order_id,
                        internal_status=snapshot.status,
                        event=event,
                        replayed=True,
                    ))
                transitions_rejected_total.labels(current_status=snapshot.status.value, event=event).inc()
                logger.warning(
                    "Invalid transition for order_id=%s: status=%s event=%s source=%s (needs manual review)",
                    order_id,
                    snapshot.status.value,
                    event,
                    source,
                )
                return self._finish(_failure(ReconcileError.INVALID_TRANSITION, outcome.error, order_id))

            hold_reason = None
            if machine.is_on_hold():
                # vendor wording wins over the generic text
                hold_reason = details.hold_reason or machine.get_hold_reason()
            change = StatusChange(
                from_status=snapshot.status,
                event=event,
                source=source,
                tracking_number=details.tracking_number,
                hold_reason=hold_reason,
                estimated_delivery=details.estimated_delivery,
                notes=details.message,
            )
            if await self.repository.compare_and_swap(order_id, snapshot.version, outcome.new_status, change):
                logger.info(
                    "Order order_id=%s %s -> %s (event=%s source=%s)",
                    order_id,
                    snapshot.status.value,
                    outcome.new_status.value,
                    event,
                    source,
                )
                return self._finish(ReconcileResult(
                    success=True,
                    order_id=order_id,
                    internal_status=outcome.new_status,
                    event=event,
                    notify_customer=bool(outcome.notify_customer),
                ))
            logger.info(
                "Concurrent update on order_id=%s (version %d), retrying (%d/%d)",
                order_id,
                snapshot.version,
                attempt + 1,
                self.max_retries,
            )

        logger.warning("Giving up on order_id=%s event=%s after %d conflicting update(s)", order_id, event, self.max_retries + 1)
        return self._finish(_failure(
            ReconcileError.PERSISTENCE_CONFLICT,
            f"Order '{order_id}' kept changing concurrently; event '{event}' not applied",
            order_id,
        ))

    @staticmethod
    def _finish(result: ReconcileResult) -> ReconcileResult:
        outcome = "replayed" if result.replayed else ("applied" if result.success else result.error_code.value)
        reconcile_outcomes_total.labels(outcome=outcome).inc()
        return result
