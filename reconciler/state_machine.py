"""
Per-order state machine over the transition table. Plain in-memory value:
no I/O, no logging, not thread-safe. Callers serialize access per order.
"""
from dataclasses import dataclass

from reconciler.order_state import (
    HOLD_REASONS,
    HOLD_STATUSES,
    TERMINAL_STATUSES,
    TRANSITIONS,
    OrderStatus,
    Transition,
)


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    new_status: OrderStatus | None = None
    notify_customer: bool | None = None
    error: str | None = None


class OrderStateMachine:
    def __init__(
        self,
        initial_status: OrderStatus = OrderStatus.PENDING,
        table: tuple[Transition, ...] = TRANSITIONS,
    ):
        self._status = OrderStatus(initial_status)
        self._table = table

    def _matches(self, event: str) -> list[Transition]:
        return [row for row in self._table if row.event == event and self._status in row.from_states]

    def can_transition(self, event: str) -> bool:
        return len(self._matches(event)) == 1

    def transition(self, event: str) -> TransitionResult:
        """Apply event. On failure the current status is left untouched."""
        matches = self._matches(event)
        if len(matches) != 1:
            return TransitionResult(
                success=False,
                error=f"Invalid transition: event '{event}' is not allowed from status '{self._status.value}'",
            )
        row = matches[0]
        self._status = row.to_state
        return TransitionResult(success=True, new_status=row.to_state, notify_customer=row.notify_customer)

    def is_replay(self, event: str) -> bool:
        """True if event is known and its target is already the current status."""
        return any(row.event == event and row.to_state == self._status for row in self._table)

    def get_current_status(self) -> OrderStatus:
        return self._status

    def is_on_hold(self) -> bool:
        return self._status in HOLD_STATUSES

    def is_final_state(self) -> bool:
        return self._status in TERMINAL_STATUSES

    def get_hold_reason(self) -> str | None:
        return HOLD_REASONS.get(self._status)

    def __repr__(self) -> str:
        return f"OrderStateMachine(status={self._status.value!r})"
