"""
Order lifecycle vocabulary and transition table. The table is the single source of
truth for which status changes are legal; it is validated once at startup.
"""
from dataclasses import dataclass
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PREPRESS = "Prepress"
    ON_HOLD_BAD_FILES = "OnHold_BadFiles"
    ON_HOLD_BAD_IMAGES = "OnHold_BadImages"
    ON_HOLD_MISSING_FILE = "OnHold_MissingFile"
    ON_HOLD_TEXT_NEAR_EDGE = "OnHold_TextNearEdge"
    PRODUCTION = "Production"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


HOLD_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.ON_HOLD_BAD_FILES,
    OrderStatus.ON_HOLD_BAD_IMAGES,
    OrderStatus.ON_HOLD_MISSING_FILE,
    OrderStatus.ON_HOLD_TEXT_NEAR_EDGE,
})

TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
})

HOLD_REASONS: dict[OrderStatus, str] = {
    OrderStatus.ON_HOLD_BAD_FILES: "Files do not meet printing specifications",
    OrderStatus.ON_HOLD_BAD_IMAGES: "Images are low resolution or unsuitable for print",
    OrderStatus.ON_HOLD_MISSING_FILE: "A required print file is missing",
    OrderStatus.ON_HOLD_TEXT_NEAR_EDGE: "Text is too close to the trim edge",
}

# Customer-facing label, description and progress percent per status
STATUS_DISPLAY: dict[OrderStatus, tuple[str, str, int]] = {
    OrderStatus.PENDING: ("Pending", "Waiting for the print vendor to accept the order", 5),
    OrderStatus.PREPRESS: ("Pre-Press", "Preparing files for printing", 25),
    OrderStatus.ON_HOLD_BAD_FILES: ("On Hold", "Order is on hold until new files are uploaded", 30),
    OrderStatus.ON_HOLD_BAD_IMAGES: ("On Hold", "Order is on hold until new images are uploaded", 30),
    OrderStatus.ON_HOLD_MISSING_FILE: ("On Hold", "Order is on hold until the missing file is uploaded", 30),
    OrderStatus.ON_HOLD_TEXT_NEAR_EDGE: ("On Hold", "Order is on hold until the artwork is corrected", 30),
    OrderStatus.PRODUCTION: ("In Production", "Order is being printed", 50),
    OrderStatus.SHIPPED: ("Shipped", "Order has been shipped", 95),
    OrderStatus.DELIVERED: ("Delivered", "Order has been delivered successfully", 100),
    OrderStatus.CANCELLED: ("Cancelled", "Order has been cancelled", 0),
}


class TransitionTableError(Exception):
    """Raised at startup when the transition table is inconsistent."""


@dataclass(frozen=True)
class Transition:
    from_states: frozenset[OrderStatus]
    to_state: OrderStatus
    event: str
    requires_vendor_update: bool
    notify_customer: bool


def _t(from_states, to_state, event, requires_vendor_update=True, notify_customer=True) -> Transition:
    return Transition(frozenset(from_states), to_state, event, requires_vendor_update, notify_customer)


TRANSITIONS: tuple[Transition, ...] = (
    _t({OrderStatus.PENDING}, OrderStatus.PREPRESS, "vendor_accepted"),
    _t({OrderStatus.PREPRESS}, OrderStatus.PRODUCTION, "files_approved"),
    _t({OrderStatus.PREPRESS}, OrderStatus.ON_HOLD_BAD_FILES, "bad_files_detected"),
    _t({OrderStatus.PREPRESS}, OrderStatus.ON_HOLD_BAD_IMAGES, "bad_images_detected"),
    _t({OrderStatus.PREPRESS}, OrderStatus.ON_HOLD_MISSING_FILE, "file_missing"),
    _t({OrderStatus.PREPRESS}, OrderStatus.ON_HOLD_TEXT_NEAR_EDGE, "text_edge_issue"),
    # customer-originated: the vendor learns about it from the resubmitted files
    _t(HOLD_STATUSES, OrderStatus.PREPRESS, "files_resubmitted",
       requires_vendor_update=False, notify_customer=False),
    _t({OrderStatus.PRODUCTION}, OrderStatus.SHIPPED, "order_shipped"),
    _t({OrderStatus.SHIPPED}, OrderStatus.DELIVERED, "order_delivered"),
    _t({OrderStatus.PENDING, OrderStatus.PREPRESS, *HOLD_STATUSES}, OrderStatus.CANCELLED, "order_cancelled"),
)


def validate_transition_table(table: tuple[Transition, ...] = TRANSITIONS) -> None:
    """
    Fail fast on an inconsistent table:
    - every non-terminal status has at least one outgoing transition
    - terminal statuses have none
    - no two rows share a (from_state, event) pair
    """
    seen: dict[tuple[OrderStatus, str], Transition] = {}
    outgoing: dict[OrderStatus, int] = {status: 0 for status in OrderStatus}
    for row in table:
        if not row.from_states:
            raise TransitionTableError(f"Transition {row.event!r} has no source states")
        for status in row.from_states:
            key = (status, row.event)
            if key in seen:
                raise TransitionTableError(
                    f"Ambiguous transitions for ({status.value}, {row.event}): "
                    f"-> {seen[key].to_state.value} and -> {row.to_state.value}"
                )
            seen[key] = row
            outgoing[status] += 1

    for status, count in outgoing.items():
        if status in TERMINAL_STATUSES and count:
            raise TransitionTableError(f"Terminal status {status.value} has {count} outgoing transition(s)")
        if status not in TERMINAL_STATUSES and not count:
            raise TransitionTableError(f"Non-terminal status {status.value} has no outgoing transitions")


def events_in(table: tuple[Transition, ...] = TRANSITIONS) -> set[str]:
    return {row.event for row in table}


def transition_for_event(event: str, table: tuple[Transition, ...] = TRANSITIONS) -> Transition | None:
    """First row declaring event. Used where only the event's target matters."""
    for row in table:
        if row.event == event:
            return row
    return None
