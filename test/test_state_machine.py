import pytest

from reconciler.order_state import HOLD_STATUSES, TERMINAL_STATUSES, TRANSITIONS, OrderStatus, events_in
from reconciler.state_machine import OrderStateMachine

ALL_EVENTS = sorted(events_in())
TABLE_PAIRS = [(status, row.event, row.to_state) for row in TRANSITIONS for status in sorted(row.from_states)]
DECLARED = {(status, event) for status, event, _ in TABLE_PAIRS}
ABSENT_PAIRS = [(s, e) for s in OrderStatus for e in ALL_EVENTS + ["made_up_event"] if (s, e) not in DECLARED]


def test_default_initial_status_is_pending():
    assert OrderStateMachine().get_current_status() == OrderStatus.PENDING


@pytest.mark.parametrize("status,event,to_state", TABLE_PAIRS)
def test_declared_transitions_succeed(status, event, to_state):
    sm = OrderStateMachine(status)
    assert sm.can_transition(event)
    result = sm.transition(event)
    assert result.success is True
    assert result.new_status == to_state
    assert result.error is None
    assert sm.get_current_status() == to_state


@pytest.mark.parametrize("status,event", ABSENT_PAIRS)
def test_undeclared_transitions_fail_without_changing_status(status, event):
    sm = OrderStateMachine(status)
    assert not sm.can_transition(event)
    result = sm.transition(event)
    assert result.success is False
    assert result.new_status is None
    assert sm.get_current_status() == status


def test_error_names_current_status_and_event():
    result = OrderStateMachine(OrderStatus.PRODUCTION).transition("vendor_accepted")
    assert "Production" in result.error
    assert "vendor_accepted" in result.error


@pytest.mark.parametrize("status", list(OrderStatus))
def test_hold_predicates_agree(status):
    sm = OrderStateMachine(status)
    assert sm.is_on_hold() == (status in HOLD_STATUSES)
    assert sm.is_on_hold() == (sm.get_hold_reason() is not None)
    assert sm.is_final_state() == (status in TERMINAL_STATUSES)


@pytest.mark.parametrize("status", sorted(TERMINAL_STATUSES))
def test_terminal_statuses_accept_nothing(status):
    sm = OrderStateMachine(status)
    assert not any(sm.can_transition(e) for e in ALL_EVENTS)
    for event in ALL_EVENTS:
        assert sm.transition(event).success is False
    assert sm.get_current_status() == status


def test_vendor_acceptance_notifies_customer():
    result = OrderStateMachine().transition("vendor_accepted")
    assert result.new_status == OrderStatus.PREPRESS
    assert result.notify_customer is True


def test_bad_files_hold_reason():
    sm = OrderStateMachine(OrderStatus.PREPRESS)
    assert sm.transition("bad_files_detected").success
    assert sm.get_current_status() == OrderStatus.ON_HOLD_BAD_FILES
    assert sm.get_hold_reason() == "Files do not meet printing specifications"


def test_resubmitted_files_return_to_prepress_quietly():
    sm = OrderStateMachine(OrderStatus.ON_HOLD_BAD_FILES)
    result = sm.transition("files_resubmitted")
    assert result.success
    assert result.notify_customer is False
    assert sm.get_current_status() == OrderStatus.PREPRESS
    assert sm.get_hold_reason() is None


def test_delivered_rejects_every_event():
    sm = OrderStateMachine(OrderStatus.DELIVERED)
    results = [sm.transition(e) for e in ALL_EVENTS]
    assert not any(r.success for r in results)
    assert sm.get_current_status() == OrderStatus.DELIVERED


def test_full_happy_path():
    sm = OrderStateMachine()
    for event in ("vendor_accepted", "files_approved", "order_shipped", "order_delivered"):
        assert sm.transition(event).success, event
    assert sm.is_final_state()


def test_is_replay_only_for_the_event_target():
    sm = OrderStateMachine(OrderStatus.SHIPPED)
    assert sm.is_replay("order_shipped")
    assert not sm.is_replay("order_delivered")
    assert not sm.is_replay("vendor_accepted")
    assert OrderStateMachine(OrderStatus.PREPRESS).is_replay("files_resubmitted")
    assert OrderStateMachine(OrderStatus.PREPRESS).is_replay("vendor_accepted")
