import json
import threading

import pytest

from reconciler.order_state import OrderStatus
from reconciler.vendor_mapping import (
    DEFAULT_VENDOR,
    MappingConfigError,
    ResolvedStatus,
    VendorMappingRegistry,
    VendorStatusMapping,
    load_registry,
    parse_mappings,
)


@pytest.fixture
def registry():
    return VendorMappingRegistry()


def test_lookup_is_case_insensitive(registry):
    assert registry.resolve("acme", "Shipped") == registry.resolve("acme", "shipped")
    assert registry.resolve("acme", "  SHIPPED ") == ResolvedStatus(OrderStatus.SHIPPED, "order_shipped")


def test_unregistered_vendor_uses_default(registry):
    assert registry.resolve("never-seen", "received") == ResolvedStatus(OrderStatus.PREPRESS, "vendor_accepted")
    assert not registry.has_override("never-seen")


def test_unknown_status_is_not_found(registry):
    assert registry.resolve(DEFAULT_VENDOR, "out_for_delivery") is None


def test_hold_statuses_map_to_hold_events(registry):
    assert registry.resolve("x", "hold_bad_files") == ResolvedStatus(OrderStatus.ON_HOLD_BAD_FILES, "bad_files_detected")
    assert registry.resolve("x", "hold_text_edge") == ResolvedStatus(OrderStatus.ON_HOLD_TEXT_NEAR_EDGE, "text_edge_issue")


def test_override_replaces_default_for_that_vendor_only(registry):
    registry.register_mapping("4over", [
        VendorStatusMapping("IN_TRANSIT", OrderStatus.SHIPPED, "order_shipped"),
        VendorStatusMapping("Job Received", OrderStatus.PREPRESS, "vendor_accepted"),
    ])
    assert registry.has_override("4over")
    assert registry.resolve("4over", "in_transit") == ResolvedStatus(OrderStatus.SHIPPED, "order_shipped")
    assert registry.resolve("4over", "job received").event == "vendor_accepted"
    # the override table is used whole, not merged with the default
    assert registry.resolve("4over", "received") is None
    assert registry.resolve("other", "received") is not None
    assert registry.resolve("other", "in_transit") is None


def test_register_twice_replaces(registry):
    registry.register_mapping("v", [VendorStatusMapping("done", OrderStatus.DELIVERED, "order_delivered")])
    registry.register_mapping("v", [VendorStatusMapping("sent", OrderStatus.SHIPPED, "order_shipped")])
    assert registry.resolve("v", "done") is None
    assert registry.resolve("v", "sent").internal_status == OrderStatus.SHIPPED


def test_empty_override_does_not_fall_back_to_default(registry):
    registry.register_mapping("acme", [])
    assert registry.has_override("acme")
    assert registry.resolve("acme", "shipped") is None
    assert registry.mappings_for("acme") == []
    assert registry.resolve("other", "shipped") is not None


@pytest.mark.parametrize("mapping,match", [
    (VendorStatusMapping("x", OrderStatus.SHIPPED, "teleported"), "unknown event"),
    (VendorStatusMapping("x", OrderStatus.DELIVERED, "order_shipped"), "leads to Shipped"),
    (VendorStatusMapping("x", OrderStatus.PREPRESS, "files_resubmitted"), "customer-originated"),
])
def test_inconsistent_mappings_are_rejected(registry, mapping, match):
    with pytest.raises(MappingConfigError, match=match):
        registry.register_mapping("bad", [mapping])
    assert not registry.has_override("bad")


def test_conflicting_duplicate_status_is_rejected(registry):
    with pytest.raises(MappingConfigError, match="mapped twice"):
        registry.register_mapping("dup", [
            VendorStatusMapping("Done", OrderStatus.SHIPPED, "order_shipped"),
            VendorStatusMapping("done", OrderStatus.DELIVERED, "order_delivered"),
        ])


def test_mappings_for_lists_effective_table(registry):
    statuses = {m.vendor_status for m in registry.mappings_for("anyone")}
    assert {"received", "shipped", "hold_bad_files"} <= statuses


def test_parse_mappings_accepts_camel_and_snake_case():
    parsed = parse_mappings([
        {"vendorStatus": "Shipped", "internalStatus": "Shipped", "event": "order_shipped"},
        {"vendor_status": "Gone", "internal_status": "Delivered", "event": "order_delivered"},
    ])
    assert parsed[0] == VendorStatusMapping("Shipped", OrderStatus.SHIPPED, "order_shipped")
    assert parsed[1].internal_status == OrderStatus.DELIVERED


@pytest.mark.parametrize("entry", [
    {"internalStatus": "Shipped", "event": "order_shipped"},
    {"vendorStatus": "x", "internalStatus": "Lost", "event": "order_shipped"},
    {"vendorStatus": "x", "internalStatus": "Shipped"},
])
def test_parse_mappings_rejects_bad_entries(entry):
    with pytest.raises(MappingConfigError):
        parse_mappings([entry])


def test_load_registry_from_file(tmp_path):
    path = tmp_path / "mappings.json"
    path.write_text(json.dumps({
        "printhub": [{"vendorStatus": "on_press", "internalStatus": "Production", "event": "files_approved"}],
    }))
    registry = load_registry(str(path))
    assert registry.resolve("PrintHub", "on_press") is None  # vendor ids are case-sensitive
    assert registry.resolve("printhub", "ON_PRESS").internal_status == OrderStatus.PRODUCTION
    assert registry.resolve("someone", "received") is not None


def test_load_registry_with_bad_file_fails(tmp_path):
    path = tmp_path / "mappings.json"
    path.write_text(json.dumps({"v": [{"vendorStatus": "x", "internalStatus": "Delivered", "event": "order_shipped"}]}))
    with pytest.raises(MappingConfigError):
        load_registry(str(path))


def test_load_registry_without_path_uses_defaults():
    assert load_registry(None).resolve("x", "delivered").event == "order_delivered"


def test_resolve_never_sees_partial_table(registry):
    old = [VendorStatusMapping(f"s{i}", OrderStatus.SHIPPED, "order_shipped") for i in range(50)]
    new = [VendorStatusMapping(f"s{i}", OrderStatus.DELIVERED, "order_delivered") for i in range(50)]
    registry.register_mapping("race", old)
    mixed: list[set] = []
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            seen = {m.event for m in registry.mappings_for("race")}
            if len(seen) != 1:
                mixed.append(seen)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    for i in range(200):
        registry.register_mapping("race", new if i % 2 else old)
    stop.set()
    for t in threads:
        t.join()
    assert mixed == []
