"""
Vendor status vocabulary -> (canonical status, event).

Each vendor may register its own table; vendors without one resolve against
DEFAULT_VENDOR. Tables are swapped whole (copy-on-write) so a concurrent resolve
sees either the old or the new table, never a partially updated one.
"""
import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

from reconciler.order_state import TRANSITIONS, OrderStatus, Transition, transition_for_event

logger = logging.getLogger(__name__)

DEFAULT_VENDOR = "default"


class MappingConfigError(ValueError):
    """Raised when a mapping points at an event/status pair the transition table does not define."""


@dataclass(frozen=True)
class VendorStatusMapping:
    vendor_status: str
    internal_status: OrderStatus
    event: str


@dataclass(frozen=True)
class ResolvedStatus:
    internal_status: OrderStatus
    event: str


DEFAULT_MAPPINGS: tuple[VendorStatusMapping, ...] = (
    VendorStatusMapping("received", OrderStatus.PREPRESS, "vendor_accepted"),
    VendorStatusMapping("accepted", OrderStatus.PREPRESS, "vendor_accepted"),
    VendorStatusMapping("approved", OrderStatus.PRODUCTION, "files_approved"),
    VendorStatusMapping("in_production", OrderStatus.PRODUCTION, "files_approved"),
    VendorStatusMapping("printing", OrderStatus.PRODUCTION, "files_approved"),
    VendorStatusMapping("hold_bad_files", OrderStatus.ON_HOLD_BAD_FILES, "bad_files_detected"),
    VendorStatusMapping("hold_bad_images", OrderStatus.ON_HOLD_BAD_IMAGES, "bad_images_detected"),
    VendorStatusMapping("hold_missing_file", OrderStatus.ON_HOLD_MISSING_FILE, "file_missing"),
    VendorStatusMapping("hold_text_edge", OrderStatus.ON_HOLD_TEXT_NEAR_EDGE, "text_edge_issue"),
    VendorStatusMapping("shipped", OrderStatus.SHIPPED, "order_shipped"),
    VendorStatusMapping("delivered", OrderStatus.DELIVERED, "order_delivered"),
    VendorStatusMapping("cancelled", OrderStatus.CANCELLED, "order_cancelled"),
    VendorStatusMapping("canceled", OrderStatus.CANCELLED, "order_cancelled"),
)


def _build_table(
    vendor_id: str,
    mappings: Iterable[VendorStatusMapping],
    transitions: tuple[Transition, ...],
) -> Mapping[str, ResolvedStatus]:
    table: dict[str, ResolvedStatus] = {}
    for m in mappings:
        row = transition_for_event(m.event, transitions)
        if row is None:
            raise MappingConfigError(f"Vendor {vendor_id!r}: status {m.vendor_status!r} maps to unknown event {m.event!r}")
        if row.to_state != m.internal_status:
            raise MappingConfigError(
                f"Vendor {vendor_id!r}: status {m.vendor_status!r} maps event {m.event!r} to "
                f"{m.internal_status.value}, but that event leads to {row.to_state.value}"
            )
        if not row.requires_vendor_update:
            raise MappingConfigError(
                f"Vendor {vendor_id!r}: event {m.event!r} is customer-originated and cannot be vendor-mapped"
            )
        key = m.vendor_status.strip().lower()
        if key in table and table[key] != ResolvedStatus(m.internal_status, m.event):
            raise MappingConfigError(f"Vendor {vendor_id!r}: status {m.vendor_status!r} mapped twice")
        table[key] = ResolvedStatus(m.internal_status, m.event)
    return MappingProxyType(table)


class VendorMappingRegistry:
    """Read-mostly registry of per-vendor status tables."""

    def __init__(
        self,
        default_mappings: Iterable[VendorStatusMapping] = DEFAULT_MAPPINGS,
        transitions: tuple[Transition, ...] = TRANSITIONS,
    ):
        self._transitions = transitions
        self._write_lock = threading.Lock()
        self._tables: Mapping[str, Mapping[str, ResolvedStatus]] = MappingProxyType({
            DEFAULT_VENDOR: _build_table(DEFAULT_VENDOR, default_mappings, transitions),
        })

    def resolve(self, vendor_id: str, raw_status: str) -> ResolvedStatus | None:
        """None when neither the vendor's table nor the default knows raw_status."""
        tables = self._tables  # single snapshot for the whole lookup
        table = tables[vendor_id] if vendor_id in tables else tables[DEFAULT_VENDOR]
        return table.get(raw_status.strip().lower())

    def register_mapping(self, vendor_id: str, mappings: Iterable[VendorStatusMapping]) -> None:
        """Replace or add vendor_id's table. Raises MappingConfigError before anything is swapped."""
        table = _build_table(vendor_id, list(mappings), self._transitions)
        with self._write_lock:
            tables = dict(self._tables)
            tables[vendor_id] = table
            self._tables = MappingProxyType(tables)
        logger.info("Registered %d status mapping(s) for vendor=%s", len(table), vendor_id)

    def mappings_for(self, vendor_id: str) -> list[VendorStatusMapping]:
        tables = self._tables
        table = tables[vendor_id] if vendor_id in tables else tables[DEFAULT_VENDOR]
        return [VendorStatusMapping(k, v.internal_status, v.event) for k, v in sorted(table.items())]

    def has_override(self, vendor_id: str) -> bool:
        return vendor_id != DEFAULT_VENDOR and vendor_id in self._tables


def parse_mappings(raw: Iterable[Mapping]) -> list[VendorStatusMapping]:
    """Accepts [{"vendorStatus", "internalStatus", "event"}, ...] (snake_case keys also accepted)."""
    out = []
    for item in raw:
        try:
            vendor_status = item.get("vendorStatus", item.get("vendor_status"))
            internal = item.get("internalStatus", item.get("internal_status"))
            event = item["event"]
            if not vendor_status:
                raise KeyError("vendorStatus")
            out.append(VendorStatusMapping(str(vendor_status), OrderStatus(internal), str(event)))
        except (KeyError, ValueError) as e:
            raise MappingConfigError(f"Invalid mapping entry {dict(item)!r}: {e}") from e
    return out


def load_registry(path: str | None = None) -> VendorMappingRegistry:
    """
    Build the registry from the bundled defaults plus an optional JSON file:
    {"<vendor_id>": [{"vendorStatus": ..., "internalStatus": ..., "event": ...}, ...]}
    A "default" key replaces the bundled default table.
    """
    if not path:
        return VendorMappingRegistry()
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise MappingConfigError(f"{path}: expected an object keyed by vendor id")
    default = parse_mappings(data[DEFAULT_VENDOR]) if DEFAULT_VENDOR in data else DEFAULT_MAPPINGS
    registry = VendorMappingRegistry(default_mappings=default)
    for vendor_id, entries in data.items():
        if vendor_id == DEFAULT_VENDOR:
            continue
        registry.register_mapping(vendor_id, parse_mappings(entries))
    logger.info("Loaded vendor mappings from %s (%d vendor override(s))", path, len(data) - (DEFAULT_VENDOR in data))
    return registry
