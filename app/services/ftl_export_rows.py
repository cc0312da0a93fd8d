"""
FTL export row views — typed readers over the repeatable groups of the
Trucks details, Loading details and Import shipment selection steps.

All three views read the same loose value tree the requirement evaluator
sees; coercion goes through app.utils.helpers so the truthy set and number
parsing match everywhere.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from app.services.field_paths import FieldPath
from app.services.workflow_catalog import BookingStatus, LoadingOrigin
from app.utils.helpers import (
    as_group_array,
    get_number,
    get_string,
    has_any_value,
    is_truthy,
    normalize_choice,
    to_text,
)

logger = logging.getLogger(__name__)

TRUCKS_GROUP = "trucks"
IMPORT_GROUP = "import_shipments"

_ORIGINS = frozenset(o.value for o in LoadingOrigin)
_BOOKING_STATUSES = frozenset(s.value for s in BookingStatus)


# ═════════════════════════════════════════════════════════════════════════════
# Trucks details
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TruckBookingRow:
    index: int
    truck_reference: str = ""
    truck_number: str = ""
    trailer_type: str = ""
    driver_name: str = ""
    driver_contact: str = ""
    booking_status: str = BookingStatus.PENDING.value
    truck_booked: bool = False
    booking_date: str = ""
    estimated_loading_date: str = ""
    cancellation_reason: str = ""

    @property
    def number(self) -> int:
        """1-based row number shown to users."""
        return self.index + 1

    @property
    def label(self) -> str:
        return self.truck_reference or f"Truck {self.number}"

    @property
    def is_active(self) -> bool:
        return self.booking_status != BookingStatus.CANCELLED.value

    @property
    def is_booked(self) -> bool:
        return self.booking_status == BookingStatus.BOOKED.value and bool(self.booking_date)

    @property
    def marked_booked(self) -> bool:
        return self.booking_status == BookingStatus.BOOKED.value or self.truck_booked

    @property
    def missing_driver_details(self) -> list[str]:
        missing = []
        if not self.truck_number:
            missing.append("truck_number")
        if not self.driver_name:
            missing.append("driver_name")
        if not self.driver_contact:
            missing.append("driver_contact")
        return missing


def parse_truck_rows(values) -> list[TruckBookingRow]:
    return [
        TruckBookingRow(
            index=index,
            truck_reference=get_string(entry.get("truck_reference")),
            truck_number=get_string(entry.get("truck_number")),
            trailer_type=get_string(entry.get("trailer_type")),
            driver_name=get_string(entry.get("driver_name")),
            driver_contact=get_string(entry.get("driver_contact")),
            booking_status=normalize_choice(
                entry.get("booking_status"), _BOOKING_STATUSES, BookingStatus.PENDING.value
            ),
            truck_booked=is_truthy(entry.get("truck_booked")),
            booking_date=get_string(entry.get("booking_date")),
            estimated_loading_date=get_string(entry.get("estimated_loading_date")),
            cancellation_reason=get_string(entry.get("cancellation_reason")),
        )
        for index, entry in enumerate(as_group_array(values, TRUCKS_GROUP))
    ]


@dataclass(frozen=True)
class TruckProgress:
    active: int
    booked: int


def count_active_booked(rows) -> TruckProgress:
    return TruckProgress(
        active=sum(1 for row in rows if row.is_active),
        booked=sum(1 for row in rows if row.is_booked),
    )


@dataclass(frozen=True)
class TruckDetailsCheck:
    complete: bool
    missing_rows: tuple = ()

    @property
    def missing_labels(self) -> list[str]:
        return [row.label for row in self.missing_rows]


def evaluate_invoice_truck_details(rows) -> TruckDetailsCheck:
    """Active trucks still missing truck number, driver name or driver contact."""
    missing = tuple(row for row in rows if row.is_active and row.missing_driver_details)
    return TruckDetailsCheck(complete=not missing, missing_rows=missing)


def find_booking_without_date(rows) -> TruckBookingRow | None:
    """First row marked booked that carries no booking date."""
    return next((row for row in rows if row.marked_booked and not row.booking_date), None)


# ═════════════════════════════════════════════════════════════════════════════
# Loading details
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CargoPart:
    weight: float = 0.0
    quantity: float = 0.0
    unit_type: str = ""
    unit_type_other: str = ""

    @property
    def has_unit(self) -> bool:
        if not self.unit_type:
            return False
        if self.unit_type.lower() != "other":
            return True
        return bool(self.unit_type_other)

    @property
    def is_complete(self) -> bool:
        return self.weight > 0 and self.quantity > 0 and self.has_unit


def _cargo(entry: dict, prefix: str) -> CargoPart:
    return CargoPart(
        weight=get_number(entry.get(f"{prefix}cargo_weight")),
        quantity=get_number(entry.get(f"{prefix}cargo_quantity")),
        unit_type=get_string(entry.get(f"{prefix}cargo_unit_type")),
        unit_type_other=get_string(entry.get(f"{prefix}cargo_unit_type_other")),
    )


@dataclass(frozen=True)
class LoadingRow:
    index: int
    truck_reference: str = ""
    truck_loaded: bool = False
    origin_selected: bool = False
    loading_origin: str = LoadingOrigin.ZAXON_WAREHOUSE.value
    supplier_name: str = ""
    external_loading_date: str = ""
    external_loading_location: str = ""
    zaxon_actual_loading_date: str = ""
    mixed_supplier_loaded: bool = False
    mixed_zaxon_loaded: bool = False
    mixed_supplier_loading_date: str = ""
    mixed_zaxon_loading_date: str = ""
    cargo: CargoPart = field(default_factory=CargoPart)
    mixed_supplier_cargo: CargoPart = field(default_factory=CargoPart)
    mixed_zaxon_cargo: CargoPart = field(default_factory=CargoPart)
    remarks: str = ""

    @property
    def number(self) -> int:
        return self.index + 1

    @property
    def is_mixed(self) -> bool:
        return self.loading_origin == LoadingOrigin.MIXED.value

    @property
    def photo_path(self) -> FieldPath:
        return FieldPath.of(TRUCKS_GROUP, self.index, "loading_photo")

    @property
    def needs_photo(self) -> bool:
        return self.loading_origin in (LoadingOrigin.ZAXON_WAREHOUSE.value, LoadingOrigin.MIXED.value)

    @property
    def is_started(self) -> bool:
        if self.is_mixed:
            return self.mixed_supplier_loaded or self.mixed_zaxon_loaded or self.truck_loaded
        return self.truck_loaded

    @property
    def marked_loaded(self) -> bool:
        if self.is_mixed:
            return self.mixed_supplier_loaded and self.mixed_zaxon_loaded
        return self.truck_loaded

    def _mixed_complete(self) -> bool:
        if not (self.supplier_name and self.external_loading_location):
            return False
        if not (self.mixed_supplier_loading_date and self.mixed_zaxon_loading_date):
            return False
        return self.mixed_supplier_cargo.is_complete and self.mixed_zaxon_cargo.is_complete

    def is_complete(self, has_photo: Callable[[FieldPath], bool]) -> bool:
        """Loaded, dated, cargo fully described and, where needed, photographed."""
        if not self.origin_selected or not self.marked_loaded:
            return False
        if self.is_mixed:
            if not self._mixed_complete():
                return False
        else:
            if self.loading_origin == LoadingOrigin.EXTERNAL_SUPPLIER.value and not self.external_loading_date:
                return False
            if self.loading_origin == LoadingOrigin.ZAXON_WAREHOUSE.value and not self.zaxon_actual_loading_date:
                return False
            if not self.cargo.is_complete:
                return False
        if self.needs_photo:
            return has_photo(self.photo_path)
        return True


def parse_loading_rows(values) -> list[LoadingRow]:
    rows = []
    for index, entry in enumerate(as_group_array(values, TRUCKS_GROUP)):
        raw_origin = get_string(entry.get("loading_origin"))
        rows.append(LoadingRow(
            index=index,
            truck_reference=get_string(entry.get("truck_reference")),
            truck_loaded=is_truthy(entry.get("truck_loaded")),
            origin_selected=bool(raw_origin),
            loading_origin=normalize_choice(raw_origin, _ORIGINS, LoadingOrigin.ZAXON_WAREHOUSE.value),
            supplier_name=get_string(entry.get("supplier_name")),
            external_loading_date=get_string(entry.get("external_loading_date")),
            external_loading_location=get_string(entry.get("external_loading_location")),
            zaxon_actual_loading_date=get_string(entry.get("zaxon_actual_loading_date")),
            mixed_supplier_loaded=is_truthy(entry.get("mixed_supplier_loaded")),
            mixed_zaxon_loaded=is_truthy(entry.get("mixed_zaxon_loaded")),
            mixed_supplier_loading_date=get_string(entry.get("mixed_supplier_loading_date")),
            mixed_zaxon_loading_date=get_string(entry.get("mixed_zaxon_loading_date")),
            cargo=_cargo(entry, ""),
            mixed_supplier_cargo=_cargo(entry, "mixed_supplier_"),
            mixed_zaxon_cargo=_cargo(entry, "mixed_zaxon_"),
            remarks=get_string(entry.get("remarks")),
        ))
    return rows


@dataclass(frozen=True)
class LoadingProgress:
    expected: int = 0
    loaded: int = 0
    complete: int = 0

    def to_dict(self) -> dict:
        return {"expected": self.expected, "loaded": self.loaded, "complete": self.complete}


def base_loading_expectation(truck_rows, loading_rows) -> int:
    """Active trucks, or the number of loading rows when no truck is active."""
    active = sum(1 for row in truck_rows if row.is_active)
    return active or len(loading_rows)


def find_incomplete_loaded_row(rows, has_photo) -> LoadingRow | None:
    """First row ticked as loaded that does not meet the completeness rule."""
    for row in rows:
        if (row.truck_loaded or row.marked_loaded) and not row.is_complete(has_photo):
            return row
    return None


# ═════════════════════════════════════════════════════════════════════════════
# Import shipment selection
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ImportAllocationRow:
    index: int
    source_shipment_id: int = 0
    import_shipment_reference: str = ""
    client_number: str = ""
    import_boe_number: str = ""
    processed_available: bool = False
    non_physical_stock: bool = False
    imported_quantity: float = 0.0
    imported_weight: float = 0.0
    already_allocated_quantity: float = 0.0
    already_allocated_weight: float = 0.0
    allocated_quantity: float = 0.0
    allocated_weight: float = 0.0
    package_type: str = ""
    cargo_description: str = ""
    remarks: str = ""
    touched: bool = False

    @property
    def number(self) -> int:
        return self.index + 1

    @property
    def is_ready(self) -> bool:
        return bool(self.import_shipment_reference) and self.processed_available and (
            self.imported_quantity > 0 or self.imported_weight > 0
        )

    @property
    def is_over_allocated(self) -> bool:
        quantity_over = self.imported_quantity > 0 and self.allocated_quantity > self.imported_quantity
        weight_over = self.imported_weight > 0 and self.allocated_weight > self.imported_weight
        return quantity_over or weight_over

    @property
    def display_reference(self) -> str:
        return (
            self.import_shipment_reference
            or self.import_boe_number
            or self.client_number
            or f"Import {self.number}"
        )


def _source_id(value) -> int:
    text = to_text(value)
    return int(text) if text.isdigit() else 0


def parse_import_rows(values) -> list[ImportAllocationRow]:
    return [
        ImportAllocationRow(
            index=index,
            source_shipment_id=_source_id(entry.get("source_shipment_id")),
            import_shipment_reference=get_string(entry.get("import_shipment_reference")),
            client_number=get_string(entry.get("client_number")),
            import_boe_number=get_string(entry.get("import_boe_number")),
            processed_available=is_truthy(entry.get("processed_available")),
            non_physical_stock=is_truthy(entry.get("non_physical_stock")),
            imported_quantity=get_number(entry.get("imported_quantity")),
            imported_weight=get_number(entry.get("imported_weight")),
            already_allocated_quantity=get_number(entry.get("already_allocated_quantity")),
            already_allocated_weight=get_number(entry.get("already_allocated_weight")),
            allocated_quantity=get_number(entry.get("allocated_quantity")),
            allocated_weight=get_number(entry.get("allocated_weight")),
            package_type=get_string(entry.get("package_type")),
            cargo_description=get_string(entry.get("cargo_description")),
            remarks=get_string(entry.get("remarks")),
            touched=has_any_value(entry),
        )
        for index, entry in enumerate(as_group_array(values, IMPORT_GROUP))
    ]


@dataclass(frozen=True)
class ImportWarnings:
    unavailable: tuple = ()
    over_allocated: tuple = ()

    @property
    def has_warnings(self) -> bool:
        return bool(self.unavailable or self.over_allocated)

    def to_dict(self) -> dict:
        return {
            "unavailable": [row.display_reference for row in self.unavailable],
            "over_allocated": [row.display_reference for row in self.over_allocated],
        }


def compute_import_warnings(rows) -> ImportWarnings:
    return ImportWarnings(
        unavailable=tuple(row for row in rows if not row.processed_available),
        over_allocated=tuple(row for row in rows if row.is_over_allocated),
    )


def all_imports_available(rows) -> bool:
    """True when at least one import is referenced and every one is processed."""
    if not rows:
        return False
    return all(row.processed_available and row.import_shipment_reference for row in rows)


def build_import_stock_summary(rows) -> list[dict]:
    """Per-row imported, exported and remaining stock; remaining never below 0."""
    return [
        {
            "reference": row.display_reference,
            "imported_quantity": row.imported_quantity,
            "imported_weight": row.imported_weight,
            "exported_quantity": row.allocated_quantity,
            "exported_weight": row.allocated_weight,
            "remaining_quantity": max(0.0, row.imported_quantity - row.allocated_quantity),
            "remaining_weight": max(0.0, row.imported_weight - row.allocated_weight),
        }
        for row in rows
    ]
