"""
Allocation Ledger — how much of each import shipment's stock has been
allocated by FTL export shipments.

The ledger is rebuilt from a full scan of every export shipment's
"Import shipment selection" rows on each read. Each row is attributed to an
import shipment by, in order of preference:

    1. source_shipment_id           (explicit link)
    2. import_shipment_reference    (import shipment code, case-insensitive)
    3. import_boe_number            (bill of entry, case-insensitive)

One import shipment can be reached through several keys. Buckets found for
it are de-duplicated, and history entries are merged per exporting
shipment, so one exporter never appears twice.

The module is pure: callers pass in ``ShipmentRecord`` snapshots built from
storage (see shipment_workflow_service).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace

from app.services.workflow_catalog import (
    OverallStatus,
    StepStatus,
    TransferOutcome,
    WorkflowCatalog,
    default_catalog,
)
from app.services.ftl_export_rows import IMPORT_GROUP
from app.utils.helpers import as_group_array, get_number, is_truthy, to_record, to_text

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Inputs
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StepRecord:
    id: int
    name: str
    status: str = StepStatus.PENDING.value
    values: dict = field(default_factory=dict)
    updated_at: str = ""


@dataclass(frozen=True)
class ShipmentRecord:
    id: int
    code: str
    overall_status: str = OverallStatus.CREATED.value
    weight_kg: float = 0.0
    packages_count: float = 0.0
    cargo_description: str = ""
    client_number: str = ""
    job_ids: str = ""
    export_date: str = ""
    steps: tuple = ()

    def step(self, name: str) -> StepRecord | None:
        return next((s for s in self.steps if s.name == name), None)

    def has_step(self, *names: str) -> bool:
        return any(s.name in names for s in self.steps)


# ═════════════════════════════════════════════════════════════════════════════
# Buckets
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class AllocationEntry:
    export_shipment_id: int
    export_shipment_code: str
    export_date: str = ""
    allocated_weight: float = 0.0
    allocated_quantity: float = 0.0

    @property
    def history_key(self) -> str:
        if self.export_shipment_id > 0:
            return f"shipment:{self.export_shipment_id}"
        return f"legacy:{self.export_shipment_code}:{self.export_date}"

    def to_dict(self) -> dict:
        return {
            "export_shipment_id": self.export_shipment_id,
            "export_shipment_code": self.export_shipment_code,
            "export_date": self.export_date,
            "allocated_weight": self.allocated_weight,
            "allocated_quantity": self.allocated_quantity,
        }


@dataclass
class AllocationBucket:
    weight: float = 0.0
    quantity: float = 0.0
    history: dict[str, AllocationEntry] = field(default_factory=dict)

    def add(self, entry: AllocationEntry) -> None:
        self.weight += entry.allocated_weight
        self.quantity += entry.allocated_quantity
        if entry.allocated_weight <= 0 and entry.allocated_quantity <= 0:
            return
        current = self.history.get(entry.history_key)
        if current is None:
            self.history[entry.history_key] = replace(entry)
            return
        current.allocated_weight += entry.allocated_weight
        current.allocated_quantity += entry.allocated_quantity
        if not current.export_date and entry.export_date:
            current.export_date = entry.export_date


def _history_sort_key(entry: AllocationEntry):
    # Dated entries first, oldest first; then by export code.
    return (0 if entry.export_date else 1, entry.export_date, entry.export_shipment_code)


def merge_histories(buckets) -> list[AllocationEntry]:
    merged: dict[str, AllocationEntry] = {}
    for bucket in buckets:
        for entry in bucket.history.values():
            current = merged.get(entry.history_key)
            if current is None:
                merged[entry.history_key] = replace(entry)
                continue
            current.allocated_weight += entry.allocated_weight
            current.allocated_quantity += entry.allocated_quantity
    return sorted(merged.values(), key=_history_sort_key)


@dataclass(frozen=True)
class Consumption:
    weight: float = 0.0
    quantity: float = 0.0
    history: tuple = ()


@dataclass
class AllocationLedger:
    by_shipment_id: dict[int, AllocationBucket] = field(default_factory=dict)
    by_reference: dict[str, AllocationBucket] = field(default_factory=dict)

    def buckets_for(self, shipment_id: int, code: str = "", boe_number: str = "") -> list[AllocationBucket]:
        """Every distinct bucket that refers to one import shipment."""
        found = [
            self.by_shipment_id.get(shipment_id),
            self.by_reference.get(code.strip().upper()) if code else None,
            self.by_reference.get(boe_number.strip().upper()) if boe_number else None,
        ]
        unique: list[AllocationBucket] = []
        for bucket in found:
            if bucket is not None and not any(bucket is seen for seen in unique):
                unique.append(bucket)
        return unique

    def consumption(self, shipment_id: int, code: str = "", boe_number: str = "") -> Consumption:
        buckets = self.buckets_for(shipment_id, code, boe_number)
        return Consumption(
            weight=sum(b.weight for b in buckets),
            quantity=sum(b.quantity for b in buckets),
            history=tuple(merge_histories(buckets)),
        )


def _source_id(value) -> int:
    text = to_text(value)
    return int(text) if text.isdigit() else 0


def build_allocation_ledger(shipments, exclude_shipment_id=None, catalog=None) -> AllocationLedger:
    """Scan every export shipment's allocation rows except *exclude_shipment_id*."""
    catalog = catalog or default_catalog()
    step_name = catalog.ftl.import_selection
    ledger = AllocationLedger()

    for shipment in shipments:
        if exclude_shipment_id is not None and shipment.id == exclude_shipment_id:
            continue
        step = shipment.step(step_name)
        if step is None:
            continue
        export_code = shipment.code or f"SHP-{shipment.id:06d}"
        export_date = shipment.export_date or step.updated_at or ""
        for row in as_group_array(step.values, IMPORT_GROUP):
            entry = AllocationEntry(
                export_shipment_id=shipment.id,
                export_shipment_code=export_code,
                export_date=export_date,
                allocated_weight=get_number(row.get("allocated_weight")),
                allocated_quantity=get_number(row.get("allocated_quantity")),
            )
            source_id = _source_id(row.get("source_shipment_id"))
            if source_id > 0:
                ledger.by_shipment_id.setdefault(source_id, AllocationBucket()).add(entry)
                continue
            key = (
                to_text(row.get("import_shipment_reference")).upper()
                or to_text(row.get("import_boe_number")).upper()
            )
            if key:
                ledger.by_reference.setdefault(key, AllocationBucket()).add(entry)
    return ledger


# ═════════════════════════════════════════════════════════════════════════════
# Import stock snapshots
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ImportStockSnapshot:
    workflow: str
    boe_number: str = ""
    imported_weight: float = 0.0
    imported_quantity: float = 0.0
    package_type: str = ""
    cargo_description: str = ""
    processed_available: bool = False
    non_physical_stock: bool = False


def _fcl_snapshot(shipment: ShipmentRecord, catalog: WorkflowCatalog) -> ImportStockSnapshot:
    fcl = catalog.fcl
    boe_step = shipment.step(fcl.bill_of_entry)
    pull_out = shipment.step(fcl.container_pull_out)
    delivery = shipment.step(fcl.container_delivery)

    pull_out_by_container = {}
    for row in as_group_array(pull_out.values if pull_out else {}, "containers"):
        number = to_text(row.get("container_number"))
        if number:
            pull_out_by_container[number] = row

    weight = quantity = 0.0
    package_type = cargo_description = ""
    has_physical_rows = False
    for row in as_group_array(delivery.values if delivery else {}, "containers"):
        pulled = to_record(pull_out_by_container.get(to_text(row.get("container_number"))))
        row_weight = get_number(row.get("total_weight_kg"))
        row_quantity = get_number(row.get("total_packages"))
        row_package = to_text(row.get("package_type"))
        row_description = to_text(row.get("cargo_description"))
        has_data = row_weight > 0 or row_quantity > 0 or row_package or row_description
        if not is_truthy(pulled.get("stock_tracking_enabled")) and not has_data:
            continue
        has_physical_rows = True
        weight += row_weight
        quantity += row_quantity
        package_type = package_type or row_package
        cargo_description = cargo_description or row_description

    return ImportStockSnapshot(
        workflow="fcl",
        boe_number=to_text(to_record(boe_step.values if boe_step else {}).get("boe_number")),
        imported_weight=weight if weight > 0 else shipment.weight_kg,
        imported_quantity=quantity if quantity > 0 else shipment.packages_count,
        package_type=package_type,
        cargo_description=cargo_description or shipment.cargo_description,
        processed_available=bool(boe_step and boe_step.status == StepStatus.DONE.value),
        non_physical_stock=not has_physical_rows,
    )


def _transfer_snapshot(shipment: ShipmentRecord, catalog: WorkflowCatalog) -> ImportStockSnapshot:
    transfer = catalog.transfer
    parties = to_record(shipment.step(transfer.parties_cargo).values)
    docs_step = shipment.step(transfer.documents_boe)
    collection_step = shipment.step(transfer.collection_outcome)
    collection = to_record(collection_step.values if collection_step else {})

    boe_done = bool(docs_step and docs_step.status == StepStatus.DONE.value)
    outcome = TransferOutcome.parse(collection.get("outcome_type"))
    delivered = is_truthy(collection.get("cargo_delivered_to_zaxon")) and bool(
        to_text(collection.get("dropoff_date"))
    )
    if not boe_done or outcome != TransferOutcome.DELIVER_TO_ZAXON_WAREHOUSE:
        non_physical = True
    else:
        non_physical = not delivered

    weight = get_number(parties.get("total_weight"))
    quantity = get_number(parties.get("quantity"))
    return ImportStockSnapshot(
        workflow="transfer_ownership",
        boe_number=to_text(to_record(docs_step.values if docs_step else {}).get("boe_number")),
        imported_weight=weight if weight > 0 else shipment.weight_kg,
        imported_quantity=quantity if quantity > 0 else shipment.packages_count,
        package_type=to_text(parties.get("package_type")),
        cargo_description=to_text(parties.get("cargo_description")) or shipment.cargo_description,
        processed_available=boe_done,
        non_physical_stock=non_physical,
    )


def import_stock_snapshot(shipment: ShipmentRecord, catalog=None) -> ImportStockSnapshot | None:
    """Stock an import shipment brought in; None for shipments that are not imports."""
    catalog = catalog or default_catalog()
    if shipment.has_step(catalog.transfer.parties_cargo):
        snapshot = _transfer_snapshot(shipment, catalog)
    elif shipment.has_step(*catalog.fcl.all):
        snapshot = _fcl_snapshot(shipment, catalog)
    else:
        return None

    processed = (
        snapshot.processed_available
        or any(
            s.status == StepStatus.DONE.value and catalog.looks_processed(s.name)
            for s in shipment.steps
        )
        or shipment.overall_status == OverallStatus.COMPLETED.value
    )
    if processed == snapshot.processed_available:
        return snapshot
    return replace(snapshot, processed_available=processed)


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RemainingStock:
    shipment_id: int
    shipment_code: str
    imported_weight: float
    imported_quantity: float
    allocated_weight: float
    allocated_quantity: float
    history: tuple = ()

    @property
    def remaining_weight(self) -> float:
        return self.imported_weight - self.allocated_weight

    @property
    def remaining_quantity(self) -> float:
        return self.imported_quantity - self.allocated_quantity

    @property
    def over_allocated(self) -> bool:
        return self.remaining_weight < 0 or self.remaining_quantity < 0

    @property
    def available_weight(self) -> float:
        return max(0.0, self.remaining_weight)

    @property
    def available_quantity(self) -> float:
        return max(0.0, self.remaining_quantity)

    def to_dict(self) -> dict:
        return {
            "shipment_id": self.shipment_id,
            "shipment_code": self.shipment_code,
            "imported_weight": self.imported_weight,
            "imported_quantity": self.imported_quantity,
            "allocated_weight": self.allocated_weight,
            "allocated_quantity": self.allocated_quantity,
            "remaining_weight": self.remaining_weight,
            "remaining_quantity": self.remaining_quantity,
            "available_weight": self.available_weight,
            "available_quantity": self.available_quantity,
            "over_allocated": self.over_allocated,
            "history": [entry.to_dict() for entry in self.history],
        }


@dataclass(frozen=True)
class ImportCandidate:
    shipment_id: int
    shipment_code: str
    job_ids: str
    client_number: str
    snapshot: ImportStockSnapshot
    stock: RemainingStock
    overall_status: str

    def to_dict(self) -> dict:
        return {
            "shipment_id": self.shipment_id,
            "shipment_code": self.shipment_code,
            "job_ids": self.job_ids,
            "client_number": self.client_number,
            "import_boe_number": self.snapshot.boe_number,
            "processed_available": self.snapshot.processed_available,
            "non_physical_stock": self.snapshot.non_physical_stock,
            "package_type": self.snapshot.package_type,
            "cargo_description": self.snapshot.cargo_description,
            "overall_status": self.overall_status,
            **{k: v for k, v in self.stock.to_dict().items() if k not in ("shipment_id", "shipment_code")},
        }


def _remaining_for(shipment: ShipmentRecord, snapshot: ImportStockSnapshot, ledger: AllocationLedger) -> RemainingStock:
    used = ledger.consumption(shipment.id, shipment.code, snapshot.boe_number)
    return RemainingStock(
        shipment_id=shipment.id,
        shipment_code=shipment.code,
        imported_weight=snapshot.imported_weight,
        imported_quantity=snapshot.imported_quantity,
        allocated_weight=used.weight,
        allocated_quantity=used.quantity,
        history=used.history,
    )


def import_candidates(shipments, current_shipment_id=None, catalog=None) -> list[ImportCandidate]:
    """Import shipments an export may allocate from, newest first.

    Allocations made by *current_shipment_id* itself are left out of the
    already-allocated totals, so its own rows can be edited freely.
    """
    catalog = catalog or default_catalog()
    shipments = list(shipments)
    ledger = build_allocation_ledger(shipments, exclude_shipment_id=current_shipment_id, catalog=catalog)

    candidates = []
    for shipment in shipments:
        if shipment.id == current_shipment_id:
            continue
        snapshot = import_stock_snapshot(shipment, catalog)
        if snapshot is None:
            continue
        candidates.append(ImportCandidate(
            shipment_id=shipment.id,
            shipment_code=shipment.code,
            job_ids=shipment.job_ids,
            client_number=shipment.client_number,
            snapshot=snapshot,
            stock=_remaining_for(shipment, snapshot, ledger),
            overall_status=shipment.overall_status,
        ))
    candidates.sort(key=lambda c: c.shipment_id, reverse=True)
    return candidates


def remaining_stock(shipments, import_shipment_id: int, catalog=None) -> RemainingStock | None:
    """Remaining stock of one import shipment across every exporting shipment.

    Returns None when the shipment is unknown or is not an import.
    """
    catalog = catalog or default_catalog()
    shipments = list(shipments)
    target = next((s for s in shipments if s.id == import_shipment_id), None)
    if target is None:
        return None
    snapshot = import_stock_snapshot(target, catalog)
    if snapshot is None:
        return None
    ledger = build_allocation_ledger(shipments, catalog=catalog)
    stock = _remaining_for(target, snapshot, ledger)
    if stock.over_allocated:
        logger.debug("Import shipment %s is over-allocated", import_shipment_id,
                     extra={"shipment_id": import_shipment_id})
    return stock
