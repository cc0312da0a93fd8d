"""
Import Transfer of Ownership Status Deriver.

Cargo already in the UAE changes hands from a supplier to a client. The
bill of entry on "Documents and BOE" is the pivot: until it is done the
cargo is not stock (stock type PENDING), after it the cargo is either
ownership stock left at the supplier or warehouse stock once it has been
dropped off at the Zaxon warehouse.

Usage:
    from app.services.transfer_ownership_status import compute_transfer_statuses

    result = compute_transfer_statuses(steps_by_name, doc_types=doc_types)
    result.stock_type   # -> TransferStockType.OWNERSHIP_STOCK
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.services.field_paths import FieldPath
from app.services.field_values import step_field_doc_type
from app.services.ftl_export_status import status_by_done_and_touched
from app.services.workflow_catalog import (
    StepStatus,
    TransferOutcome,
    TransferStockType,
    default_catalog,
)
from app.utils.helpers import as_group_array, get_number, get_string, has_any_value, is_truthy, to_record

logger = logging.getLogger(__name__)

MANDATORY_DOCUMENTS = ("transfer_ownership_letter", "delivery_advice", "commercial_invoice")
OPTIONAL_DOCUMENTS = ("packing_list",)
BOE_DOCUMENT = "boe_upload"
PARTIES_REQUIRED_TEXT = ("supplier_company_name", "supplier_location", "supplier_contact_person", "package_type")


@dataclass(frozen=True)
class VehicleRow:
    index: int
    vehicle_type: str = ""
    vehicle_size: str = ""
    vehicle_count: float = 0.0

    @property
    def has_data(self) -> bool:
        return bool(self.vehicle_type or self.vehicle_size or self.vehicle_count > 0)

    @property
    def is_valid(self) -> bool:
        return bool(self.vehicle_type and self.vehicle_size)


def parse_vehicle_rows(values) -> list[VehicleRow]:
    return [
        VehicleRow(
            index=index,
            vehicle_type=get_string(row.get("vehicle_type")),
            vehicle_size=get_string(row.get("vehicle_size")),
            vehicle_count=get_number(row.get("vehicle_count")),
        )
        for index, row in enumerate(as_group_array(to_record(values), "vehicles"))
    ]


def transfer_stock_type(boe_done: bool, outcome, delivered_to_warehouse: bool) -> TransferStockType:
    if not boe_done:
        return TransferStockType.PENDING
    if TransferOutcome.parse(outcome) == TransferOutcome.DELIVER_TO_ZAXON_WAREHOUSE and delivered_to_warehouse:
        return TransferStockType.WAREHOUSE_STOCK
    return TransferStockType.OWNERSHIP_STOCK


@dataclass
class TransferStatusResult:
    statuses: dict[str, StepStatus] = field(default_factory=dict)
    docs_done: bool = False
    boe_done: bool = False
    collection_done: bool = False
    stock_type: TransferStockType = TransferStockType.PENDING
    pending_collection: bool = False
    pending_collection_reason_missing: bool = False
    imported_quantity: float = 0.0
    imported_weight: float = 0.0

    def status(self, step_name: str) -> StepStatus:
        return self.statuses.get(step_name, StepStatus.PENDING)

    def to_dict(self) -> dict:
        return {
            "statuses": {name: status.value for name, status in self.statuses.items()},
            "docs_done": self.docs_done,
            "boe_done": self.boe_done,
            "collection_done": self.collection_done,
            "stock_type": self.stock_type.value,
            "pending_collection": self.pending_collection,
            "pending_collection_reason_missing": self.pending_collection_reason_missing,
            "imported_quantity": self.imported_quantity,
            "imported_weight": self.imported_weight,
        }


def compute_transfer_statuses(steps_by_name, doc_types=(), catalog=None) -> TransferStatusResult:
    """Derive every transfer-of-ownership step status from the current answers.

    Args:
        steps_by_name: Mapping of step name to ``StepSnapshot``.
        doc_types: Document-type tokens of received documents on the shipment.
        catalog: Workflow catalog; defaults to ``default_catalog()``.

    Returns:
        TransferStatusResult with one status per step and the stock position.
    """
    transfer = (catalog or default_catalog()).transfer
    steps = dict(steps_by_name or {})
    doc_types = frozenset(doc_types or ())
    result = TransferStatusResult()

    def values(name: str) -> dict:
        snapshot = steps.get(name)
        return to_record(snapshot.values) if snapshot else {}

    def has_file(name: str, field_id: str) -> bool:
        snapshot = steps.get(name)
        if snapshot is None:
            return False
        return step_field_doc_type(snapshot.id, FieldPath.of(field_id)) in doc_types

    def settle(name: str, status: StepStatus, done: bool = False) -> bool:
        snapshot = steps.get(name)
        if snapshot is not None and snapshot.blocked:
            result.statuses[name] = StepStatus.BLOCKED
            return False
        result.statuses[name] = status
        return done

    # ── Overview ──
    overview = values(transfer.overview)
    settle(transfer.overview, status_by_done_and_touched(
        is_truthy(overview.get("request_received")) and bool(get_string(overview.get("request_received_date"))),
        has_any_value(overview),
    ))

    # ── Parties and cargo ──
    parties = values(transfer.parties_cargo)
    result.imported_quantity = get_number(parties.get("quantity"))
    result.imported_weight = get_number(parties.get("total_weight"))
    parties_done = (
        all(get_string(parties.get(field_id)) for field_id in PARTIES_REQUIRED_TEXT)
        and result.imported_quantity > 0
        and result.imported_weight > 0
    )
    settle(transfer.parties_cargo, status_by_done_and_touched(parties_done, has_any_value(parties)))

    # ── Documents and BOE ──
    docs_step = transfer.documents_boe
    documents = values(docs_step)
    result.docs_done = all(has_file(docs_step, doc) for doc in MANDATORY_DOCUMENTS)
    boe_done = (
        all(get_string(documents.get(f)) for f in ("boe_prepared_by", "boe_number", "boe_date"))
        and has_file(docs_step, BOE_DOCUMENT)
    )
    docs_touched = has_any_value(documents) or any(
        has_file(docs_step, doc) for doc in MANDATORY_DOCUMENTS + OPTIONAL_DOCUMENTS + (BOE_DOCUMENT,)
    )
    docs_open = settle(docs_step, status_by_done_and_touched(result.docs_done and boe_done, docs_touched), True)
    result.boe_done = boe_done and docs_open

    # ── Collection and outcome ──
    collection = values(transfer.collection_outcome)
    outcome = TransferOutcome.parse(collection.get("outcome_type"))
    vehicles = [row for row in parse_vehicle_rows(collection) if row.has_data]
    plan_ready = outcome is not None and bool(get_string(collection.get("collection_performed_by")))
    delivered_to_warehouse = is_truthy(collection.get("cargo_delivered_to_zaxon")) and bool(
        get_string(collection.get("dropoff_date"))
    )
    warehouse_complete = outcome == TransferOutcome.DELIVER_TO_ZAXON_WAREHOUSE and delivered_to_warehouse
    direct_export_complete = (
        outcome == TransferOutcome.DIRECT_EXPORT
        and is_truthy(collection.get("collected_by_export_truck"))
        and bool(get_string(collection.get("direct_export_date")))
    )
    collection_done = (
        result.boe_done
        and plan_ready
        and all(row.is_valid for row in vehicles)
        and (warehouse_complete or direct_export_complete)
    )
    result.pending_collection = outcome == TransferOutcome.DELIVER_TO_ZAXON_WAREHOUSE and not warehouse_complete
    result.pending_collection_reason_missing = result.pending_collection and not get_string(
        collection.get("pending_reason")
    )
    collection_touched = has_any_value(collection) or outcome is not None or bool(vehicles)
    result.collection_done = settle(
        transfer.collection_outcome,
        status_by_done_and_touched(collection_done, collection_touched),
        collection_done,
    )

    # ── Stock view ──
    stock_touched = has_any_value(values(transfer.stock_view)) or result.boe_done
    settle(transfer.stock_view, status_by_done_and_touched(result.collection_done, stock_touched))

    result.stock_type = transfer_stock_type(
        result.boe_done, collection.get("outcome_type"), delivered_to_warehouse
    )
    logger.debug(
        "Derived transfer of ownership statuses",
        extra={"status": {k: v.value for k, v in result.statuses.items()}},
    )
    return result
