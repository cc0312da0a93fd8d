"""
FCL Import Status Deriver — per-step status of a full-container-load import.

The container list entered on Shipment creation drives every container
step: discharge, pull-out, delivery and the two token bookings count the
containers that reached the event and compare against the total.

Gates between steps:
    Order received       tracking steps stay PENDING until the order is in
    Bill of lading       Delivery order stays PENDING until the BL is released
    Delivery order       with an accepted invoice option, opens Bill of entry
    Bill of entry        opens container pull-out and token booking

A snapshot flagged ``blocked`` reports BLOCKED and never opens a gate.

Usage:
    from app.services.fcl_import_status import compute_fcl_statuses

    result = compute_fcl_statuses(steps_by_name, doc_types=doc_types)
    result.statuses["Bill of entry passed"]   # -> StepStatus.DONE
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.services.field_paths import FieldPath
from app.services.field_values import step_field_doc_type
from app.services.ftl_export_status import event_reached, status_by_done_and_touched
from app.services.workflow_catalog import FclInvoiceOption, StepStatus, WorkflowCatalog, default_catalog
from app.utils.helpers import get_string, is_truthy, to_record

logger = logging.getLogger(__name__)

CONTAINER_GROUP = "containers"


# ═════════════════════════════════════════════════════════════════════════════
# Container rows
# ═════════════════════════════════════════════════════════════════════════════

def normalize_container_numbers(numbers) -> list[str]:
    """Trimmed, non-blank, de-duplicated container numbers in entry order."""
    seen: dict[str, None] = {}
    for raw in numbers or ():
        text = get_string(raw)
        if text:
            seen.setdefault(text, None)
    return list(seen)


def extract_container_numbers(values, group_id: str = CONTAINER_GROUP) -> list[str]:
    group = to_record(values).get(group_id)
    if not isinstance(group, list):
        return []
    return normalize_container_numbers(
        entry.get("container_number") if isinstance(entry, dict) else "" for entry in group
    )


def normalize_container_rows(container_numbers, values, group_id: str = CONTAINER_GROUP) -> list[dict]:
    """One text-only row per container, matched to stored rows by container number.

    Containers with no stored row get ``{"container_number": <number>}``.
    """
    by_number: dict[str, dict] = {}
    group = to_record(values).get(group_id)
    for entry in group if isinstance(group, list) else ():
        if not isinstance(entry, dict):
            continue
        number = get_string(entry.get("container_number"))
        if not number:
            continue
        row = {key: value for key, value in entry.items() if isinstance(value, str)}
        row["container_number"] = number
        by_number[number] = row
    return [
        by_number.get(number, {"container_number": number})
        for number in normalize_container_numbers(container_numbers)
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Results
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class FclStatusResult:
    container_numbers: list[str] = field(default_factory=list)
    statuses: dict[str, StepStatus] = field(default_factory=dict)
    invoice_option: str = ""
    bl_done: bool = False
    delivery_order_done: bool = False
    boe_done: bool = False
    discharged_count: int = 0
    pulled_out_count: int = 0
    delivered_count: int = 0

    def status(self, step_name: str) -> StepStatus:
        return self.statuses.get(step_name, StepStatus.PENDING)

    def to_dict(self) -> dict:
        return {
            "container_numbers": list(self.container_numbers),
            "statuses": {name: status.value for name, status in self.statuses.items()},
            "invoice_option": self.invoice_option,
            "bl_done": self.bl_done,
            "delivery_order_done": self.delivery_order_done,
            "boe_done": self.boe_done,
            "discharged_count": self.discharged_count,
            "pulled_out_count": self.pulled_out_count,
            "delivered_count": self.delivered_count,
        }


def count_status(count: int, total: int) -> StepStatus:
    """Status of a per-container step from how many containers reached it."""
    if total <= 0 or count <= 0:
        return StepStatus.PENDING
    if count >= total:
        return StepStatus.DONE
    return StepStatus.IN_PROGRESS


class _Steps:
    """Lookup helpers over the snapshots of one computation."""

    def __init__(self, steps_by_name, doc_types):
        self.steps = dict(steps_by_name or {})
        self.doc_types = frozenset(doc_types or ())

    def values(self, name: str) -> dict:
        snapshot = self.steps.get(name)
        return to_record(snapshot.values) if snapshot else {}

    def blocked(self, name: str) -> bool:
        snapshot = self.steps.get(name)
        return bool(snapshot and snapshot.blocked)

    def has_file(self, name: str, *segments) -> bool:
        snapshot = self.steps.get(name)
        if snapshot is None:
            return False
        return step_field_doc_type(snapshot.id, FieldPath.of(*segments)) in self.doc_types

    def rows(self, name: str, container_numbers) -> list[dict]:
        return normalize_container_rows(container_numbers, self.values(name))


# ═════════════════════════════════════════════════════════════════════════════
# Customs documents
# ═════════════════════════════════════════════════════════════════════════════

def _bill_of_lading(steps: _Steps, name: str) -> tuple[StepStatus, bool]:
    values = steps.values(name)
    bl_type = to_record(values.get("bl_type"))
    telex = to_record(bl_type.get("telex"))
    original = to_record(bl_type.get("original"))

    telex_released = is_truthy(telex.get("telex_copy_released")) and steps.has_file(
        name, "bl_type", "telex", "telex_copy_released_file"
    )
    original_submitted = (
        is_truthy(original.get("original_received"))
        and is_truthy(original.get("original_submitted"))
        and bool(get_string(original.get("original_submitted_date")))
    )
    original_surrendered = is_truthy(original.get("original_surrendered")) and steps.has_file(
        name, "bl_type", "original", "original_surrendered_file"
    )
    done = telex_released or original_submitted or original_surrendered
    touched = bool(get_string(values.get("draft_bl_file")) or telex or original)
    return status_by_done_and_touched(done, touched), done


def invoice_option(values: dict) -> str:
    """Chosen invoice option; older records only carry the two tick boxes."""
    option = get_string(values.get("invoice_option")).upper()
    if option:
        return option
    if is_truthy(values.get("proceed_with_copy")):
        return FclInvoiceOption.COPY_FINE.value
    if is_truthy(values.get("original_invoice_received")):
        return FclInvoiceOption.ORIGINAL.value
    return ""


def _commercial_invoice(steps: _Steps, name: str) -> tuple[StepStatus, str]:
    values = steps.values(name)
    option = invoice_option(values)
    done = option in (FclInvoiceOption.COPY_FINE.value, FclInvoiceOption.ORIGINAL.value)
    touched = (
        bool(option)
        or is_truthy(values.get("copy_invoice_received"))
        or is_truthy(values.get("original_invoice_received"))
        or steps.has_file(name, "copy_invoice_file")
        or steps.has_file(name, "original_invoice_file")
    )
    return status_by_done_and_touched(done, touched), option


def _delivery_order(steps: _Steps, name: str, bl_done: bool) -> tuple[StepStatus, bool]:
    values = steps.values(name)
    if not bl_done:
        return StepStatus.PENDING, False
    obtained = is_truthy(values.get("delivery_order_obtained"))
    order_date = get_string(values.get("delivery_order_date"))
    done = obtained and bool(order_date) and steps.has_file(name, "delivery_order_file")
    touched = obtained or bool(order_date) or bool(get_string(values.get("delivery_order_validity")))
    return status_by_done_and_touched(done, touched), done


def _bill_of_entry(steps: _Steps, name: str, ready: bool) -> tuple[StepStatus, bool]:
    if not ready:
        return StepStatus.PENDING, False
    values = steps.values(name)
    boe_date = get_string(values.get("boe_date"))
    boe_number = get_string(values.get("boe_number"))
    has_file = steps.has_file(name, "boe_file")
    done = bool(boe_date) and bool(boe_number) and has_file
    return status_by_done_and_touched(done, bool(boe_date or boe_number or has_file)), done


def _token_complete(steps: _Steps, name: str, rows: list[dict], field_id: str) -> int:
    """Rows with the booking date and its document; files are keyed by container order."""
    return sum(
        1 for index, row in enumerate(rows)
        if get_string(row.get(f"{field_id}_date"))
        and steps.has_file(name, CONTAINER_GROUP, str(index), f"{field_id}_file")
    )


# ═════════════════════════════════════════════════════════════════════════════
# Entry point
# ═════════════════════════════════════════════════════════════════════════════

def compute_fcl_statuses(steps_by_name, container_numbers=None, doc_types=(), catalog=None) -> FclStatusResult:
    """Derive every FCL import step status from the current answers.

    Args:
        steps_by_name: Mapping of step name to ``StepSnapshot``.
        container_numbers: Containers of the shipment; None reads them from
            the Shipment creation step.
        doc_types: Document-type tokens of received documents on the shipment.
        catalog: Workflow catalog; defaults to ``default_catalog()``.

    Returns:
        FclStatusResult. Shipment creation only gets a status when the
        shipment has that step.
    """
    catalog: WorkflowCatalog = catalog or default_catalog()
    fcl = catalog.fcl
    steps = _Steps(steps_by_name, doc_types)
    if container_numbers is None:
        container_numbers = extract_container_numbers(steps.values(fcl.shipment_creation))
    numbers = normalize_container_numbers(container_numbers)
    total = len(numbers)
    result = FclStatusResult(container_numbers=numbers)
    statuses = result.statuses

    def settle(name: str, status: StepStatus, done: bool = False) -> bool:
        if steps.blocked(name):
            statuses[name] = StepStatus.BLOCKED
            return False
        statuses[name] = status
        return done

    if fcl.shipment_creation in steps.steps:
        settle(fcl.shipment_creation, StepStatus.DONE if total else StepStatus.PENDING)

    # ── Order and vessel ──
    order_received = is_truthy(steps.values(fcl.order_received).get("order_received"))
    tracking_enabled = settle(
        fcl.order_received,
        StepStatus.DONE if order_received else StepStatus.PENDING,
        order_received,
    )

    vessel = steps.values(fcl.vessel_tracking)
    ata = get_string(vessel.get("ata"))
    if not tracking_enabled:
        vessel_status = StepStatus.PENDING
    elif ata:
        vessel_status = StepStatus.DONE
    elif get_string(vessel.get("eta")):
        vessel_status = StepStatus.IN_PROGRESS
    else:
        vessel_status = StepStatus.PENDING
    vessel_arrived = settle(fcl.vessel_tracking, vessel_status, bool(ata))

    result.discharged_count = sum(
        1 for row in steps.rows(fcl.containers_discharge, numbers)
        if event_reached(row, "container_discharged")
    )
    discharge_open = tracking_enabled and vessel_arrived
    settle(
        fcl.containers_discharge,
        count_status(result.discharged_count, total) if discharge_open else StepStatus.PENDING,
    )

    # ── Customs documents ──
    bl_status, bl_done = _bill_of_lading(steps, fcl.bill_of_lading)
    result.bl_done = settle(fcl.bill_of_lading, bl_status, bl_done)

    invoice_status, option = _commercial_invoice(steps, fcl.commercial_invoice)
    result.invoice_option = option
    invoice_done = settle(fcl.commercial_invoice, invoice_status, invoice_status == StepStatus.DONE)

    delivery_status, delivery_done = _delivery_order(steps, fcl.delivery_order, result.bl_done)
    result.delivery_order_done = settle(fcl.delivery_order, delivery_status, delivery_done)

    boe_ready = result.delivery_order_done and (invoice_done or option == FclInvoiceOption.COPY_20_DAYS.value)
    boe_status, boe_done = _bill_of_entry(steps, fcl.bill_of_entry, boe_ready)
    result.boe_done = settle(fcl.bill_of_entry, boe_status, boe_done)

    # ── Containers ──
    result.pulled_out_count = sum(
        1 for row in steps.rows(fcl.container_pull_out, numbers)
        if is_truthy(row.get("pulled_out")) or get_string(row.get("pull_out_date"))
    )
    pull_out_open = tracking_enabled and result.boe_done and result.discharged_count > 0
    settle(
        fcl.container_pull_out,
        count_status(result.pulled_out_count, total) if pull_out_open else StepStatus.PENDING,
    )

    result.delivered_count = sum(
        1 for row in steps.rows(fcl.container_delivery, numbers)
        if event_reached(row, "delivered_offloaded")
    )
    settle(
        fcl.container_delivery,
        count_status(result.delivered_count, total) if tracking_enabled else StepStatus.PENDING,
    )

    token_rows = steps.rows(fcl.token_booking, numbers)
    token_complete = _token_complete(steps, fcl.token_booking, token_rows, "token")
    settle(
        fcl.token_booking,
        count_status(token_complete, total) if result.boe_done else StepStatus.PENDING,
    )

    return_rows = steps.rows(fcl.return_token_booking, numbers)
    settle(
        fcl.return_token_booking,
        count_status(_token_complete(steps, fcl.return_token_booking, return_rows, "return_token"), total),
    )

    logger.debug(
        "Derived FCL import statuses",
        extra={"status": {k: v.value for k, v in statuses.items()}},
    )
    return result
