"""
Shipment workflow service: load, merge, validate, persist, recompute.

Centralises every ORM read and write for shipment steps so the pure engine
modules (field_values, requirement_evaluator, ftl_export_status,
allocation_ledger) never touch the database. Every db.session.commit() in
this module owns its transaction; a rejected save is rolled back and leaves
stored values and statuses as they were.

Step statuses are never taken from the caller. After each save the full
shipment is re-derived:
    FTL export steps          ftl_export_status.compute_statuses
    FCL import steps          fcl_import_status.compute_fcl_statuses
    transfer of ownership     transfer_ownership_status.compute_transfer_statuses
    any other step            requirement_evaluator over the step's own schema
"""

import json
import logging
import time
from datetime import datetime, timezone

from flask import current_app

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.shipment import Shipment, ShipmentDocument, ShipmentStep
from app.services import allocation_ledger
from app.services.allocation_ledger import ShipmentRecord, StepRecord
from app.services.field_paths import FieldPath
from app.services.field_schema import parse_schema, serialize_schema, validate_schema
from app.services.field_values import (
    apply_removals,
    apply_updates,
    extract_removals,
    extract_updates,
    parse_values,
    serialize_values,
    step_field_doc_type,
)
from app.services.fcl_import_status import (
    compute_fcl_statuses,
    extract_container_numbers,
    normalize_container_numbers,
)
from app.services.ftl_export_rows import (
    IMPORT_GROUP,
    find_booking_without_date,
    find_incomplete_loaded_row,
    parse_import_rows,
    parse_loading_rows,
    parse_truck_rows,
)
from app.services.ftl_export_status import (
    StepSnapshot,
    compute_overall_status,
    compute_statuses,
    status_by_done_and_touched,
)
from app.services.requirement_evaluator import (
    describe_missing,
    has_any_answer,
    is_step_complete,
    make_context,
)
from app.services.transfer_ownership_status import compute_transfer_statuses
from app.services.workflow_catalog import (
    ServiceType,
    StepStatus,
    WorkflowCatalog,
    default_catalog,
    resolve_route,
)
from app.utils.helpers import get_string, has_any_value, is_truthy, to_record

logger = logging.getLogger(__name__)


def _utcnow():
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────────────────────
# Loading
# ──────────────────────────────────────────────────────────────────────────────

def _catalog() -> WorkflowCatalog:
    return current_app.extensions.get("workflow_catalog") or default_catalog()


def _get_shipment(shipment_id: int) -> Shipment:
    shipment = db.session.get(Shipment, shipment_id)
    if not shipment:
        raise NotFoundError(resource="Shipment", resource_id=shipment_id)
    return shipment


def _get_step(step_id: int, shipment_id: int | None = None) -> ShipmentStep:
    step = db.session.get(ShipmentStep, step_id)
    if not step or (shipment_id is not None and step.shipment_id != shipment_id):
        raise NotFoundError(resource="ShipmentStep", resource_id=step_id)
    return step


def _route_for(shipment: Shipment, catalog: WorkflowCatalog):
    if shipment.route_id:
        return catalog.coerce_route(shipment.route_id)
    return resolve_route(shipment.origin, shipment.destination)


def _service_type(shipment: Shipment) -> ServiceType | None:
    try:
        return ServiceType((shipment.service_type or "").strip().upper())
    except ValueError:
        return None


def _is_ftl_export(shipment: Shipment) -> bool:
    return _service_type(shipment) == ServiceType.FTL_EXPORT


def _received_doc_types(shipment: Shipment) -> set[str]:
    return {doc.document_type for doc in shipment.documents if doc.is_received}


def _snapshots(shipment: Shipment, overrides: dict | None = None) -> dict[str, StepSnapshot]:
    """Step name to snapshot; *overrides* maps step id to not-yet-stored values."""
    overrides = overrides or {}
    return {
        step.name: StepSnapshot.of(
            step.id,
            overrides.get(step.id, step.field_values_json),
            blocked=step.is_blocked,
        )
        for step in shipment.steps
    }


def _export_date(shipment: Shipment, catalog: WorkflowCatalog) -> str:
    invoice = next((s for s in shipment.steps if s.name == catalog.ftl.export_invoice), None)
    if invoice is None:
        return ""
    return get_string(parse_values(invoice.field_values_json).get("invoice_date"))


def _shipment_record(shipment: Shipment, catalog: WorkflowCatalog) -> ShipmentRecord:
    return ShipmentRecord(
        id=shipment.id,
        code=shipment.shipment_code or "",
        overall_status=shipment.overall_status or "",
        weight_kg=float(shipment.weight_kg or 0),
        packages_count=float(shipment.packages_count or 0),
        cargo_description=shipment.cargo_description or "",
        client_number=shipment.client_number or "",
        job_ids=shipment.job_ids or "",
        export_date=_export_date(shipment, catalog),
        steps=tuple(
            StepRecord(
                id=step.id,
                name=step.name,
                status=step.status or StepStatus.PENDING.value,
                values=parse_values(step.field_values_json),
                updated_at=step.updated_at.isoformat() if step.updated_at else "",
            )
            for step in shipment.steps
        ),
    )


def _all_shipment_records(catalog: WorkflowCatalog) -> list[ShipmentRecord]:
    shipments = Shipment.query.order_by(Shipment.id).all()
    return [_shipment_record(s, catalog) for s in shipments]


# ──────────────────────────────────────────────────────────────────────────────
# Status derivation
# ──────────────────────────────────────────────────────────────────────────────

def _schema_status(step: ShipmentStep, values: dict, doc_types) -> StepStatus:
    """Status of a step its service rules do not cover, from its own schema."""
    if step.is_blocked:
        return StepStatus.BLOCKED
    schema = parse_schema(step.field_schema_json)
    if schema.is_empty:
        return status_by_done_and_touched(False, has_any_value(values))
    context = make_context(step.id, values, doc_types)
    touched = has_any_answer(schema, context)
    return status_by_done_and_touched(touched and is_step_complete(schema, context), touched)


def _container_numbers(shipment: Shipment, snapshots: dict, catalog: WorkflowCatalog) -> list[str]:
    """Containers listed on Shipment creation, else the shipment's own container number."""
    creation = snapshots.get(catalog.fcl.shipment_creation)
    numbers = extract_container_numbers(creation.values if creation else {})
    return numbers or normalize_container_numbers([shipment.container_number])


def _derive(shipment: Shipment, catalog: WorkflowCatalog, overrides: dict | None = None):
    """Statuses for every stored step, plus the service's derived result.

    Returns:
        Tuple of ({step id: StepStatus}, StatusResult / FclStatusResult /
        TransferStatusResult, or None for unknown service types).
    """
    overrides = overrides or {}
    doc_types = _received_doc_types(shipment)
    service_type = _service_type(shipment)
    result = None
    if service_type is not None:
        snapshots = _snapshots(shipment, overrides)
        if service_type == ServiceType.FTL_EXPORT:
            result = compute_statuses(
                snapshots,
                doc_types=doc_types,
                route_id=_route_for(shipment, catalog),
                catalog=catalog,
            )
        elif service_type == ServiceType.FCL_IMPORT:
            result = compute_fcl_statuses(
                snapshots,
                container_numbers=_container_numbers(shipment, snapshots, catalog),
                doc_types=doc_types,
                catalog=catalog,
            )
        else:
            result = compute_transfer_statuses(snapshots, doc_types=doc_types, catalog=catalog)

    by_step: dict[int, StepStatus] = {}
    for step in shipment.steps:
        if result is not None and step.name in result.statuses:
            by_step[step.id] = result.statuses[step.name]
            continue
        values = parse_values(overrides.get(step.id, step.field_values_json))
        by_step[step.id] = _schema_status(step, values, doc_types)
    return by_step, result


def _write_status(step: ShipmentStep, status: StepStatus) -> bool:
    """Store *status* with started/completed bookkeeping; True when it changed."""
    if step.status == status.value:
        return False
    now = _utcnow()
    if status in (StepStatus.IN_PROGRESS, StepStatus.DONE) and step.started_at is None:
        step.started_at = now
    if status == StepStatus.DONE:
        step.completed_at = now
    else:
        step.completed_at = None
    logger.info(
        "Step status %s -> %s",
        step.status,
        status.value,
        extra={"shipment_id": step.shipment_id, "step_id": step.id,
               "step_name": step.name, "status": status.value},
    )
    step.status = status.value
    return True


def _apply_statuses(shipment: Shipment, by_step: dict) -> int:
    changed = 0
    for step in shipment.steps:
        status = by_step.get(step.id)
        if status is not None and _write_status(step, status):
            changed += 1
    overall = compute_overall_status(s.status for s in shipment.steps)
    if shipment.overall_status != overall.value:
        logger.info(
            "Shipment overall status %s -> %s",
            shipment.overall_status,
            overall.value,
            extra={"shipment_id": shipment.id, "status": overall.value},
        )
        shipment.overall_status = overall.value
    shipment.last_update_at = _utcnow()
    return changed


# ──────────────────────────────────────────────────────────────────────────────
# Save rules
# ──────────────────────────────────────────────────────────────────────────────

def _reject(message: str, code: str, shipment_id: int, step: ShipmentStep, **details):
    logger.warning(
        "Step save rejected: %s",
        message,
        extra={"shipment_id": shipment_id, "step_id": step.id,
               "step_name": step.name, "event_type": code},
    )
    raise ValidationError(message, details={"code": code, **details})


def _invoice_values(shipment: Shipment, step: ShipmentStep, merged: dict, catalog) -> dict:
    if step.name == catalog.ftl.export_invoice:
        return merged
    invoice = next((s for s in shipment.steps if s.name == catalog.ftl.export_invoice), None)
    return parse_values(invoice.field_values_json) if invoice else {}


def _ensure_invoice_number_unique(shipment: Shipment, invoice_number: str, catalog) -> None:
    wanted = invoice_number.strip().lower()
    if not wanted:
        return
    others = (
        ShipmentStep.query
        .filter(ShipmentStep.name == catalog.ftl.export_invoice)
        .filter(ShipmentStep.shipment_id != shipment.id)
        .all()
    )
    for other in others:
        existing = get_string(parse_values(other.field_values_json).get("invoice_number"))
        if existing.lower() == wanted:
            raise ConflictError(resource="Export invoice", field="invoice_number", value=invoice_number)


def _import_row_has_data(row) -> bool:
    return bool(
        row.source_shipment_id
        or row.import_shipment_reference
        or row.import_boe_number
        or row.allocated_quantity > 0
        or row.allocated_weight > 0
        or row.remarks
    )


def _flag(value: bool) -> str:
    return "1" if value else ""


def _normalize_import_rows(shipment: Shipment, step: ShipmentStep, merged: dict, catalog) -> dict:
    """Rewrite allocation rows from the import candidates they point at.

    Only the allocated amounts and remarks are taken from the submitted row;
    everything describing the import comes from the candidate itself.
    """
    candidates = allocation_ledger.import_candidates(
        _all_shipment_records(catalog),
        current_shipment_id=shipment.id,
        catalog=catalog,
    )
    by_id = {c.shipment_id: c for c in candidates}

    rows = []
    for row in parse_import_rows(merged):
        if not _import_row_has_data(row):
            continue
        candidate = by_id.get(row.source_shipment_id)
        if candidate is None:
            _reject(
                f"Import row {row.number} does not reference an available import shipment",
                "import_reference_invalid",
                shipment.id,
                step,
                row=row.number,
            )
        rows.append({
            "source_shipment_id": str(candidate.shipment_id),
            "import_shipment_reference": candidate.shipment_code,
            "client_number": candidate.client_number,
            "import_boe_number": candidate.snapshot.boe_number,
            "processed_available": _flag(candidate.snapshot.processed_available),
            "non_physical_stock": _flag(candidate.snapshot.non_physical_stock),
            "imported_weight": candidate.stock.imported_weight,
            "imported_quantity": candidate.stock.imported_quantity,
            "already_allocated_weight": candidate.stock.allocated_weight,
            "already_allocated_quantity": candidate.stock.allocated_quantity,
            "package_type": candidate.snapshot.package_type,
            "cargo_description": candidate.snapshot.cargo_description,
            "allocated_weight": row.allocated_weight,
            "allocated_quantity": row.allocated_quantity,
            "remarks": row.remarks,
        })
    return {**to_record(merged), IMPORT_GROUP: rows}


def _check_save_rules(shipment: Shipment, step: ShipmentStep, merged: dict, catalog) -> dict:
    """Run the FTL export save rules; returns the (possibly normalized) values."""
    ftl = catalog.ftl
    invoice = _invoice_values(shipment, step, merged, catalog)

    if step.name == ftl.trucks_details and is_truthy(invoice.get("invoice_finalized")):
        _reject("Truck details are locked once the export invoice is finalized",
                "truck_locked", shipment.id, step)

    if step.name == ftl.trucks_details:
        unbooked = find_booking_without_date(parse_truck_rows(merged))
        if unbooked is not None:
            _reject(f"Truck {unbooked.number} is booked without a booking date",
                    "truck_booking_required", shipment.id, step, truck=unbooked.number)

    if step.name == ftl.loading_details:
        doc_types = _received_doc_types(shipment)
        incomplete = find_incomplete_loaded_row(
            parse_loading_rows(merged),
            lambda path: step_field_doc_type(step.id, path) in doc_types,
        )
        if incomplete is not None:
            _reject(f"Truck {incomplete.number} is marked loaded but its loading details are incomplete",
                    "loading_required", shipment.id, step, truck=incomplete.number)

    if step.name == ftl.export_invoice:
        invoice_number = get_string(merged.get("invoice_number"))
        if invoice_number:
            try:
                _ensure_invoice_number_unique(shipment, invoice_number, catalog)
            except ConflictError:
                logger.warning(
                    "Step save rejected: duplicate invoice number %s",
                    invoice_number,
                    extra={"shipment_id": shipment.id, "step_id": step.id,
                           "event_type": "invoice_duplicate"},
                )
                raise

    if step.name == ftl.import_selection:
        merged = _normalize_import_rows(shipment, step, merged, catalog)
    return merged


def _check_derived_rules(shipment: Shipment, step: ShipmentStep, merged: dict, result, catalog) -> None:
    ftl = catalog.ftl
    if catalog.is_tracking_step(step.name) and not result.tracking_unlocked:
        _reject("Tracking opens once loading, export invoice and customs agents are done",
                "tracking_locked", shipment.id, step)
    if (
        step.name == ftl.export_invoice
        and is_truthy(merged.get("invoice_finalized"))
        and not result.can_finalize_invoice
    ):
        _reject("The export invoice cannot be finalized yet",
                "invoice_prereq", shipment.id, step)


# ──────────────────────────────────────────────────────────────────────────────
# Public API
# ──────────────────────────────────────────────────────────────────────────────

def update_step_fields(shipment_id: int, step_id: int, items, notes: str | None = None) -> dict:
    """Merge a submitted form into a step, validate, persist and recompute.

    Args:
        shipment_id: PK of the Shipment.
        step_id: PK of the ShipmentStep being saved.
        items: Submitted ``(key, value)`` pairs or a MultiDict carrying
            ``field:<path>`` and ``field-remove:<path>`` keys.
        notes: Optional step notes; blank text clears them.

    Returns:
        Dict with the saved step, every step status and the shipment's
        overall status.

    Raises:
        NotFoundError: Unknown shipment or step.
        ValidationError: A workflow rule rejected the save.
        ConflictError: The invoice number is used by another shipment.
    """
    started = time.perf_counter()
    catalog = _catalog()
    shipment = _get_shipment(shipment_id)
    step = _get_step(step_id, shipment_id)

    if not isinstance(items, (list, tuple)) and not hasattr(items, "items"):
        items = list(items)
    merged = apply_updates(parse_values(step.field_values_json), extract_updates(items))
    merged = apply_removals(merged, extract_removals(items))

    try:
        ftl_export = _is_ftl_export(shipment)
        if ftl_export:
            merged = _check_save_rules(shipment, step, merged, catalog)
        by_step, result = _derive(shipment, catalog, overrides={step.id: merged})
        if ftl_export:
            _check_derived_rules(shipment, step, merged, result, catalog)

        step.field_values_json = serialize_values(merged)
        if notes is not None:
            step.notes = notes.strip() or None
        changed = _apply_statuses(shipment, by_step)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Step saved (%d status changes)",
        changed,
        extra={"shipment_id": shipment.id, "step_id": step.id, "step_name": step.name,
               "status": step.status,
               "duration_ms": (time.perf_counter() - started) * 1000},
    )
    return {
        "step": step.to_dict(),
        "values": parse_values(step.field_values_json),
        "statuses": {s.name: s.status for s in shipment.steps},
        "overall_status": shipment.overall_status,
        "derived": result.to_dict() if result is not None else None,
    }


def attach_step_document(shipment_id: int, step_id: int, path, file_name: str) -> dict:
    """Record a received file for one file field of a step, then recompute."""
    catalog = _catalog()
    shipment = _get_shipment(shipment_id)
    step = _get_step(step_id, shipment_id)
    field_path = FieldPath.coerce(path)
    if not len(field_path):
        raise ValidationError("A document must be attached to a field path",
                              details={"code": "invalid_path"})

    document = ShipmentDocument(
        document_type=step_field_doc_type(step.id, field_path),
        file_name=file_name or "",
        is_received=True,
    )
    try:
        shipment.documents.append(document)
        by_step, _result = _derive(shipment, catalog)
        _apply_statuses(shipment, by_step)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Step document attached: %s",
        document.document_type,
        extra={"shipment_id": shipment.id, "step_id": step.id, "event_type": "document_attached"},
    )
    return document.to_dict()


def compute_shipment_statuses(shipment_id: int) -> dict:
    """Derived statuses for a shipment without writing anything."""
    catalog = _catalog()
    shipment = _get_shipment(shipment_id)
    by_step, result = _derive(shipment, catalog)
    statuses = {step.name: by_step[step.id].value for step in shipment.steps}
    payload = result.to_dict() if result is not None else {"statuses": {}}
    payload["statuses"] = {**payload["statuses"], **statuses}
    payload["overall_status"] = compute_overall_status(statuses).value
    return payload


def recompute_shipment_statuses(shipment_id: int) -> dict:
    """Re-derive and store every step status of a shipment.

    Returns:
        Dict with the number of changed steps and the overall status.
    """
    catalog = _catalog()
    shipment = _get_shipment(shipment_id)
    try:
        by_step, _result = _derive(shipment, catalog)
        changed = _apply_statuses(shipment, by_step)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return {"changed": changed, "overall_status": shipment.overall_status}


def list_import_candidates(shipment_id: int) -> list[dict]:
    """Import shipments the export *shipment_id* may allocate from, newest first."""
    catalog = _catalog()
    _get_shipment(shipment_id)
    candidates = allocation_ledger.import_candidates(
        _all_shipment_records(catalog),
        current_shipment_id=shipment_id,
        catalog=catalog,
    )
    return [c.to_dict() for c in candidates]


def remaining_stock(import_shipment_id: int) -> dict:
    """Remaining stock of one import shipment across every export allocation.

    Raises:
        NotFoundError: The shipment does not exist or is not an import.
    """
    catalog = _catalog()
    _get_shipment(import_shipment_id)
    stock = allocation_ledger.remaining_stock(
        _all_shipment_records(catalog), import_shipment_id, catalog=catalog,
    )
    if stock is None:
        raise NotFoundError(resource="Import shipment", resource_id=import_shipment_id)
    return stock.to_dict()


def step_missing_fields(step_id: int) -> list[dict]:
    """Required fields of a step that still need an answer."""
    step = _get_step(step_id)
    schema = parse_schema(step.field_schema_json)
    context = make_context(
        step.id,
        parse_values(step.field_values_json),
        _received_doc_types(step.shipment),
    )
    return describe_missing(schema, context)


def save_step_schema(step_id: int, schema) -> dict:
    """Validate and store a step's field schema, then recompute its shipment.

    Args:
        step_id: PK of the ShipmentStep.
        schema: Schema as a dict, JSON text or parsed ``StepFieldSchema``.

    Raises:
        ValidationError: ``schema_invalid`` with ``details["problems"]``.
    """
    step = _get_step(step_id)
    raw = schema
    if isinstance(schema, (str, bytes)):
        try:
            raw = json.loads(schema)
        except ValueError:
            raise ValidationError("Schema is not valid JSON", details={"code": "schema_invalid"}) from None
    if not isinstance(raw, dict) and not hasattr(raw, "fields"):
        raise ValidationError("Schema must be an object", details={"code": "schema_invalid"})

    problems = validate_schema(raw)
    if problems:
        logger.warning(
            "Schema rejected: %s",
            "; ".join(problems),
            extra={"step_id": step.id, "event_type": "schema_invalid"},
        )
        raise ValidationError(
            "Schema has problems",
            details={"code": "schema_invalid", "problems": problems},
        )

    try:
        step.field_schema_json = serialize_schema(parse_schema(raw))
        shipment = step.shipment
        by_step, _result = _derive(shipment, _catalog())
        _apply_statuses(shipment, by_step)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Step schema saved", extra={"shipment_id": step.shipment_id, "step_id": step.id})
    return step.to_dict()


def set_step_blocked(step_id: int, blocked: bool) -> dict:
    """Flag a step as blocked (or clear the flag) and recompute its shipment."""
    step = _get_step(step_id)
    try:
        step.is_blocked = bool(blocked)
        shipment = step.shipment
        by_step, _result = _derive(shipment, _catalog())
        _apply_statuses(shipment, by_step)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(
        "Step %s",
        "blocked" if blocked else "unblocked",
        extra={"shipment_id": step.shipment_id, "step_id": step.id, "status": step.status},
    )
    return step.to_dict()
