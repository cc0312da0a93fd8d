"""
Shipment workflow service: persisted saves, save rules, recomputation.
"""

import json

import pytest

from app.core.exceptions import ConflictError, NotFoundError, ValidationError
from app.models import db
from app.models.shipment import Shipment, ShipmentStep
from app.services import shipment_workflow_service as svc
from app.services.workflow_catalog import default_catalog

FTL = default_catalog().ftl
FCL = default_catalog().fcl

_code_seq = [0]


# ── Helpers ──────────────────────────────────────────────────────────────


def _make_shipment(service_type="FTL_EXPORT", steps=(), **kw):
    """Create a shipment with steps given as (name, values) or (name, values, schema)."""
    _code_seq[0] += 1
    shipment = Shipment(
        shipment_code=kw.pop("shipment_code", f"SHP-{_code_seq[0]:04d}"),
        service_type=service_type,
        origin=kw.pop("origin", "JAFZA, Dubai"),
        destination=kw.pop("destination", "Syria"),
        **kw,
    )
    for order, entry in enumerate(steps):
        name, values = entry[0], entry[1]
        schema = entry[2] if len(entry) > 2 else None
        shipment.steps.append(ShipmentStep(
            name=name,
            sort_order=order,
            field_values_json=json.dumps(values),
            field_schema_json=json.dumps(schema) if schema else "",
        ))
    db.session.add(shipment)
    db.session.commit()
    return shipment


def _step(shipment, name):
    return next(s for s in shipment.steps if s.name == name)


def _fcl_import(code="IMP-1", qty="100", weight="1000", boe="BOE-1"):
    shipment = _make_shipment("FCL_IMPORT", steps=[
        (FCL.bill_of_entry, {"boe_number": boe}),
        (FCL.container_delivery, {"containers": [{
            "container_number": "C1", "total_weight_kg": weight, "total_packages": qty,
        }]}),
    ], shipment_code=code)
    _step(shipment, FCL.bill_of_entry).status = "DONE"
    db.session.commit()
    return shipment


def _loaded_row_items(index=0):
    prefix = f"field:trucks.{index}."
    return [
        (prefix + "truck_loaded", "1"),
        (prefix + "loading_origin", "ZAXON_WAREHOUSE"),
        (prefix + "zaxon_actual_loading_date", "2024-05-01"),
        (prefix + "cargo_weight", "1200"),
        (prefix + "cargo_quantity", "10"),
        (prefix + "cargo_unit_type", "Pallets"),
    ]


# ═══════════════════════════════════════════════════════════════
#  Saving & recomputation
# ═══════════════════════════════════════════════════════════════


class TestUpdateStepFields:
    def test_save_persists_and_recomputes(self):
        shipment = _make_shipment(steps=[(FTL.plan_overview, {}), (FTL.trucks_details, {})])
        plan = _step(shipment, FTL.plan_overview)

        out = svc.update_step_fields(shipment.id, plan.id, [
            ("field:order_received", "1"),
            ("field:order_received_date", " 2024-05-01 "),
        ], notes="  first call ")

        assert out["values"] == {"order_received": "1", "order_received_date": "2024-05-01"}
        assert out["statuses"][FTL.plan_overview] == "DONE"
        assert out["statuses"][FTL.trucks_details] == "PENDING"
        assert out["overall_status"] == "IN_PROGRESS"
        assert out["derived"]["route_id"] == "JAFZA_TO_SYRIA"

        stored = db.session.get(ShipmentStep, plan.id)
        assert stored.status == "DONE"
        assert stored.notes == "first call"
        assert stored.started_at is not None
        assert stored.completed_at is not None

    def test_removal_reopens_step(self):
        shipment = _make_shipment(steps=[(FTL.plan_overview, {})])
        plan = _step(shipment, FTL.plan_overview)
        svc.update_step_fields(shipment.id, plan.id, [
            ("field:order_received", "1"), ("field:order_received_date", "2024-05-01"),
        ])
        assert db.session.get(Shipment, shipment.id).overall_status == "COMPLETED"

        out = svc.update_step_fields(shipment.id, plan.id, [("field-remove:order_received", "")])
        stored = db.session.get(ShipmentStep, plan.id)
        assert out["values"] == {"order_received_date": "2024-05-01"}
        assert stored.status == "IN_PROGRESS"
        assert stored.started_at is not None
        assert stored.completed_at is None

    def test_submitted_status_is_ignored(self):
        shipment = _make_shipment(steps=[(FTL.plan_overview, {})])
        plan = _step(shipment, FTL.plan_overview)
        out = svc.update_step_fields(shipment.id, plan.id, [("field:status", "DONE")])
        assert out["statuses"][FTL.plan_overview] == "IN_PROGRESS"

    def test_unknown_shipment_or_step(self):
        shipment = _make_shipment(steps=[(FTL.plan_overview, {})])
        other = _make_shipment(steps=[(FTL.plan_overview, {})])
        with pytest.raises(NotFoundError):
            svc.update_step_fields(99999, 1, [])
        with pytest.raises(NotFoundError):
            svc.update_step_fields(shipment.id, _step(other, FTL.plan_overview).id, [])

    def test_loading_done_with_attached_photo(self):
        shipment = _make_shipment(steps=[
            (FTL.trucks_details, {"trucks": [{"truck_number": "T-1"}]}),
            (FTL.loading_details, {}),
        ])
        loading = _step(shipment, FTL.loading_details)
        doc = svc.attach_step_document(shipment.id, loading.id, "trucks.0.loading_photo", "photo.jpg")
        assert doc["document_type"] == f"STEP_FIELD:{loading.id}:trucks.0.loading_photo"

        out = svc.update_step_fields(shipment.id, loading.id, _loaded_row_items())
        assert out["statuses"][FTL.loading_details] == "DONE"
        assert out["derived"]["loading_progress"] == {"expected": 1, "loaded": 1, "complete": 1}

    def test_step_outside_service_rules_uses_its_schema(self):
        schema = {"fields": [{"id": "inspection_ref", "label": "Inspection ref", "type": "text", "required": True}]}
        shipment = _make_shipment("FCL_IMPORT", steps=[
            ("Customs inspection", {}, schema),
            ("Port storage notes", {}),
        ])
        inspection = _step(shipment, "Customs inspection")
        out = svc.update_step_fields(shipment.id, inspection.id, [("field:inspection_ref", "INS-77")])
        assert out["statuses"]["Customs inspection"] == "DONE"
        assert out["derived"]["statuses"][FCL.order_received] == "PENDING"

        notes = _step(shipment, "Port storage notes")
        out = svc.update_step_fields(shipment.id, notes.id, [("field:note", "x")])
        assert out["statuses"]["Port storage notes"] == "IN_PROGRESS"

    def test_unknown_service_type_uses_schemas_only(self):
        shipment = _make_shipment("LCL_IMPORT", steps=[(FCL.order_received, {})])
        step = _step(shipment, FCL.order_received)
        out = svc.update_step_fields(shipment.id, step.id, [("field:order_received", "1")])
        assert out["statuses"][FCL.order_received] == "IN_PROGRESS"
        assert out["derived"] is None


# ═══════════════════════════════════════════════════════════════
#  Save rules
# ═══════════════════════════════════════════════════════════════


class TestSaveRules:
    def _rejected(self, shipment, step, items):
        with pytest.raises(ValidationError) as exc_info:
            svc.update_step_fields(shipment.id, step.id, items)
        return exc_info.value

    def test_trucks_locked_after_invoice_finalized(self):
        shipment = _make_shipment(steps=[
            (FTL.trucks_details, {"trucks": [{"truck_number": "A"}]}),
            (FTL.export_invoice, {"invoice_finalized": "1"}),
        ])
        trucks = _step(shipment, FTL.trucks_details)
        error = self._rejected(shipment, trucks, [("field:trucks.0.truck_number", "B")])
        assert error.code == "truck_locked"

        stored = db.session.get(ShipmentStep, trucks.id)
        assert json.loads(stored.field_values_json) == {"trucks": [{"truck_number": "A"}]}

    def test_booking_needs_date(self):
        shipment = _make_shipment(steps=[(FTL.trucks_details, {})])
        trucks = _step(shipment, FTL.trucks_details)
        error = self._rejected(shipment, trucks, [
            ("field:trucks.0.booking_status", "BOOKED"),
            ("field:trucks.1.truck_booked", "1"),
        ])
        assert error.code == "truck_booking_required"
        assert error.details["truck"] == 1

    def test_loaded_row_must_be_complete(self):
        shipment = _make_shipment(steps=[(FTL.trucks_details, {}), (FTL.loading_details, {})])
        loading = _step(shipment, FTL.loading_details)
        error = self._rejected(shipment, loading, _loaded_row_items())
        assert error.code == "loading_required"
        assert error.details["truck"] == 1
        assert db.session.get(ShipmentStep, loading.id).status == "PENDING"

    def test_tracking_locked(self):
        shipment = _make_shipment(steps=[(FTL.tracking_uae, {})])
        tracking = _step(shipment, FTL.tracking_uae)
        error = self._rejected(shipment, tracking, [("field:sila_exit", "1")])
        assert error.code == "tracking_locked"

    def test_invoice_needs_prerequisites(self):
        shipment = _make_shipment(steps=[(FTL.export_invoice, {})])
        invoice = _step(shipment, FTL.export_invoice)
        error = self._rejected(shipment, invoice, [("field:invoice_finalized", "1")])
        assert error.code == "invoice_prereq"

        out = svc.update_step_fields(shipment.id, invoice.id, [("field:invoice_number", "INV-1")])
        assert out["statuses"][FTL.export_invoice] == "IN_PROGRESS"

    def test_duplicate_invoice_number(self):
        first = _make_shipment(steps=[(FTL.export_invoice, {"invoice_number": "INV-9"})])
        second = _make_shipment(steps=[(FTL.export_invoice, {})])
        invoice = _step(second, FTL.export_invoice)
        with pytest.raises(ConflictError):
            svc.update_step_fields(second.id, invoice.id, [("field:invoice_number", "inv-9")])

        own = _step(first, FTL.export_invoice)
        out = svc.update_step_fields(first.id, own.id, [("field:invoice_number", "INV-9")])
        assert out["values"]["invoice_number"] == "INV-9"

    def test_import_reference_must_be_a_candidate(self):
        shipment = _make_shipment(steps=[(FTL.import_selection, {})])
        step = _step(shipment, FTL.import_selection)
        error = self._rejected(shipment, step, [
            ("field:import_shipments.0.source_shipment_id", "99999"),
            ("field:import_shipments.0.allocated_quantity", "5"),
        ])
        assert error.code == "import_reference_invalid"
        assert error.details["row"] == 1

    def test_import_rows_are_normalized_from_candidate(self):
        importer = _fcl_import(qty="100")
        shipment = _make_shipment(steps=[(FTL.import_selection, {})])
        step = _step(shipment, FTL.import_selection)
        out = svc.update_step_fields(shipment.id, step.id, [
            ("field:import_shipments.0.source_shipment_id", str(importer.id)),
            ("field:import_shipments.0.import_shipment_reference", "TYPED-BY-USER"),
            ("field:import_shipments.0.allocated_quantity", "40"),
            ("field:import_shipments.1.remarks", ""),
        ])
        rows = out["values"]["import_shipments"]
        assert len(rows) == 1
        assert rows[0]["import_shipment_reference"] == "IMP-1"
        assert rows[0]["import_boe_number"] == "BOE-1"
        assert rows[0]["processed_available"] == "1"
        assert rows[0]["imported_quantity"] == "100"
        assert rows[0]["allocated_quantity"] == "40"
        assert out["statuses"][FTL.import_selection] == "DONE"


# ═══════════════════════════════════════════════════════════════
#  Documents, schemas, blocking
# ═══════════════════════════════════════════════════════════════


class TestDocumentsAndSchemas:
    def test_attach_requires_path(self):
        shipment = _make_shipment(steps=[(FTL.export_invoice, {})])
        invoice = _step(shipment, FTL.export_invoice)
        with pytest.raises(ValidationError) as exc_info:
            svc.attach_step_document(shipment.id, invoice.id, "", "x.pdf")
        assert exc_info.value.code == "invalid_path"

    def test_attach_marks_step_touched(self):
        shipment = _make_shipment(steps=[(FTL.export_invoice, {})])
        invoice = _step(shipment, FTL.export_invoice)
        svc.attach_step_document(shipment.id, invoice.id, ("invoice_upload",), "inv.pdf")
        assert db.session.get(ShipmentStep, invoice.id).status == "IN_PROGRESS"

    def test_invalid_schema_is_rejected(self):
        shipment = _make_shipment("FCL_IMPORT", steps=[(FCL.bill_of_entry, {})])
        step = _step(shipment, FCL.bill_of_entry)
        schema = {"fields": [{"id": "mode", "type": "choice", "options": [
            {"id": "a", "label": "A", "is_final": True},
            {"id": "b", "label": "B", "is_final": True},
        ]}]}
        with pytest.raises(ValidationError) as exc_info:
            svc.save_step_schema(step.id, schema)
        assert exc_info.value.code == "schema_invalid"
        assert exc_info.value.details["problems"]

        with pytest.raises(ValidationError):
            svc.save_step_schema(step.id, "{not json")
        assert db.session.get(ShipmentStep, step.id).field_schema_json == ""

    def test_saved_schema_recomputes_status(self):
        shipment = _make_shipment("FCL_IMPORT", steps=[("Customs inspection", {"inspection_ref": "I-1"})])
        step = _step(shipment, "Customs inspection")
        schema = {"fields": [
            {"id": "inspection_ref", "label": "Inspection ref", "type": "text", "required": True},
            {"id": "inspection_date", "label": "Inspection date", "type": "date", "required": True},
        ]}
        saved = svc.save_step_schema(step.id, json.dumps(schema))
        assert saved["status"] == "IN_PROGRESS"
        assert svc.step_missing_fields(step.id) == [{"path": "inspection_date", "label": "Inspection date"}]

    def test_blocked_step_delays_shipment(self):
        shipment = _make_shipment(steps=[(FTL.plan_overview, {}), (FTL.trucks_details, {})])
        trucks = _step(shipment, FTL.trucks_details)
        out = svc.set_step_blocked(trucks.id, True)
        assert out["status"] == "BLOCKED"
        assert db.session.get(Shipment, shipment.id).overall_status == "DELAYED"

        out = svc.set_step_blocked(trucks.id, False)
        assert out["status"] == "PENDING"
        assert db.session.get(Shipment, shipment.id).overall_status == "CREATED"


# ═══════════════════════════════════════════════════════════════
#  Import workflows
# ═══════════════════════════════════════════════════════════════


class TestImportWorkflows:
    def _fcl_through_delivery_order(self):
        shipment = _make_shipment("FCL_IMPORT", steps=[
            (FCL.shipment_creation, {"containers": [{"container_number": "MSKU1234567"}]}),
            (FCL.order_received, {"order_received": "1"}),
            (FCL.bill_of_lading, {"bl_type": {"original": {
                "original_received": "1", "original_submitted": "1", "original_submitted_date": "2024-05-01",
            }}}),
            (FCL.commercial_invoice, {"invoice_option": "ORIGINAL"}),
            (FCL.delivery_order, {"delivery_order_obtained": "1", "delivery_order_date": "2024-05-02"}),
            (FCL.bill_of_entry, {"boe_number": "BOE-9", "boe_date": "2024-05-03"}),
        ], shipment_code="IMP-9")
        svc.attach_step_document(
            shipment.id, _step(shipment, FCL.delivery_order).id, ("delivery_order_file",), "do.pdf",
        )
        return shipment

    def test_fcl_bill_of_entry_needs_its_document(self):
        importer = self._fcl_through_delivery_order()
        exporter = _make_shipment(steps=[(FTL.import_selection, {})])
        boe = _step(importer, FCL.bill_of_entry)
        assert db.session.get(ShipmentStep, boe.id).status == "IN_PROGRESS"
        assert _step(importer, FCL.shipment_creation).status == "DONE"
        assert _step(importer, FCL.delivery_order).status == "DONE"
        candidate = svc.list_import_candidates(exporter.id)[0]
        assert candidate["processed_available"] is False

        svc.attach_step_document(importer.id, boe.id, ("boe_file",), "boe.pdf")
        assert db.session.get(ShipmentStep, boe.id).status == "DONE"
        candidate = svc.list_import_candidates(exporter.id)[0]
        assert candidate["processed_available"] is True
        assert candidate["import_boe_number"] == "BOE-9"

    def test_fcl_containers_fall_back_to_shipment_container(self):
        shipment = _make_shipment("FCL_IMPORT", container_number="TGHU7654321", steps=[
            (FCL.order_received, {"order_received": "1"}),
            (FCL.container_delivery, {"containers": [{
                "container_number": "TGHU7654321", "delivered_offloaded": "1",
            }]}),
        ])
        payload = svc.compute_shipment_statuses(shipment.id)
        assert payload["container_numbers"] == ["TGHU7654321"]
        assert payload["statuses"][FCL.container_delivery] == "DONE"

    def test_transfer_documents_need_uploads(self):
        transfer = default_catalog().transfer
        shipment = _make_shipment("IMPORT_TRANSFER_OWNERSHIP", steps=[
            (transfer.parties_cargo, {"quantity": "20", "total_weight": "500"}),
            (transfer.documents_boe, {"boe_prepared_by": "ZAXON", "boe_number": "B-6", "boe_date": "2024-05-01"}),
        ])
        docs = _step(shipment, transfer.documents_boe)
        out = svc.update_step_fields(shipment.id, docs.id, [("field:boe_number", "B-7")])
        assert out["statuses"][transfer.documents_boe] == "IN_PROGRESS"
        assert out["derived"]["stock_type"] == "PENDING"

        for field_id in ("transfer_ownership_letter", "delivery_advice", "commercial_invoice", "boe_upload"):
            svc.attach_step_document(shipment.id, docs.id, (field_id,), f"{field_id}.pdf")
        assert db.session.get(ShipmentStep, docs.id).status == "DONE"
        assert svc.compute_shipment_statuses(shipment.id)["stock_type"] == "OWNERSHIP_STOCK"


# ═══════════════════════════════════════════════════════════════
#  Read-side queries & CLI
# ═══════════════════════════════════════════════════════════════


class TestQueries:
    def test_compute_does_not_write(self):
        shipment = _make_shipment(steps=[
            (FTL.plan_overview, {"order_received": "1", "order_received_date": "2024-05-01"}),
        ])
        payload = svc.compute_shipment_statuses(shipment.id)
        assert payload["statuses"][FTL.plan_overview] == "DONE"
        assert payload["overall_status"] == "COMPLETED"
        assert _step(db.session.get(Shipment, shipment.id), FTL.plan_overview).status == "PENDING"

    def test_route_from_shipment(self):
        shipment = _make_shipment(destination="KSA", steps=[(FTL.tracking_jordan, {})])
        payload = svc.compute_shipment_statuses(shipment.id)
        assert payload["route_id"] == "JAFZA_TO_KSA"
        assert payload["statuses"][FTL.tracking_jordan] == "DONE"

    def test_recompute_writes(self):
        shipment = _make_shipment(steps=[
            (FTL.plan_overview, {"order_received": "1", "order_received_date": "2024-05-01"}),
        ])
        assert svc.recompute_shipment_statuses(shipment.id) == {"changed": 1, "overall_status": "COMPLETED"}
        assert svc.recompute_shipment_statuses(shipment.id)["changed"] == 0

    def test_remaining_stock_and_candidates(self):
        importer = _fcl_import(qty="100")
        _make_shipment(steps=[(FTL.import_selection, {"import_shipments": [
            {"source_shipment_id": str(importer.id), "allocated_quantity": "40"},
        ]})])
        current = _make_shipment(steps=[(FTL.import_selection, {"import_shipments": [
            {"source_shipment_id": str(importer.id), "allocated_quantity": "30"},
        ]})])

        stock = svc.remaining_stock(importer.id)
        assert stock["remaining_quantity"] == 30.0
        assert len(stock["history"]) == 2

        candidates = svc.list_import_candidates(current.id)
        assert [c["shipment_id"] for c in candidates] == [importer.id]
        assert candidates[0]["allocated_quantity"] == 40.0

    def test_remaining_stock_of_export_is_not_found(self):
        export = _make_shipment(steps=[(FTL.plan_overview, {})])
        with pytest.raises(NotFoundError):
            svc.remaining_stock(export.id)
        with pytest.raises(NotFoundError):
            svc.remaining_stock(99999)


class TestCli:
    def test_recompute_command(self, app):
        shipment = _make_shipment(steps=[(FTL.plan_overview, {"order_received": "1"})])
        result = app.test_cli_runner().invoke(args=["recompute-statuses", str(shipment.id)])
        assert result.exit_code == 0
        assert "overall status IN_PROGRESS" in result.output

    def test_unknown_shipment(self, app):
        result = app.test_cli_runner().invoke(args=["recompute-statuses", "99999"])
        assert result.exit_code != 0
        assert "not found" in result.output
