"""
FTL export row views: trucks, loading and import allocation rows.
"""

import pytest

from app.services.field_paths import FieldPath
from app.services.ftl_export_rows import (
    all_imports_available,
    base_loading_expectation,
    build_import_stock_summary,
    compute_import_warnings,
    count_active_booked,
    evaluate_invoice_truck_details,
    find_booking_without_date,
    find_incomplete_loaded_row,
    parse_import_rows,
    parse_loading_rows,
    parse_truck_rows,
)


def _no_photo(path):
    return False


def _any_photo(path):
    return True


def _zaxon_row(**overrides):
    row = {
        "truck_loaded": "1",
        "loading_origin": "ZAXON_WAREHOUSE",
        "zaxon_actual_loading_date": "2024-05-01",
        "cargo_weight": "1200",
        "cargo_quantity": "10",
        "cargo_unit_type": "Pallets",
    }
    row.update(overrides)
    return row


# ═══════════════════════════════════════════════════════════════
#  Trucks
# ═══════════════════════════════════════════════════════════════


class TestTruckRows:
    def test_parse_and_defaults(self):
        rows = parse_truck_rows({"trucks": [
            {"truck_number": " DXB-1 ", "booking_status": "booked", "booking_date": "2024-05-01"},
            {"booking_status": "weird"},
            "junk",
        ]})
        assert len(rows) == 2
        assert rows[0].truck_number == "DXB-1"
        assert rows[0].is_booked
        assert rows[1].booking_status == "PENDING"
        assert rows[1].label == "Truck 2"

    def test_cancelled_rows_are_inactive(self):
        rows = parse_truck_rows({"trucks": [
            {"booking_status": "BOOKED", "booking_date": "2024-05-01"},
            {"booking_status": "CANCELLED"},
            {},
        ]})
        progress = count_active_booked(rows)
        assert (progress.active, progress.booked) == (2, 1)

    def test_booking_without_date(self):
        rows = parse_truck_rows({"trucks": [
            {"booking_status": "BOOKED", "booking_date": "2024-05-01"},
            {"truck_booked": "1"},
        ]})
        assert find_booking_without_date(rows).number == 2
        assert find_booking_without_date(rows[:1]) is None

    def test_invoice_truck_details(self):
        rows = parse_truck_rows({"trucks": [
            {"truck_number": "A", "driver_name": "D", "driver_contact": "050"},
            {"truck_reference": "TRK-2", "truck_number": "B"},
            {"booking_status": "CANCELLED"},
        ]})
        check = evaluate_invoice_truck_details(rows)
        assert check.complete is False
        assert check.missing_labels == ["TRK-2"]
        assert rows[1].missing_driver_details == ["driver_name", "driver_contact"]

    def test_no_active_trucks_is_vacuously_complete(self):
        assert evaluate_invoice_truck_details([]).complete is True


# ═══════════════════════════════════════════════════════════════
#  Loading
# ═══════════════════════════════════════════════════════════════


class TestLoadingRows:
    def test_zaxon_row_needs_photo(self):
        row = parse_loading_rows({"trucks": [_zaxon_row()]})[0]
        assert row.needs_photo
        assert row.photo_path == FieldPath.of("trucks", 0, "loading_photo")
        assert row.is_complete(_no_photo) is False
        assert row.is_complete(_any_photo) is True

    def test_unselected_origin_never_completes(self):
        row = parse_loading_rows({"trucks": [_zaxon_row(loading_origin="")]})[0]
        assert row.loading_origin == "ZAXON_WAREHOUSE"
        assert row.origin_selected is False
        assert row.is_complete(_any_photo) is False

    def test_external_supplier_row(self):
        values = {"trucks": [{
            "truck_loaded": "yes",
            "loading_origin": "external_supplier",
            "external_loading_date": "2024-05-02",
            "cargo_weight": "900",
            "cargo_quantity": "4",
            "cargo_unit_type": "Other",
            "cargo_unit_type_other": "Drums",
        }]}
        row = parse_loading_rows(values)[0]
        assert not row.needs_photo
        assert row.is_complete(_no_photo) is True

    @pytest.mark.parametrize("overrides", [
        {"zaxon_actual_loading_date": ""},
        {"cargo_weight": "0"},
        {"cargo_quantity": "abc"},
        {"cargo_unit_type": ""},
        {"cargo_unit_type": "other"},
        {"truck_loaded": ""},
    ])
    def test_incomplete_variants(self, overrides):
        row = parse_loading_rows({"trucks": [_zaxon_row(**overrides)]})[0]
        assert row.is_complete(_any_photo) is False

    def test_mixed_row_requires_both_parts(self):
        mixed = {
            "loading_origin": "MIXED",
            "mixed_supplier_loaded": "1",
            "mixed_zaxon_loaded": "1",
            "supplier_name": "Supplier",
            "external_loading_location": "Sharjah",
            "mixed_supplier_loading_date": "2024-05-01",
            "mixed_zaxon_loading_date": "2024-05-02",
            "mixed_supplier_cargo_weight": "100",
            "mixed_supplier_cargo_quantity": "2",
            "mixed_supplier_cargo_unit_type": "Cartons",
            "mixed_zaxon_cargo_weight": "200",
            "mixed_zaxon_cargo_quantity": "3",
            "mixed_zaxon_cargo_unit_type": "Pallets",
        }
        row = parse_loading_rows({"trucks": [mixed]})[0]
        assert row.is_mixed and row.is_started and row.marked_loaded
        assert row.is_complete(_any_photo) is True
        assert row.is_complete(_no_photo) is False

        half = dict(mixed, mixed_zaxon_loaded="")
        row = parse_loading_rows({"trucks": [half]})[0]
        assert row.is_started and not row.marked_loaded
        assert row.is_complete(_any_photo) is False

    def test_find_incomplete_loaded_row(self):
        rows = parse_loading_rows({"trucks": [
            _zaxon_row(),
            {"loading_origin": "ZAXON_WAREHOUSE"},
            _zaxon_row(cargo_weight=""),
        ]})
        assert find_incomplete_loaded_row(rows, _any_photo).number == 3
        assert find_incomplete_loaded_row(rows[:2], _any_photo) is None
        assert find_incomplete_loaded_row(rows[:1], _no_photo).number == 1

    def test_base_loading_expectation(self):
        trucks = parse_truck_rows({"trucks": [{}, {"booking_status": "CANCELLED"}]})
        loading = parse_loading_rows({"trucks": [{}, {}, {}]})
        assert base_loading_expectation(trucks, loading) == 1
        assert base_loading_expectation([], loading) == 3


# ═══════════════════════════════════════════════════════════════
#  Import allocation
# ═══════════════════════════════════════════════════════════════


class TestImportRows:
    def test_parse_and_readiness(self):
        rows = parse_import_rows({"import_shipments": [
            {
                "source_shipment_id": "14",
                "import_shipment_reference": "IMP-14",
                "processed_available": "1",
                "imported_quantity": "100",
                "allocated_quantity": "40",
            },
            {"import_boe_number": "BOE-9", "imported_weight": "500", "allocated_weight": "600"},
            {"source_shipment_id": "x1"},
        ]})
        assert rows[0].source_shipment_id == 14
        assert rows[0].is_ready
        assert not rows[1].is_ready
        assert rows[1].is_over_allocated
        assert rows[1].display_reference == "BOE-9"
        assert rows[2].source_shipment_id == 0
        assert rows[2].display_reference == "Import 3"

    def test_warnings(self):
        rows = parse_import_rows({"import_shipments": [
            {"import_shipment_reference": "A", "processed_available": "1",
             "imported_quantity": "10", "allocated_quantity": "12"},
            {"import_shipment_reference": "B"},
        ]})
        warnings = compute_import_warnings(rows)
        assert warnings.has_warnings
        assert warnings.to_dict() == {"unavailable": ["B"], "over_allocated": ["A"]}

    def test_all_imports_available(self):
        ready = {"import_shipment_reference": "A", "processed_available": "1"}
        assert all_imports_available(parse_import_rows({"import_shipments": [ready]}))
        assert not all_imports_available([])
        assert not all_imports_available(parse_import_rows(
            {"import_shipments": [ready, {"processed_available": "1"}]}
        ))

    def test_stock_summary_is_clamped(self):
        rows = parse_import_rows({"import_shipments": [
            {"import_shipment_reference": "A", "imported_quantity": "10", "allocated_quantity": "12",
             "imported_weight": "100", "allocated_weight": "40"},
        ]})
        summary = build_import_stock_summary(rows)[0]
        assert summary["remaining_quantity"] == 0.0
        assert summary["remaining_weight"] == 60.0
