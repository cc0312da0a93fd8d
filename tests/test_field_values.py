"""
Step field value tree: storage boundary, form merging, doc-type tokens.
"""

import json

import pytest
from werkzeug.datastructures import MultiDict

from app.services.field_paths import FieldPath
from app.services.field_schema import parse_schema
from app.services.field_values import (
    FieldUpdate,
    apply_removals,
    apply_updates,
    collect_flat_values,
    extract_removals,
    extract_updates,
    parse_step_field_doc_type,
    parse_values,
    serialize_values,
    step_field_doc_type,
)


class TestStorageBoundary:
    @pytest.mark.parametrize("text", ["", None, "{bad", "[1]", '"text"', 5])
    def test_unreadable_values_are_empty(self, text):
        assert parse_values(text) == {}

    def test_parse_object(self):
        assert parse_values('{"a": {"b": ["1"]}}') == {"a": {"b": ["1"]}}
        assert parse_values(b'{"a": "1"}') == {"a": "1"}

    def test_serialize_writes_text_leaves(self):
        stored = json.loads(serialize_values({
            "flag": True,
            "off": False,
            "weight": 12.0,
            "qty": 2.5,
            "count": 3,
            "none": None,
            "rows": [{"n": 1}],
        }))
        assert stored == {
            "flag": "1",
            "off": "",
            "weight": "12",
            "qty": "2.5",
            "count": "3",
            "none": "",
            "rows": [{"n": "1"}],
        }

    def test_serialize_non_dict_is_empty_object(self):
        assert serialize_values(["x"]) == "{}"


class TestMerging:
    def test_apply_updates_does_not_mutate_input(self):
        original = {"trucks": [{"truck_number": "A"}]}
        merged = apply_updates(original, [
            FieldUpdate(FieldPath.of("trucks", 0, "truck_number"), "B"),
            (FieldPath.of("trucks", 1, "truck_number"), "C"),
        ])
        assert original == {"trucks": [{"truck_number": "A"}]}
        assert merged == {"trucks": [{"truck_number": "B"}, {"truck_number": "C"}]}

    def test_later_update_wins(self):
        merged = apply_updates({}, [
            FieldUpdate(FieldPath.of("a"), "1"),
            FieldUpdate(FieldPath.of("a"), "2"),
        ])
        assert merged == {"a": "2"}

    def test_apply_removals(self):
        original = {"trucks": [{"n": "1"}, {"n": "2"}], "x": "1"}
        merged = apply_removals(original, [FieldPath.of("trucks", 0), FieldPath.of("x")])
        assert merged == {"trucks": [{"n": "2"}]}
        assert original["x"] == "1"

    def test_malformed_updates_are_skipped(self):
        merged = apply_updates({"a": "0"}, [
            None,
            ("a",),
            5,
            ("a", "1", "x"),
            (7, "v"),
            (None, "v"),
            "ab",
            (FieldPath.of("b"), "2"),
        ])
        assert merged == {"a": "0", "b": "2"}

    def test_malformed_removals_are_skipped(self):
        merged = apply_removals({"a": "1", "b": "2"}, [None, 5, FieldPath.of("a")])
        assert merged == {"b": "2"}

    def test_update_past_group_bound_is_ignored(self):
        merged = apply_updates({}, [("trucks.2000000.truck_number", "T1")])
        assert merged == {}

    def test_extract_from_pairs(self):
        items = [
            ("field:trucks.0.truck_number", "  DXB-1 "),
            ("field-remove:trucks.2", "1"),
            ("notes", "ignored"),
            ("field:upload", None),
        ]
        updates = extract_updates(items)
        assert updates == [FieldUpdate(FieldPath.of("trucks", "0", "truck_number"), "DXB-1")]
        assert extract_removals(items) == [FieldPath.of("trucks", "2")]

    def test_extract_from_multidict_keeps_repeated_keys(self):
        form = MultiDict([("field:a", "1"), ("field:a", "2"), ("field-remove:b", "")])
        assert [u.value for u in extract_updates(form)] == ["1", "2"]
        assert extract_removals(form) == [FieldPath.of("b")]

    def test_extract_from_plain_dict(self):
        assert extract_updates({"field:a": "1"}) == [FieldUpdate(FieldPath.of("a"), "1")]


class TestDocTypes:
    def test_token_format(self):
        assert step_field_doc_type(12, FieldPath.of("trucks", 0, "loading_photo")) == (
            "STEP_FIELD:12:trucks.0.loading_photo"
        )
        assert step_field_doc_type(3, "invoice_upload") == "STEP_FIELD:3:invoice_upload"

    def test_parse_token(self):
        assert parse_step_field_doc_type("STEP_FIELD:12:trucks.0.loading_photo") == (
            12, "trucks.0.loading_photo",
        )

    @pytest.mark.parametrize("token", ["INVOICE", "STEP_FIELD:abc:x", "STEP_FIELD:12", None])
    def test_foreign_tokens(self, token):
        assert parse_step_field_doc_type(token) is None


class TestCollectFlatValues:
    def test_flattens_groups_and_choice_branches(self):
        schema = parse_schema({"fields": [
            {"id": "ref", "label": "Reference", "type": "text"},
            {"id": "urgent", "label": "Urgent", "type": "boolean"},
            {"id": "late", "label": "Late", "type": "boolean"},
            {"id": "photo", "label": "Photo", "type": "file"},
            {"id": "trucks", "label": "Trucks", "type": "group", "repeatable": True, "fields": [
                {"id": "n", "label": "Truck number", "type": "text"},
            ]},
            {"id": "mode", "label": "Mode", "type": "choice", "options": [
                {"id": "zaxon", "label": "Zaxon", "fields": [
                    {"id": "agent", "label": "Agent", "type": "text"},
                ]},
            ]},
        ]})
        values = {
            "ref": "R-1",
            "urgent": "yes",
            "late": "no",
            "photo": "ignored",
            "trucks": [{"n": "A"}, {"n": "B"}],
            "mode": {"zaxon": {"agent": "Ali"}},
        }
        assert collect_flat_values(schema, values) == {
            "Reference": "R-1",
            "Urgent": "yes",
            "Truck number": "B",
            "Agent": "Ali",
        }
