"""
Step Field Schema — recursive description of a workflow step's fields.

A schema is ``{"version": 1, "fields": [...]}`` where each field is one of:

    base    text / number / date / boolean / file
    group   nested fields; ``repeatable`` groups hold a list of items
    choice  mutually exclusive options, each with its own sub-fields;
            at most one option carries ``is_final``

Parsing is total. Malformed JSON, non-object entries and unknown types
degrade to the nearest valid schema instead of raising; designer-side
problems are reported separately by ``validate_schema()``.

Usage:
    from app.services.field_schema import parse_schema

    schema = parse_schema(step.field_schema_json)
    for field_def in schema.fields:
        ...
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Union

from app.services.field_paths import FieldPath, is_index_segment

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


# ═════════════════════════════════════════════════════════════════════════════
# Types
# ═════════════════════════════════════════════════════════════════════════════

class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    FILE = "file"
    GROUP = "group"
    CHOICE = "choice"


BASE_TYPES = frozenset({
    FieldType.TEXT, FieldType.NUMBER, FieldType.DATE, FieldType.BOOLEAN, FieldType.FILE,
})
TEXT_LIKE_TYPES = frozenset({FieldType.TEXT, FieldType.NUMBER, FieldType.DATE})


@dataclass(frozen=True)
class BaseField:
    id: str
    label: str
    type: FieldType = FieldType.TEXT
    required: bool = False
    link_to_global: str | None = None

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "label": self.label,
            "type": self.type.value,
            "required": self.required,
        }
        if self.link_to_global:
            out["linkToGlobal"] = self.link_to_global
        return out


@dataclass(frozen=True)
class GroupField:
    id: str
    label: str
    fields: tuple = ()
    required: bool = False
    repeatable: bool = False
    type: FieldType = FieldType.GROUP

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type.value,
            "required": self.required,
            "repeatable": self.repeatable,
            "fields": [f.to_dict() for f in self.fields],
        }


@dataclass(frozen=True)
class ChoiceOption:
    id: str
    label: str
    fields: tuple = ()
    is_final: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "is_final": self.is_final,
            "fields": [f.to_dict() for f in self.fields],
        }


@dataclass(frozen=True)
class ChoiceField:
    id: str
    label: str
    options: tuple = ()
    required: bool = False
    type: FieldType = FieldType.CHOICE

    @property
    def final_option(self) -> ChoiceOption | None:
        return next((o for o in self.options if o.is_final), None)

    def option(self, option_id: str) -> ChoiceOption | None:
        return next((o for o in self.options if o.id == option_id), None)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type.value,
            "required": self.required,
            "options": [o.to_dict() for o in self.options],
        }


FieldDefinition = Union[BaseField, GroupField, ChoiceField]


@dataclass(frozen=True)
class StepFieldSchema:
    fields: tuple = ()
    version: int = SCHEMA_VERSION

    @property
    def is_empty(self) -> bool:
        return not self.fields

    def field(self, field_id: str) -> FieldDefinition | None:
        return find_field(self.fields, field_id)

    def to_dict(self) -> dict:
        return {"version": self.version, "fields": [f.to_dict() for f in self.fields]}


EMPTY_SCHEMA = StepFieldSchema()


def find_field(fields, field_id: str) -> FieldDefinition | None:
    return next((f for f in fields if f.id == field_id), None)


# ═════════════════════════════════════════════════════════════════════════════
# Parsing
# ═════════════════════════════════════════════════════════════════════════════

def _text(raw, key: str) -> str:
    value = raw.get(key)
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def _flag(raw, key: str) -> bool:
    return raw.get(key) is True


def _field_type(raw) -> FieldType:
    type_text = raw.get("type")
    try:
        return FieldType(type_text)
    except (ValueError, TypeError):
        logger.debug("Unknown step field type %r, treating as text", type_text)
        return FieldType.TEXT


def _parse_fields(raw_fields) -> tuple:
    if not isinstance(raw_fields, list):
        return ()
    return tuple(parse_field(entry) for entry in raw_fields if isinstance(entry, dict))


def _parse_options(raw_options) -> tuple:
    if not isinstance(raw_options, list):
        return ()
    options = []
    final_seen = False
    for entry in raw_options:
        if not isinstance(entry, dict):
            continue
        is_final = _flag(entry, "is_final")
        if is_final and final_seen:
            logger.debug("Dropping extra is_final flag on choice option %r", entry.get("id"))
            is_final = False
        final_seen = final_seen or is_final
        options.append(ChoiceOption(
            id=_text(entry, "id"),
            label=_text(entry, "label"),
            fields=_parse_fields(entry.get("fields")),
            is_final=is_final,
        ))
    return tuple(options)


def parse_field(raw: dict) -> FieldDefinition:
    """Build one field definition from its decoded JSON object."""
    field_id = _text(raw, "id")
    label = _text(raw, "label") or field_id
    field_type = _field_type(raw)
    required = _flag(raw, "required")

    if field_type == FieldType.GROUP:
        return GroupField(
            id=field_id,
            label=label,
            fields=_parse_fields(raw.get("fields")),
            required=required,
            repeatable=_flag(raw, "repeatable"),
        )
    if field_type == FieldType.CHOICE:
        return ChoiceField(
            id=field_id,
            label=label,
            options=_parse_options(raw.get("options")),
            required=required,
        )
    link = raw.get("linkToGlobal")
    return BaseField(
        id=field_id,
        label=label,
        type=field_type,
        required=required,
        link_to_global=link if isinstance(link, str) and link else None,
    )


def schema_from_dict(raw) -> StepFieldSchema:
    if not isinstance(raw, dict):
        return EMPTY_SCHEMA
    return StepFieldSchema(fields=_parse_fields(raw.get("fields")))


def parse_schema(text) -> StepFieldSchema:
    """Parse a stored schema document; anything unreadable is the empty schema."""
    if isinstance(text, StepFieldSchema):
        return text
    if isinstance(text, dict):
        raw = text
    else:
        if not text or not isinstance(text, (str, bytes)):
            return EMPTY_SCHEMA
        try:
            raw = json.loads(text)
        except (ValueError, TypeError, RecursionError):
            logger.debug("Unreadable step field schema, using empty schema")
            return EMPTY_SCHEMA
    try:
        return schema_from_dict(raw)
    except RecursionError:
        logger.debug("Step field schema nests too deeply, using empty schema")
        return EMPTY_SCHEMA


def serialize_schema(schema: StepFieldSchema) -> str:
    return json.dumps(schema.to_dict())


def schema_from_legacy_fields(labels) -> StepFieldSchema:
    """Old templates stored a flat list of labels; each becomes a required text field."""
    return StepFieldSchema(fields=tuple(
        BaseField(id=label, label=label, type=FieldType.TEXT, required=True)
        for label in labels
        if isinstance(label, str) and label
    ))


# ═════════════════════════════════════════════════════════════════════════════
# Introspection
# ═════════════════════════════════════════════════════════════════════════════

def describe_field_path(schema: StepFieldSchema, path) -> str | None:
    """Human label trail for *path*, e.g. ``"Trucks / Item 2 / Loading photo"``.

    Stops at the first segment the schema does not know. Returns None when
    not even the first segment matches a field.
    """
    segments = FieldPath.coerce(path).segments
    labels: list[str] = []
    fields = schema.fields
    index = 0
    while index < len(segments):
        current = find_field(fields, segments[index])
        if current is None:
            break
        labels.append(current.label)
        index += 1

        if isinstance(current, GroupField):
            if current.repeatable and index < len(segments) and is_index_segment(segments[index]):
                labels.append(f"Item {int(segments[index]) + 1}")
                index += 1
            fields = current.fields
            continue
        if isinstance(current, ChoiceField):
            option = current.option(segments[index]) if index < len(segments) else None
            if option is None:
                break
            labels.append(option.label)
            fields = option.fields
            index += 1
            continue
        break

    if not labels:
        return None
    return " / ".join(labels)


def _validate_fields(fields, prefix: str, problems: list[str]) -> None:
    seen: set[str] = set()
    for entry in fields:
        where = f"{prefix}{entry.id or '?'}"
        if not entry.id.strip():
            problems.append(f"{prefix or 'root'}: field with empty id")
        elif entry.id in seen:
            problems.append(f"{where}: duplicate field id")
        seen.add(entry.id)

        if isinstance(entry, GroupField):
            _validate_fields(entry.fields, f"{where}.", problems)
        elif isinstance(entry, ChoiceField):
            if not entry.options:
                problems.append(f"{where}: choice has no options")
            option_ids: set[str] = set()
            for option in entry.options:
                if not option.id.strip():
                    problems.append(f"{where}: option with empty id")
                elif option.id in option_ids:
                    problems.append(f"{where}.{option.id}: duplicate option id")
                option_ids.add(option.id)
                _validate_fields(option.fields, f"{where}.{option.id}.", problems)


def validate_schema(schema) -> list[str]:
    """Designer-side checks run before a schema is saved.

    Accepts a parsed schema or its raw dict form. The raw form is also checked
    for more than one ``is_final`` option, which parsing silently repairs.

    Returns:
        List of problem descriptions; empty when the schema is acceptable.
    """
    problems: list[str] = []
    if isinstance(schema, dict):
        _count_raw_finals(schema.get("fields"), "", problems)
        schema = schema_from_dict(schema)
    _validate_fields(schema.fields, "", problems)
    return problems


def _count_raw_finals(raw_fields, prefix: str, problems: list[str]) -> None:
    if not isinstance(raw_fields, list):
        return
    for entry in raw_fields:
        if not isinstance(entry, dict):
            continue
        where = f"{prefix}{entry.get('id') or '?'}"
        _count_raw_finals(entry.get("fields"), f"{where}.", problems)
        options = entry.get("options")
        if entry.get("type") != FieldType.CHOICE.value or not isinstance(options, list):
            continue
        finals = [o for o in options if isinstance(o, dict) and o.get("is_final") is True]
        if len(finals) > 1:
            problems.append(f"{where}: more than one final option")
        for option in options:
            if isinstance(option, dict):
                _count_raw_finals(option.get("fields"), f"{where}.{option.get('id') or '?'}.", problems)
