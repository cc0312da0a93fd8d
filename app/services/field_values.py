"""
Step field value tree — storage boundary and form merging.

A step's answers are a nested mapping of field id to text, to a nested
mapping (group / choice option), or to a list of mappings (repeatable
group). Stored form is a JSON document whose leaves are always text.

Submitted forms reach this module as ``(key, value)`` pairs:

    field:<encoded path>          value to write (trimmed)
    field-remove:<encoded path>   node to delete

Attached files are linked to a field by a document-type token:

    STEP_FIELD:<step id>:<encoded path>
"""

from __future__ import annotations

import copy
import json
import logging
import math
from dataclasses import dataclass

from app.services.field_paths import (
    FIELD_INPUT_PREFIX,
    FIELD_REMOVAL_PREFIX,
    FieldPath,
    remove_value,
    set_value,
)
from app.services.field_schema import (
    BASE_TYPES,
    ChoiceField,
    FieldType,
    GroupField,
    StepFieldSchema,
)
from app.utils.helpers import is_truthy, to_record

logger = logging.getLogger(__name__)

STEP_FIELD_DOC_PREFIX = "STEP_FIELD:"


@dataclass(frozen=True)
class FieldUpdate:
    path: FieldPath
    value: str


# ── Storage boundary ─────────────────────────────────────────────────────────

def parse_values(text) -> dict:
    """Parse stored answers. Anything but a JSON object yields ``{}``."""
    if isinstance(text, dict):
        return text
    if not text or not isinstance(text, (str, bytes)):
        return {}
    try:
        parsed = json.loads(text)
    except (ValueError, TypeError, RecursionError):
        logger.debug("Unreadable step field values, using empty tree")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _to_storage(value):
    if isinstance(value, dict):
        return {str(key): _to_storage(entry) for key, entry in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_storage(entry) for entry in value]
    if isinstance(value, str) or value is None:
        return value if value is not None else ""
    if isinstance(value, bool):
        return "1" if value else ""
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return ""
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    return str(value)


def serialize_values(values) -> str:
    """Storage form of a value tree; every leaf is written as text."""
    return json.dumps(_to_storage(to_record(values)))


# ── Merging ──────────────────────────────────────────────────────────────────

def _as_path(path) -> FieldPath | None:
    try:
        return FieldPath.coerce(path)
    except TypeError:
        return None


def apply_updates(values, updates) -> dict:
    """Return a copy of *values* with every update written at its path.

    Updates are applied in order, so a later update to the same path wins.
    Entries that are neither a FieldUpdate nor a ``(path, value)`` pair are
    skipped.
    """
    result = copy.deepcopy(to_record(values))
    for update in updates:
        if isinstance(update, FieldUpdate):
            path, value = update.path, update.value
        elif isinstance(update, (list, tuple)) and len(update) == 2:
            path, value = _as_path(update[0]), update[1]
        else:
            logger.debug("Skipping malformed field update: %r", update)
            continue
        if path is None:
            logger.debug("Skipping field update with unreadable path: %r", update)
            continue
        set_value(result, path, value)
    return result


def apply_removals(values, paths) -> dict:
    """Return a copy of *values* with every path removed."""
    result = copy.deepcopy(to_record(values))
    for raw in paths:
        path = _as_path(raw)
        if path is not None:
            remove_value(result, path)
    return result


def _pairs(items):
    if hasattr(items, "items") and not isinstance(items, (list, tuple)):
        # Werkzeug MultiDict keeps repeated keys only through items(multi=True).
        try:
            return list(items.items(multi=True))
        except TypeError:
            return list(items.items())
    return list(items)


def extract_updates(items) -> list[FieldUpdate]:
    """Path-addressed updates from submitted ``field:`` keys."""
    updates = []
    for key, value in _pairs(items):
        if not isinstance(key, str) or not key.startswith(FIELD_INPUT_PREFIX):
            continue
        if not isinstance(value, str):
            continue
        path = FieldPath.decode(key[len(FIELD_INPUT_PREFIX):])
        updates.append(FieldUpdate(path=path, value=value.strip()))
    return updates


def extract_removals(items) -> list[FieldPath]:
    """Paths named by submitted ``field-remove:`` keys."""
    removals = []
    for key, _value in _pairs(items):
        if isinstance(key, str) and key.startswith(FIELD_REMOVAL_PREFIX):
            removals.append(FieldPath.decode(key[len(FIELD_REMOVAL_PREFIX):]))
    return removals


# ── Document-type tokens ─────────────────────────────────────────────────────

def step_field_doc_type(step_id: int, path) -> str:
    """Document type that links an attached file to one file field of a step."""
    if isinstance(path, str):
        encoded = path
    else:
        encoded = FieldPath.coerce(path).encode()
    return f"{STEP_FIELD_DOC_PREFIX}{step_id}:{encoded}"


def parse_step_field_doc_type(token) -> tuple[int, str] | None:
    """Split a doc-type token into ``(step_id, encoded_path)``; None if foreign."""
    if not isinstance(token, str) or not token.startswith(STEP_FIELD_DOC_PREFIX):
        return None
    step_text, sep, encoded = token[len(STEP_FIELD_DOC_PREFIX):].partition(":")
    if not sep:
        return None
    try:
        step_id = int(step_text)
    except ValueError:
        return None
    return step_id, encoded


# ── Reporting ────────────────────────────────────────────────────────────────

def _collect_flat(fields, values: dict, out: dict) -> None:
    for definition in fields:
        raw = values.get(definition.id)
        if isinstance(definition, GroupField):
            if definition.repeatable:
                for item in raw if isinstance(raw, list) else []:
                    if isinstance(item, dict):
                        _collect_flat(definition.fields, item, out)
            elif isinstance(raw, dict):
                _collect_flat(definition.fields, raw, out)
        elif isinstance(definition, ChoiceField):
            chosen = to_record(raw)
            for option in definition.options:
                option_values = chosen.get(option.id)
                if isinstance(option_values, dict):
                    _collect_flat(option.fields, option_values, out)
        elif definition.type in BASE_TYPES and definition.type != FieldType.FILE:
            if definition.type == FieldType.BOOLEAN:
                if is_truthy(raw):
                    out[definition.label] = raw.strip()
            elif isinstance(raw, str) and raw.strip():
                out[definition.label] = raw


def collect_flat_values(schema: StepFieldSchema, values) -> dict[str, str]:
    """Label to value map of answered leaves, across groups and choice branches.

    Later items of a repeatable group overwrite earlier ones under the same label.
    """
    out: dict[str, str] = {}
    try:
        _collect_flat(schema.fields, to_record(values), out)
    except RecursionError:
        logger.debug("Value tree nests too deeply to flatten")
    return out
