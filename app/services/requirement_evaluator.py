"""
Requirement Evaluator — which required fields of a step are still missing.

Walks a step schema alongside its value tree. Two primitives:

    field_has_value(fields, values, ...)   any answered leaf under a subtree
    collect_missing(schema, context)       encoded paths of required-but-missing fields

Rules for conditional sections:
    - non-repeatable group: only validated once something inside is answered;
      a required group that is entirely empty is reported as the group path
    - repeatable group: every item with an answer is validated on its own;
      empty items are ignored; a required group with no answered item is
      reported as the group path
    - choice: when the option flagged ``is_final`` is answered, only that
      option is validated; otherwise every answered option is; a required
      choice with no complete option is reported as the choice path

Traversal follows the schema, never the values, so it always terminates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from app.services.field_paths import FieldPath
from app.services.field_schema import (
    ChoiceField,
    ChoiceOption,
    FieldType,
    GroupField,
    StepFieldSchema,
    describe_field_path,
)
from app.services.field_values import step_field_doc_type
from app.utils.helpers import get_string, is_truthy, to_record

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequirementContext:
    """Everything the evaluator reads for one step."""
    step_id: int
    values: dict
    doc_types: frozenset = field(default_factory=frozenset)

    def has_document(self, path: FieldPath) -> bool:
        return step_field_doc_type(self.step_id, path) in self.doc_types


def make_context(step_id, values, doc_types=()) -> RequirementContext:
    return RequirementContext(
        step_id=step_id,
        values=to_record(values),
        doc_types=frozenset(doc_types or ()),
    )


# ── Answered check ───────────────────────────────────────────────────────────

def _leaf_has_value(definition, raw, context: RequirementContext, path: FieldPath) -> bool:
    if definition.type == FieldType.FILE:
        return context.has_document(path)
    if definition.type == FieldType.BOOLEAN:
        return is_truthy(raw)
    return bool(get_string(raw))


def field_has_value(fields, values, context: RequirementContext, base: FieldPath) -> bool:
    """True if any leaf of *fields* under *base* is answered."""
    container = to_record(values)
    for definition in fields:
        path = base.child(definition.id)
        raw = container.get(definition.id)

        if isinstance(definition, GroupField):
            if definition.repeatable:
                items = raw if isinstance(raw, list) else []
                for index, item in enumerate(items):
                    if field_has_value(definition.fields, item, context, path.item(index)):
                        return True
            elif field_has_value(definition.fields, raw, context, path):
                return True
            continue

        if isinstance(definition, ChoiceField):
            chosen = to_record(raw)
            for option in definition.options:
                if field_has_value(option.fields, chosen.get(option.id), context, path.child(option.id)):
                    return True
            continue

        if _leaf_has_value(definition, raw, context, path):
            return True
    return False


# ── Missing collection ───────────────────────────────────────────────────────

def _option_has_value(option: ChoiceOption, chosen: dict, context, path: FieldPath) -> bool:
    return field_has_value(option.fields, chosen.get(option.id), context, path.child(option.id))


def _collect_group(definition: GroupField, raw, context, path: FieldPath, missing: set) -> None:
    if definition.repeatable:
        items = raw if isinstance(raw, list) else []
        answered = [
            (index, item) for index, item in enumerate(items)
            if isinstance(item, dict)
            and field_has_value(definition.fields, item, context, path.item(index))
        ]
        if not answered:
            if definition.required:
                missing.add(path.encode())
            return
        for index, item in answered:
            _collect(definition.fields, item, context, path.item(index), missing)
        return

    group_values = to_record(raw)
    if not field_has_value(definition.fields, group_values, context, path):
        if definition.required:
            missing.add(path.encode())
        return
    _collect(definition.fields, group_values, context, path, missing)


def _collect_choice(definition: ChoiceField, raw, context, path: FieldPath, missing: set) -> None:
    chosen = to_record(raw)
    # One walk per answered option feeds both the completeness check and the report.
    answered = [
        (option, set())
        for option in definition.options
        if _option_has_value(option, chosen, context, path)
    ]
    for option, found in answered:
        _collect(option.fields, to_record(chosen.get(option.id)), context, path.child(option.id), found)

    if definition.required and all(found for _, found in answered):
        missing.add(path.encode())

    final = definition.final_option
    final_answered = [(option, found) for option, found in answered if option is final]
    for _, found in final_answered or answered:
        missing.update(found)


def _collect(fields, values: dict, context: RequirementContext, base: FieldPath, missing: set) -> None:
    for definition in fields:
        path = base.child(definition.id)
        raw = values.get(definition.id)
        if isinstance(definition, GroupField):
            _collect_group(definition, raw, context, path, missing)
        elif isinstance(definition, ChoiceField):
            _collect_choice(definition, raw, context, path, missing)
        elif definition.required and not _leaf_has_value(definition, raw, context, path):
            missing.add(path.encode())


def collect_missing(schema: StepFieldSchema, context: RequirementContext) -> set[str]:
    """Encoded paths of every required field that still needs an answer.

    Args:
        schema: Parsed step schema.
        context: Step id, value tree and attached document-type tokens.

    Returns:
        Set of encoded field paths (see ``FieldPath.encode``).
    """
    missing: set[str] = set()
    try:
        _collect(schema.fields, to_record(context.values), context, FieldPath(), missing)
    except RecursionError:
        logger.debug("Step %s schema too deep to evaluate, reporting top-level requirements", context.step_id)
        missing.update(FieldPath.of(f.id).encode() for f in schema.fields if f.required)
    return missing


def has_any_answer(schema: StepFieldSchema, context: RequirementContext) -> bool:
    try:
        return field_has_value(schema.fields, context.values, context, FieldPath())
    except RecursionError:
        logger.debug("Step %s schema too deep to evaluate", context.step_id)
        return False


def describe_missing(schema: StepFieldSchema, context: RequirementContext) -> list[dict]:
    """Sorted ``{"path", "label"}`` entries for display next to a step."""
    result = []
    for encoded in sorted(collect_missing(schema, context)):
        label = describe_field_path(schema, FieldPath.decode(encoded))
        result.append({"path": encoded, "label": label or encoded})
    return result


def is_step_complete(schema: StepFieldSchema, context: RequirementContext) -> bool:
    return not collect_missing(schema, context)
