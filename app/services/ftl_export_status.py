"""
FTL Export Status Deriver — per-step status of an FTL export shipment.

Statuses are recomputed from the full set of step answers on every call;
nothing is read back from previously stored statuses. Each step has one
rule in ``_step_rules`` and rules run in pipeline order, so later rules may
read the statuses already derived (Export invoice reads Loading details,
Stock view reads Export invoice).

Common shape of a rule:
    DONE         the step's completion predicate holds
    IN_PROGRESS  anything was entered but the predicate does not hold
    PENDING      nothing entered

A snapshot flagged ``blocked`` always reports BLOCKED, which also keeps it
from satisfying any gate downstream.

Usage:
    from app.services.ftl_export_status import StepSnapshot, compute_statuses

    result = compute_statuses(
        {"Loading details": StepSnapshot(id=12, values={...})},
        doc_types={"STEP_FIELD:12:trucks.0.loading_photo"},
        route_id="JAFZA_TO_KSA",
    )
    result.statuses["Loading details"]   # -> StepStatus.IN_PROGRESS
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from app.services.field_paths import FieldPath
from app.services.field_values import parse_values, step_field_doc_type
from app.services.ftl_export_rows import (
    ImportWarnings,
    LoadingProgress,
    all_imports_available,
    base_loading_expectation,
    compute_import_warnings,
    count_active_booked,
    evaluate_invoice_truck_details,
    parse_import_rows,
    parse_loading_rows,
    parse_truck_rows,
)
from app.services.workflow_catalog import (
    ClearanceMode,
    CustomsNode,
    NodeKind,
    OverallStatus,
    RouteId,
    StepStatus,
    TrackingRule,
    WorkflowCatalog,
    default_catalog,
)
from app.utils.helpers import get_count, get_string, has_any_value, is_truthy, to_record

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Inputs & Results
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StepSnapshot:
    """Read-only view of one stored step."""
    id: int
    values: dict = field(default_factory=dict)
    blocked: bool = False

    @classmethod
    def of(cls, step_id, values, blocked=False) -> StepSnapshot:
        """Build from stored text or an already parsed tree."""
        return cls(id=step_id, values=parse_values(values), blocked=bool(blocked))


@dataclass
class StatusResult:
    route_id: RouteId
    statuses: dict[str, StepStatus] = field(default_factory=dict)
    loading_progress: LoadingProgress = field(default_factory=LoadingProgress)
    can_finalize_invoice: bool = False
    invoice_truck_details_complete: bool = False
    missing_invoice_truck_details: list[str] = field(default_factory=list)
    import_warnings: ImportWarnings = field(default_factory=ImportWarnings)
    tracking_unlocked: bool = False

    def status(self, step_name: str) -> StepStatus:
        return self.statuses.get(step_name, StepStatus.PENDING)

    def to_dict(self) -> dict:
        return {
            "route_id": self.route_id.value,
            "statuses": {name: status.value for name, status in self.statuses.items()},
            "loading_progress": self.loading_progress.to_dict(),
            "can_finalize_invoice": self.can_finalize_invoice,
            "invoice_truck_details_complete": self.invoice_truck_details_complete,
            "missing_invoice_truck_details": list(self.missing_invoice_truck_details),
            "import_warnings": self.import_warnings.to_dict(),
            "tracking_unlocked": self.tracking_unlocked,
        }


@dataclass
class _Derivation:
    """Working state shared by the step rules of one computation."""
    catalog: WorkflowCatalog
    route_id: RouteId
    steps: dict
    doc_types: frozenset
    result: StatusResult

    def snapshot(self, step_name: str) -> StepSnapshot | None:
        return self.steps.get(step_name)

    def values(self, step_name: str) -> dict:
        snapshot = self.snapshot(step_name)
        return to_record(snapshot.values) if snapshot else {}

    def has_file(self, step_name: str, path) -> bool:
        snapshot = self.snapshot(step_name)
        if snapshot is None:
            return False
        return step_field_doc_type(snapshot.id, FieldPath.coerce(path)) in self.doc_types

    def is_done(self, step_name: str) -> bool:
        return self.result.statuses.get(step_name) == StepStatus.DONE


def status_by_done_and_touched(done: bool, touched: bool) -> StepStatus:
    if done:
        return StepStatus.DONE
    if touched:
        return StepStatus.IN_PROGRESS
    return StepStatus.PENDING


def event_reached(values: dict, event: str) -> bool:
    """A tracking event counts once its flag is ticked or its date is entered."""
    return is_truthy(values.get(event)) or bool(get_string(values.get(f"{event}_date")))


# ═════════════════════════════════════════════════════════════════════════════
# Step rules
# ═════════════════════════════════════════════════════════════════════════════

def _plan_overview(d: _Derivation, name: str) -> StepStatus:
    values = d.values(name)
    done = is_truthy(values.get("order_received")) and bool(get_string(values.get("order_received_date")))
    return status_by_done_and_touched(done, has_any_value(values))


def _trucks_details(d: _Derivation, name: str) -> StepStatus:
    values = d.values(name)
    rows = parse_truck_rows(values)
    progress = count_active_booked(rows)
    planned = get_count(values.get("total_trucks_planned"))
    actual = get_count(values.get("actual_trucks_count"))
    planned_covered = planned > 0 and len(rows) >= planned

    if planned_covered:
        expected = progress.active
    elif planned > 0:
        expected = max(planned, actual)
    elif actual > 0:
        expected = max(actual, progress.active)
    else:
        expected = progress.active

    done = (expected > 0 and progress.booked >= expected) or (
        planned_covered and expected == 0 and len(rows) > 0
    )
    if done:
        return StepStatus.DONE
    if rows or planned > 0 or has_any_value(values):
        return StepStatus.IN_PROGRESS
    return StepStatus.PENDING


def _loading_details(d: _Derivation, name: str) -> StepStatus:
    trucks_values = d.values(d.catalog.ftl.trucks_details)
    truck_rows = parse_truck_rows(trucks_values)
    rows = parse_loading_rows(d.values(name))

    actual = get_count(trucks_values.get("actual_trucks_count"))
    expected = actual if actual > 0 else base_loading_expectation(truck_rows, rows)
    started = sum(1 for row in rows if row.is_started)
    complete = sum(1 for row in rows if row.is_complete(lambda path: d.has_file(name, path)))

    d.result.loading_progress = LoadingProgress(
        expected=expected,
        loaded=sum(1 for row in rows if row.truck_loaded),
        complete=complete,
    )
    if expected <= 0 or started <= 0:
        return StepStatus.PENDING
    if complete >= expected:
        return StepStatus.DONE
    return StepStatus.IN_PROGRESS


def _import_selection(d: _Derivation, name: str) -> StepStatus:
    rows = parse_import_rows(d.values(name))
    d.result.import_warnings = compute_import_warnings(rows)
    if not rows:
        return StepStatus.PENDING
    if all(row.is_ready for row in rows):
        return StepStatus.DONE
    return StepStatus.IN_PROGRESS


def _export_invoice(d: _Derivation, name: str) -> StepStatus:
    ftl = d.catalog.ftl
    values = d.values(name)
    has_invoice_file = d.has_file(name, ("invoice_upload",))
    touched = has_any_value(values) or has_invoice_file

    truck_check = evaluate_invoice_truck_details(parse_truck_rows(d.values(ftl.trucks_details)))
    import_rows = parse_import_rows(d.values(ftl.import_selection))
    can_finalize = (
        d.is_done(ftl.loading_details)
        and all_imports_available(import_rows)
        and truck_check.complete
    )
    d.result.can_finalize_invoice = can_finalize
    d.result.invoice_truck_details_complete = truck_check.complete
    d.result.missing_invoice_truck_details = truck_check.missing_labels

    done = (
        can_finalize
        and is_truthy(values.get("invoice_finalized"))
        and bool(get_string(values.get("invoice_number")))
        and bool(get_string(values.get("invoice_date")))
        and has_invoice_file
    )
    return status_by_done_and_touched(done, touched)


def _stock_view(d: _Derivation, name: str) -> StepStatus:
    ftl = d.catalog.ftl
    if d.is_done(ftl.export_invoice):
        return StepStatus.DONE
    has_imports = bool(parse_import_rows(d.values(ftl.import_selection)))
    return status_by_done_and_touched(False, has_imports or has_any_value(d.values(name)))


def customs_node_done(node: CustomsNode, values: dict) -> bool:
    """Completion of one checkpoint of the customs chain."""
    if node.kind == NodeKind.AGENT:
        if not get_string(values.get(node.agent_field)):
            return False
        if node.consignee_name_field and not get_string(values.get(node.consignee_name_field)):
            return False
        return True

    mode = get_string(values.get(node.clearance_mode_field)).upper()
    if mode == ClearanceMode.CLIENT.value:
        return bool(get_string(values.get(node.client_final_choice_field)))
    if mode == ClearanceMode.ZAXON.value:
        return all(
            get_string(values.get(field_id))
            for field_id in (node.agent_field, node.consignee_name_field, node.show_consignee_field)
        )
    return False


def _customs_agents(d: _Derivation, name: str) -> StepStatus:
    values = d.values(name)
    chain = d.catalog.route(d.route_id).customs_chain
    done = all(customs_node_done(node, values) for node in chain)
    return status_by_done_and_touched(done, has_any_value(values))


def tracking_done(d: _Derivation, name: str, rule: TrackingRule | None) -> bool:
    if rule is None:
        return False
    if not rule.applicable:
        return True
    values = d.values(name)
    if not all(event_reached(values, event) for event in rule.events):
        return False
    if rule.declaration_mode_field:
        mode = get_string(values.get(rule.declaration_mode_field)).upper()
        if mode == ClearanceMode.ZAXON.value:
            return bool(get_string(values.get(rule.declaration_date_field))) and d.has_file(
                name, (rule.declaration_file_field,)
            )
    return True


def _tracking(d: _Derivation, name: str) -> StepStatus:
    rule = d.catalog.tracking_rule(d.route_id, name)
    return status_by_done_and_touched(tracking_done(d, name, rule), has_any_value(d.values(name)))


StepRule = Callable[[_Derivation, str], StepStatus]


def _step_rules(catalog: WorkflowCatalog) -> list[tuple[str, StepRule]]:
    ftl = catalog.ftl
    rules: list[tuple[str, StepRule]] = [
        (ftl.plan_overview, _plan_overview),
        (ftl.trucks_details, _trucks_details),
        (ftl.loading_details, _loading_details),
        (ftl.import_selection, _import_selection),
        (ftl.export_invoice, _export_invoice),
        (ftl.stock_view, _stock_view),
        (ftl.customs_agents, _customs_agents),
    ]
    rules.extend((step_name, _tracking) for step_name in ftl.tracking)
    return rules


# ═════════════════════════════════════════════════════════════════════════════
# Entry points
# ═════════════════════════════════════════════════════════════════════════════

def compute_statuses(steps_by_name, doc_types=(), route_id=None, catalog=None) -> StatusResult:
    """Derive every FTL export step status from the current answers.

    Args:
        steps_by_name: Mapping of step name to ``StepSnapshot``; missing
            names are evaluated as empty steps.
        doc_types: Document-type tokens of received documents on the shipment.
        route_id: ``RouteId`` or its text; unknown values use the default route.
        catalog: Workflow catalog; defaults to ``default_catalog()``.

    Returns:
        StatusResult with one status per catalog step.
    """
    catalog = catalog or default_catalog()
    route = catalog.coerce_route(route_id)
    derivation = _Derivation(
        catalog=catalog,
        route_id=route,
        steps=dict(steps_by_name or {}),
        doc_types=frozenset(doc_types or ()),
        result=StatusResult(route_id=route),
    )

    for step_name, rule in _step_rules(catalog):
        status = rule(derivation, step_name)
        snapshot = derivation.snapshot(step_name)
        if snapshot is not None and snapshot.blocked:
            status = StepStatus.BLOCKED
        derivation.result.statuses[step_name] = status

    ftl = catalog.ftl
    result = derivation.result
    result.tracking_unlocked = all(
        derivation.is_done(step_name)
        for step_name in (ftl.loading_details, ftl.export_invoice, ftl.customs_agents)
    )
    logger.debug(
        "Derived FTL export statuses",
        extra={"route_id": route.value, "status": {k: v.value for k, v in result.statuses.items()}},
    )
    return result


def _coerce_status(value) -> StepStatus:
    try:
        return StepStatus(value)
    except (ValueError, TypeError):
        return StepStatus.PENDING


def compute_overall_status(statuses) -> OverallStatus:
    """Shipment roll-up of its step statuses."""
    raw = statuses.values() if hasattr(statuses, "values") else statuses
    values = [_coerce_status(s) for s in raw]
    if not values:
        return OverallStatus.CREATED
    if all(s == StepStatus.DONE for s in values):
        return OverallStatus.COMPLETED
    if any(s == StepStatus.BLOCKED for s in values):
        return OverallStatus.DELAYED
    if any(s in (StepStatus.IN_PROGRESS, StepStatus.DONE) for s in values):
        return OverallStatus.IN_PROGRESS
    return OverallStatus.CREATED
