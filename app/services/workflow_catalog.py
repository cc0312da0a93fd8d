"""
Workflow Catalog — immutable step names, route profiles and tracking rules.

One ``WorkflowCatalog`` is built by the application factory and stored in
``app.extensions["workflow_catalog"]``. Engine functions take it as an
explicit argument (``catalog=None`` means ``default_catalog()``).

Routes (JAFZA land exports):
    JAFZA_TO_SYRIA        UAE -> KSA -> Jordan -> Syria (Naseeb clearance)
    JAFZA_TO_KSA          UAE -> KSA (Batha clearance, delivery in KSA)
    JAFZA_TO_MUSHTARAKAH  UAE -> KSA -> Jordan -> Mushtarakah -> Lebanon (Masnaa clearance)

Usage:
    from app.services.workflow_catalog import default_catalog, RouteId

    catalog = default_catalog()
    profile = catalog.route(RouteId.JAFZA_TO_KSA)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Enums
# ═════════════════════════════════════════════════════════════════════════════

class ServiceType(str, Enum):
    FTL_EXPORT = "FTL_EXPORT"
    FCL_IMPORT = "FCL_IMPORT"
    IMPORT_TRANSFER_OWNERSHIP = "IMPORT_TRANSFER_OWNERSHIP"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    BLOCKED = "BLOCKED"


class OverallStatus(str, Enum):
    CREATED = "CREATED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DELAYED = "DELAYED"


class RouteId(str, Enum):
    JAFZA_TO_SYRIA = "JAFZA_TO_SYRIA"
    JAFZA_TO_KSA = "JAFZA_TO_KSA"
    JAFZA_TO_MUSHTARAKAH = "JAFZA_TO_MUSHTARAKAH"


class NodeKind(str, Enum):
    AGENT = "agent"
    CLEARANCE_MODE = "clearance_mode"


class ClearanceMode(str, Enum):
    CLIENT = "CLIENT"
    ZAXON = "ZAXON"


class LoadingOrigin(str, Enum):
    ZAXON_WAREHOUSE = "ZAXON_WAREHOUSE"
    EXTERNAL_SUPPLIER = "EXTERNAL_SUPPLIER"
    MIXED = "MIXED"


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    BOOKED = "BOOKED"
    CANCELLED = "CANCELLED"


CARGO_UNIT_TYPES = ("Pallets", "Cartons", "Packages", "Vehicles", "Machinery", "Other")
TRAILER_TYPES = ("18M Trailer", "16M Trailer", "15M Trailer", "13.5M Refer")

class FclInvoiceOption(str, Enum):
    COPY_20_DAYS = "COPY_20_DAYS"
    COPY_FINE = "COPY_FINE"
    ORIGINAL = "ORIGINAL"


class TransferOutcome(str, Enum):
    DELIVER_TO_ZAXON_WAREHOUSE = "DELIVER_TO_ZAXON_WAREHOUSE"
    DIRECT_EXPORT = "DIRECT_EXPORT"

    @classmethod
    def parse(cls, value) -> TransferOutcome | None:
        text = value.strip().upper() if isinstance(value, str) else ""
        try:
            return cls(text)
        except ValueError:
            return None


class TransferStockType(str, Enum):
    PENDING = "PENDING"
    OWNERSHIP_STOCK = "OWNERSHIP_STOCK"
    WAREHOUSE_STOCK = "WAREHOUSE_STOCK"


# ═════════════════════════════════════════════════════════════════════════════
# Step names
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FtlExportSteps:
    plan_overview: str = "Export plan overview"
    trucks_details: str = "Trucks details"
    loading_details: str = "Loading details"
    import_selection: str = "Import shipment selection"
    export_invoice: str = "Export invoice"
    stock_view: str = "Stock view"
    customs_agents: str = "Customs agents allocation"
    tracking_uae: str = "Tracking - UAE"
    tracking_ksa: str = "Tracking - KSA"
    tracking_jordan: str = "Tracking - Jordan"
    tracking_syria: str = "Tracking - Syria"

    @property
    def operations(self) -> tuple[str, ...]:
        return (
            self.plan_overview, self.trucks_details, self.loading_details,
            self.import_selection, self.export_invoice, self.stock_view,
            self.customs_agents,
        )

    @property
    def tracking(self) -> tuple[str, ...]:
        return (self.tracking_uae, self.tracking_ksa, self.tracking_jordan, self.tracking_syria)

    @property
    def all(self) -> tuple[str, ...]:
        return self.operations + self.tracking


@dataclass(frozen=True)
class FclImportSteps:
    shipment_creation: str = "Shipment creation"
    order_received: str = "Order received"
    vessel_tracking: str = "Vessel tracking"
    containers_discharge: str = "Containers discharge"
    container_pull_out: str = "Container pull-out from port"
    container_delivery: str = "Container delivery / offload"
    bill_of_lading: str = "Bill of lading"
    commercial_invoice: str = "Commercial invoice and documents"
    delivery_order: str = "Delivery order"
    bill_of_entry: str = "Bill of entry passed"
    token_booking: str = "Token booking"
    return_token_booking: str = "Return token booking"

    @property
    def operations(self) -> tuple[str, ...]:
        return (
            self.order_received, self.bill_of_lading, self.commercial_invoice,
            self.delivery_order, self.bill_of_entry,
        )

    @property
    def tracking(self) -> tuple[str, ...]:
        return (
            self.vessel_tracking, self.containers_discharge,
            self.container_pull_out, self.container_delivery,
        )

    @property
    def container_steps(self) -> tuple[str, ...]:
        return (self.token_booking, self.return_token_booking)

    @property
    def all(self) -> tuple[str, ...]:
        return (self.shipment_creation,) + self.operations + self.tracking + self.container_steps


@dataclass(frozen=True)
class TransferOwnershipSteps:
    overview: str = "Overview"
    parties_cargo: str = "Parties and cargo"
    documents_boe: str = "Documents and BOE"
    collection_outcome: str = "Collection and outcome"
    stock_view: str = "Stock view"

    @property
    def all(self) -> tuple[str, ...]:
        return (
            self.overview, self.parties_cargo, self.documents_boe,
            self.collection_outcome, self.stock_view,
        )


# Substrings of step names that mean "the import has been processed".
PROCESSED_STEP_MARKERS = ("bill of entry", "processed", "available", "documents and boe")


# ═════════════════════════════════════════════════════════════════════════════
# Routes
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CustomsNode:
    """One border / free-zone checkpoint in a route's customs chain."""
    id: str
    label: str
    country: str
    kind: NodeKind
    agent_field: str
    clearance_mode_field: str | None = None
    consignee_party_id_field: str | None = None
    consignee_name_field: str | None = None
    show_consignee_field: str | None = None
    client_final_choice_field: str | None = None


@dataclass(frozen=True)
class TrackingRule:
    """Completion rule for one tracking step on one route.

    Every event in ``events`` must be reached (flag truthy or ``<event>_date``
    present). When ``declaration_mode_field`` holds ZAXON, the declaration
    date and file are also required. ``applicable=False`` means the step does
    not exist on the route and is vacuously DONE.
    """
    events: tuple[str, ...] = ()
    applicable: bool = True
    declaration_mode_field: str | None = None
    declaration_date_field: str | None = None
    declaration_file_field: str | None = None


@dataclass(frozen=True)
class RouteProfile:
    id: RouteId
    label: str
    origin: str
    destination: str
    tracking_tabs: tuple[str, ...]
    customs_chain: tuple[CustomsNode, ...]
    tracking_rules: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))

    def tracking_rule(self, step_name: str) -> TrackingRule | None:
        return self.tracking_rules.get(step_name)


def _agent(node_id, label, country, **extra) -> CustomsNode:
    return CustomsNode(
        id=node_id, label=label, country=country, kind=NodeKind.AGENT,
        agent_field=f"{node_id}_agent_name", **extra,
    )


def _clearance(node_id, label, country, consignee_prefix=None) -> CustomsNode:
    consignee = consignee_prefix or node_id
    return CustomsNode(
        id=node_id,
        label=label,
        country=country,
        kind=NodeKind.CLEARANCE_MODE,
        agent_field=f"{node_id}_agent_name",
        clearance_mode_field=f"{node_id}_clearance_mode",
        consignee_party_id_field=f"{consignee}_consignee_party_id",
        consignee_name_field=f"{consignee}_consignee_name",
        show_consignee_field=f"show_{consignee}_consignee_to_client",
        client_final_choice_field=f"{node_id}_client_final_choice",
    )


JEBEL_ALI = _agent("jebel_ali", "Jebel Ali FZ", "AE")
SILA = _agent("sila", "Sila Border", "AE")
BATHA_AGENT = _agent("batha", "Batha Border", "SA")
BATHA_CLEARANCE = _clearance("batha", "Batha Border", "SA")
OMARI = _agent("omari", "Omari Border", "JO")
NASEEB_CLEARANCE = _clearance("naseeb", "Naseeb Border", "SY", consignee_prefix="syria")
MUSHTARAKAH = _agent(
    "mushtarakah", "Mushtarakah", "SY",
    consignee_party_id_field="mushtarakah_consignee_party_id",
    consignee_name_field="mushtarakah_consignee_name",
)
MASNAA_CLEARANCE = _clearance("masnaa", "Masnaa Border", "LB")

MUSHTARAKAH_CHAIN_EVENTS = (
    "mushtarakah_entered",
    "mushtarakah_offloaded_warehouse",
    "mushtarakah_loaded_syrian_trucks",
    "mushtarakah_exit",
    "naseeb_arrived",
    "naseeb_entered",
    "masnaa_arrived",
    "masnaa_entered",
    "masnaa_delivered",
)

NOT_APPLICABLE = TrackingRule(applicable=False)


def _route_profiles(steps: FtlExportSteps) -> dict[RouteId, RouteProfile]:
    uae_rule = TrackingRule(events=("sila_exit",))
    jordan_rule = TrackingRule(events=("jaber_exit",))
    hadietha_rule = TrackingRule(events=("hadietha_exit",))
    return {
        RouteId.JAFZA_TO_SYRIA: RouteProfile(
            id=RouteId.JAFZA_TO_SYRIA,
            label="JAFZA, Dubai to Syria",
            origin="JAFZA, Dubai",
            destination="Syria",
            tracking_tabs=("uae", "ksa", "jordan", "syria"),
            customs_chain=(JEBEL_ALI, SILA, BATHA_AGENT, OMARI, NASEEB_CLEARANCE),
            tracking_rules=MappingProxyType({
                steps.tracking_uae: uae_rule,
                steps.tracking_ksa: hadietha_rule,
                steps.tracking_jordan: jordan_rule,
                steps.tracking_syria: TrackingRule(
                    events=("syria_delivered",),
                    declaration_mode_field="syria_clearance_mode",
                    declaration_date_field="syria_declaration_date",
                    declaration_file_field="syria_declaration_upload",
                ),
            }),
        ),
        RouteId.JAFZA_TO_KSA: RouteProfile(
            id=RouteId.JAFZA_TO_KSA,
            label="JAFZA, Dubai to KSA",
            origin="JAFZA, Dubai",
            destination="KSA",
            tracking_tabs=("uae", "ksa"),
            customs_chain=(JEBEL_ALI, SILA, BATHA_CLEARANCE),
            tracking_rules=MappingProxyType({
                steps.tracking_uae: uae_rule,
                steps.tracking_ksa: TrackingRule(events=("batha_delivered",)),
                steps.tracking_jordan: NOT_APPLICABLE,
                steps.tracking_syria: NOT_APPLICABLE,
            }),
        ),
        RouteId.JAFZA_TO_MUSHTARAKAH: RouteProfile(
            id=RouteId.JAFZA_TO_MUSHTARAKAH,
            label="JAFZA, Dubai to Mushtarakah, Lebanon",
            origin="JAFZA, Dubai",
            destination="Mushtarakah, Lebanon",
            tracking_tabs=("uae", "ksa", "jordan", "mushtarakah", "lebanon"),
            customs_chain=(JEBEL_ALI, SILA, BATHA_AGENT, OMARI, MUSHTARAKAH, MASNAA_CLEARANCE),
            tracking_rules=MappingProxyType({
                steps.tracking_uae: uae_rule,
                steps.tracking_ksa: hadietha_rule,
                steps.tracking_jordan: jordan_rule,
                # Mushtarakah and Lebanon tabs share the Syria tracking step.
                steps.tracking_syria: TrackingRule(events=MUSHTARAKAH_CHAIN_EVENTS),
            }),
        ),
    }


# ═════════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class WorkflowCatalog:
    ftl: FtlExportSteps
    fcl: FclImportSteps
    transfer: TransferOwnershipSteps
    routes: MappingProxyType
    default_route: RouteId = RouteId.JAFZA_TO_SYRIA
    processed_step_markers: tuple[str, ...] = PROCESSED_STEP_MARKERS

    def coerce_route(self, route_id) -> RouteId:
        """Route id from text or enum; unknown values give the default route."""
        if isinstance(route_id, RouteId):
            return route_id
        text = route_id.strip().upper() if isinstance(route_id, str) else ""
        try:
            return RouteId(text)
        except ValueError:
            if text:
                logger.debug("Unknown route %r, using %s", text, self.default_route.value)
            return self.default_route

    def route(self, route_id=None) -> RouteProfile:
        return self.routes[self.coerce_route(route_id)]

    def tracking_rule(self, route_id, step_name: str) -> TrackingRule | None:
        return self.route(route_id).tracking_rule(step_name)

    def is_tracking_step(self, step_name: str) -> bool:
        return step_name in self.ftl.tracking

    def looks_processed(self, step_name) -> bool:
        normalized = step_name.strip().lower() if isinstance(step_name, str) else ""
        return any(marker in normalized for marker in self.processed_step_markers)


def _norm(value) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def resolve_route(origin, destination) -> RouteId:
    """Pick the land route from free-text origin and destination.

    Non-JAFZA origins always use the Syria route.
    """
    origin_text = _norm(origin)
    destination_text = _norm(destination)
    origin_is_jafza = "jafza" in origin_text or (
        "jebel ali" in origin_text and "dubai" in origin_text
    )
    if not origin_is_jafza:
        return RouteId.JAFZA_TO_SYRIA
    if "mushtarakah" in destination_text:
        return RouteId.JAFZA_TO_MUSHTARAKAH
    if destination_text == "ksa" or "saudi" in destination_text:
        return RouteId.JAFZA_TO_KSA
    return RouteId.JAFZA_TO_SYRIA


def build_catalog(default_route=RouteId.JAFZA_TO_SYRIA) -> WorkflowCatalog:
    """Build the catalog once at process start."""
    ftl = FtlExportSteps()
    try:
        route = RouteId(default_route) if not isinstance(default_route, RouteId) else default_route
    except ValueError:
        logger.warning("FTL_DEFAULT_ROUTE %r is not a known route, using JAFZA_TO_SYRIA", default_route)
        route = RouteId.JAFZA_TO_SYRIA
    return WorkflowCatalog(
        ftl=ftl,
        fcl=FclImportSteps(),
        transfer=TransferOwnershipSteps(),
        routes=MappingProxyType(_route_profiles(ftl)),
        default_route=route,
    )


_DEFAULT_CATALOG = build_catalog()


def default_catalog() -> WorkflowCatalog:
    return _DEFAULT_CATALOG
