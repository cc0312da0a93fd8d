"""Shipment, workflow step and attached document models."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.models import db


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Shipment ─────────────────────────────────────────────────────

class Shipment(db.Model):
    """One shipment job; its workflow lives in ShipmentStep rows."""

    __tablename__ = "shipments"

    id = Column(Integer, primary_key=True)
    shipment_code = Column(String(40), nullable=False, unique=True)
    service_type = Column(
        String(40), default="FTL_EXPORT"
    )  # FTL_EXPORT | FCL_IMPORT | IMPORT_TRANSFER_OWNERSHIP
    origin = Column(String(200), default="")
    destination = Column(String(200), default="")
    route_id = Column(String(40), nullable=True)  # explicit route; else resolved from origin/destination
    overall_status = Column(
        String(20), default="CREATED"
    )  # CREATED | IN_PROGRESS | COMPLETED | DELAYED
    weight_kg = Column(Float, default=0)
    packages_count = Column(Integer, default=0)
    cargo_description = Column(Text, default="")
    client_number = Column(String(200), default="")
    job_ids = Column(String(200), default="")
    container_number = Column(String(100), default="")
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    last_update_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps = relationship(
        "ShipmentStep",
        backref="shipment",
        cascade="all, delete-orphan",
        order_by="ShipmentStep.sort_order",
    )
    documents = relationship(
        "ShipmentDocument",
        backref="shipment",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "shipment_code": self.shipment_code,
            "service_type": self.service_type,
            "origin": self.origin,
            "destination": self.destination,
            "route_id": self.route_id,
            "overall_status": self.overall_status,
            "weight_kg": self.weight_kg,
            "packages_count": self.packages_count,
            "cargo_description": self.cargo_description,
            "client_number": self.client_number,
            "job_ids": self.job_ids,
            "container_number": self.container_number,
            "created_at": _iso(self.created_at),
            "last_update_at": _iso(self.last_update_at),
        }


# ── Workflow step ────────────────────────────────────────────────

class ShipmentStep(db.Model):
    """A workflow step: its field schema and the answers entered so far.

    Both documents are stored as JSON text; ``status`` is derived from the
    answers and rewritten on every save.
    """

    __tablename__ = "shipment_steps"

    id = Column(Integer, primary_key=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(120), nullable=False)
    sort_order = Column(Integer, default=0)
    status = Column(String(20), default="PENDING")  # PENDING | IN_PROGRESS | DONE | BLOCKED
    is_blocked = Column(Boolean, default=False)
    field_schema_json = Column(Text, default="")
    field_values_json = Column(Text, default="{}")
    notes = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_shipment_steps_shipment_name", "shipment_id", "name"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "shipment_id": self.shipment_id,
            "name": self.name,
            "sort_order": self.sort_order,
            "status": self.status,
            "is_blocked": self.is_blocked,
            "notes": self.notes,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
        }


# ── Documents ────────────────────────────────────────────────────

class ShipmentDocument(db.Model):
    """A document received for a shipment.

    Files attached to a step field carry the step-field document type
    ``STEP_FIELD:<step id>:<encoded path>``.
    """

    __tablename__ = "shipment_documents"

    id = Column(Integer, primary_key=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)
    document_type = Column(String(400), nullable=False)
    file_name = Column(String(300), default="")
    is_received = Column(Boolean, default=True)
    uploaded_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_shipment_documents_shipment_type", "shipment_id", "document_type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "shipment_id": self.shipment_id,
            "document_type": self.document_type,
            "file_name": self.file_name,
            "is_received": self.is_received,
            "uploaded_at": _iso(self.uploaded_at),
        }
