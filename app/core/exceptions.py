"""
Platform-wide exception hierarchy.

The workflow engine itself never raises on malformed data; these are raised
by the orchestration service when a save breaks a business rule or names a
record that does not exist. Callers (CLI, HTTP layer) map them once.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Shipment", resource_id=42)
    raise ValidationError("Truck 2 is booked without a booking date",
                          details={"code": "truck_booking_required", "truck": 2})
"""


class NotFoundError(Exception):
    """Raised when a shipment or step does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Shipment", "ShipmentStep").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when a step save is well-formed but violates a workflow rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Structured breakdown. ``details["code"]`` is the machine-readable
                 reason (e.g. ``truck_locked``, ``loading_required``);
                 ``details["truck"]`` is the 1-based truck row where relevant.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    @property
    def code(self) -> str | None:
        return self.details.get("code")


class ConflictError(Exception):
    """Raised when a value that must be unique across shipments is reused.

    Args:
        resource: Entity name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)
