"""Business rules and result types for port allocation."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from src.models.port import CREATABLE_STATUSES, Port, PortStatus


class AllocationErrorKind(str, Enum):
    """Expected business outcomes of a failed port operation."""
    NO_AVAILABLE_PORTS = "NO_AVAILABLE_PORTS"
    PORT_IN_USE = "PORT_IN_USE"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    LOCK_TIMEOUT = "LOCK_TIMEOUT"
    DUPLICATE_INSTANCE = "DUPLICATE_INSTANCE"
    VALIDATION_ERROR = "VALIDATION_ERROR"


# Kinds a caller may simply retry later
RETRYABLE_ERRORS = frozenset({AllocationErrorKind.LOCK_TIMEOUT, AllocationErrorKind.NO_AVAILABLE_PORTS})


@dataclass
class ValidationError:
    """Validation error."""
    field: str
    code: str
    message: str


@dataclass
class ValidationResult:
    """Validation result."""
    is_valid: bool
    errors: List[ValidationError]


@dataclass
class AllocationResult:
    """Outcome of an allocation engine operation."""
    success: bool
    port: Optional[Port] = None
    error: Optional[AllocationErrorKind] = None
    message: Optional[str] = None
    subscription_id: Optional[Any] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, port: Optional[Port] = None, **kwargs) -> "AllocationResult":
        return cls(success=True, port=port, **kwargs)

    @classmethod
    def fail(cls, error: AllocationErrorKind, message: str, **kwargs) -> "AllocationResult":
        return cls(success=False, error=error, message=message, **kwargs)

    @property
    def retryable(self) -> bool:
        """Whether the caller may retry the same request later."""
        return self.error in RETRYABLE_ERRORS


class PortTransitionRules:
    """
    Administrative status transitions.

    ASSIGNED is entered and left only through allocation, release and
    reassignment; DISABLED is left only through enabling.
    """

    ADMIN_TRANSITIONS: Dict[PortStatus, Tuple[PortStatus, ...]] = {
        PortStatus.AVAILABLE: (PortStatus.RESERVED, PortStatus.DISABLED),
        PortStatus.RESERVED: (PortStatus.AVAILABLE, PortStatus.DISABLED),
        PortStatus.DISABLED: (PortStatus.AVAILABLE,),
        PortStatus.ASSIGNED: (),
    }

    @classmethod
    def check(
        cls, current: str, target: PortStatus
    ) -> Optional[Tuple[AllocationErrorKind, str]]:
        """Return the error for a disallowed transition, or None when allowed."""
        current_status = PortStatus(current)
        if current_status == PortStatus.ASSIGNED:
            return (
                AllocationErrorKind.PORT_IN_USE,
                "Port is assigned to a subscription; release or reassign it first",
            )
        if target == PortStatus.ASSIGNED:
            return (
                AllocationErrorKind.INVALID_STATE_TRANSITION,
                "Ports are assigned through allocation, not a status change",
            )
        if target not in cls.ADMIN_TRANSITIONS[current_status]:
            return (
                AllocationErrorKind.INVALID_STATE_TRANSITION,
                f"Cannot change port status from {current_status.value} to {target.value}",
            )
        return None


class PortValidator:
    """Port data validation rules."""

    URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*$", re.IGNORECASE)

    def validate_port_creation(self, port_data: Dict[str, Any]) -> ValidationResult:
        """Validate port creation request."""
        errors = []

        instance_url = (port_data.get("instance_url") or "").strip()
        if not instance_url:
            errors.append(ValidationError(
                field="instance_url",
                code="INSTANCE_URL_REQUIRED",
                message="Missing required field: instance_url is required"
            ))
        else:
            errors.extend(self._validate_instance_url(instance_url))

        status = port_data.get("status", PortStatus.AVAILABLE.value)
        if status not in [s.value for s in CREATABLE_STATUSES]:
            errors.append(ValidationError(
                field="status",
                code="INVALID_STATUS",
                message="Invalid status. Must be one of: "
                + ", ".join(s.value for s in CREATABLE_STATUSES)
            ))

        return ValidationResult(is_valid=len(errors) == 0, errors=errors)

    def validate_port_update(self, update_data: Dict[str, Any]) -> ValidationResult:
        """Validate port descriptor update."""
        errors = []

        if "instance_url" in update_data:
            instance_url = (update_data["instance_url"] or "").strip()
            if not instance_url:
                errors.append(ValidationError(
                    field="instance_url",
                    code="INSTANCE_URL_REQUIRED",
                    message="instance_url cannot be empty"
                ))
            else:
                errors.extend(self._validate_instance_url(instance_url))

        return ValidationResult(is_valid=len(errors) == 0, errors=errors)

    def _validate_instance_url(self, instance_url: str) -> List[ValidationError]:
        if len(instance_url) > 500:
            return [ValidationError(
                field="instance_url",
                code="INSTANCE_URL_TOO_LONG",
                message="instance_url cannot exceed 500 characters"
            )]
        if not self.URL_PATTERN.match(instance_url):
            return [ValidationError(
                field="instance_url",
                code="INVALID_INSTANCE_URL",
                message="instance_url must be an http(s) URL"
            )]
        return []
