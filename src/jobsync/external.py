"""External system contract and error taxonomy.

The automation server has no notion of declarative state; the engine only
needs four primitives keyed by a stable external name. Errors are classified
so the reconciler can tell benign absence from transient outages and from
failures that need an operator.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from .models import ManagedResource


class ExternalError(Exception):
    """Base class for automation server failures.

    Attributes:
        status_code: HTTP status if the failure came from a response.
        permanent: True when retrying cannot succeed without intervention.
    """

    permanent: bool = False

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ExternalNotFoundError(ExternalError):
    """The external entity does not exist."""

    pass


class ExternalTransientError(ExternalError):
    """Network failure, timeout, or server-side (5xx) error."""

    pass


class ExternalConflictError(ExternalError):
    """Name collision with an unrelated external entity."""

    permanent = True


class ExternalAuthError(ExternalError):
    """Authentication or authorization failure."""

    permanent = True


class InvalidSpecError(ExternalError):
    """The spec payload cannot be rendered into an external configuration."""

    permanent = True


@dataclass(frozen=True)
class ExternalEntity:
    """The automation server's counterpart of a managed resource."""

    name: str
    config: str | None = None


def derive_external_name(namespace: str, name: str) -> str:
    """Deterministic external name for a managed resource identity.

    Namespace maps to a folder, name to the item inside it.
    """
    return f"{namespace}/{name}"


def external_name_for(obj: ManagedResource) -> str:
    return derive_external_name(obj.namespace, obj.name)


class ExternalSystemClient(Protocol):
    """Create/get/update/delete primitives against the automation server."""

    def get(self, name: str) -> ExternalEntity | None:
        """Return the entity, or None if it does not exist.

        Raises:
            ExternalError: On any failure other than absence.
        """
        ...

    def create(self, name: str, spec: dict[str, Any]) -> None:
        ...

    def update(self, name: str, spec: dict[str, Any]) -> None:
        ...

    def delete(self, name: str) -> None:
        """Delete the entity.

        Raises:
            ExternalNotFoundError: If the entity does not exist.
        """
        ...
