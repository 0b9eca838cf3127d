"""Provider interface.

A provider is the remote API the engine reconciles against. Calls are
blocking; the executor runs them in worker threads. Providers signal
retryable failures with TransientProviderError and vanished objects with
ResourceNotFoundError; everything else is a ProviderError.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@dataclass
class ResourceSchema:
    """What the engine needs to know about one resource type."""

    type: str
    # Changing any of these forces destroy + create
    force_new: set[str] = field(default_factory=set)
    # Attributes the provider fills in on create, name -> value template
    computed: dict[str, Any] = field(default_factory=dict)
    id_prefix: str = ""

    def is_computed(self, attribute: str) -> bool:
        return attribute == "id" or attribute in self.computed


@dataclass
class DataSourceSchema:
    type: str
    # Attributes returned by a read, merged over the query arguments
    result: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class Provider(Protocol):
    """Remote API a resource type is reconciled against."""

    name: str

    def schema(self, resource_type: str) -> ResourceSchema:
        """Schema of a managed resource type."""
        ...

    def create(self, resource_type: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Create an object; returns its full attributes including ``id``."""
        ...

    def read(self, resource_type: str, object_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        """Current attributes, or ResourceNotFoundError."""
        ...

    def update(
        self,
        resource_type: str,
        object_id: str,
        old: dict[str, Any],
        new: dict[str, Any],
    ) -> dict[str, Any]:
        """Update mutable attributes in place; returns the new full attributes."""
        ...

    def delete(self, resource_type: str, object_id: str, attributes: dict[str, Any]) -> None:
        """Delete an object. Deleting an object that is already gone succeeds."""
        ...

    def read_data(self, data_type: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Evaluate a data source."""
        ...
