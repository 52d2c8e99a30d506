"""Interfaces to the external services the processor talks to.

The CRM client, the field validators, usage accounting and alert delivery
are provided by the deployment. A factory referenced by the
``QUEUE_COLLABORATORS`` setting (``package.module:function``) builds them.
"""

import importlib
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from .errors import ConfigurationError
from .models import ValidationType


class CrmClient(Protocol):
    async def fetch_context(self, subject_id: str, client_id: str) -> Optional[Dict[str, Any]]:
        """Contact properties for ``subject_id``, or None if the contact does not exist."""

    async def submit(self, fields: Mapping[str, str], subject_id: str, client_id: str) -> Dict[str, Any]:
        """Write ``fields`` back onto the contact.

        Raises SubmissionMismatchError when the CRM rejects some fields.
        """


# Receives the validator input built from the contact and the owning client id.
Validator = Callable[[Dict[str, Any], str], Awaitable[Dict[str, Any]]]


class UsageTracker(Protocol):
    async def increment_usage(self, client_id: str, validation_type: ValidationType) -> None:
        ...


class AlertSink(Protocol):
    async def send(self, alert: Any) -> None:
        ...


class MetricsSink(Protocol):
    async def record_run(self, result: Any, metrics: Any) -> None:
        """Receives the RunResult of each batch run and the rolling ProcessorMetrics."""


@dataclass
class Collaborators:
    crm: CrmClient
    validators: Dict[ValidationType, Validator] = field(default_factory=dict)
    usage: Optional[UsageTracker] = None
    alerts: Optional[AlertSink] = None
    metrics: Optional[MetricsSink] = None


def load_collaborators(path: str) -> Collaborators:
    """Import ``module:factory`` and call it to build the collaborators."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Collaborators path must look like 'module:factory', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import collaborators module {module_name!r}: {e}") from e

    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ConfigurationError(f"{module_name!r} has no callable {attr!r}")

    collaborators = factory()
    if not isinstance(collaborators, Collaborators):
        raise ConfigurationError(
            f"{path} returned {type(collaborators).__name__}, expected Collaborators"
        )
    return collaborators
