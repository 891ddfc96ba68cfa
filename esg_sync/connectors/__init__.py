"""Source client registry keyed by connector type."""

import httpx

from ..exceptions import ConnectorTypeMismatchError
from ..schemas.connector import ConnectorView
from ..sync.credentials import Credential
from .base import CallResult, OutcomeKind, SourceClient, classify_status
from .finance import FinanceSourceClient
from .hr import HRSourceClient

# Source client registry - register new connector types here
_CLIENT_REGISTRY: dict[str, type[SourceClient]] = {}


def register_source_client(connector_type: str, client_class: type[SourceClient]) -> None:
    """
    Register a source client class.

    Args:
        connector_type: Connector type handled by the client
        client_class: Client class to register
    """
    _CLIENT_REGISTRY[connector_type] = client_class


def get_source_client(connector_type: str) -> type[SourceClient]:
    """
    Get a source client class by connector type.

    Raises:
        ConnectorTypeMismatchError: If no client handles the connector type
    """
    if connector_type not in _CLIENT_REGISTRY:
        available = ", ".join(sorted(list_source_clients())) or "none"
        raise ConnectorTypeMismatchError(
            f"No source client for connector type '{connector_type}'. Available: {available}."
        )
    return _CLIENT_REGISTRY[connector_type]


def list_source_clients() -> list[str]:
    """Return list of registered connector types."""
    return list(_CLIENT_REGISTRY.keys())


def build_source_client(
    connector: ConnectorView,
    credential: Credential | None,
    *,
    timeout: float = 30.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SourceClient:
    """Instantiate the source client registered for the connector's type."""
    client_class = get_source_client(connector.connector_type.value)
    return client_class(connector, credential, timeout=timeout, transport=transport)


register_source_client("hr", HRSourceClient)
register_source_client("finance", FinanceSourceClient)

__all__ = [
    "CallResult",
    "OutcomeKind",
    "SourceClient",
    "build_source_client",
    "classify_status",
    "get_source_client",
    "list_source_clients",
    "register_source_client",
]
