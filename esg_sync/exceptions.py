"""Custom exceptions for esg_sync."""

from __future__ import annotations


class EsgSyncError(Exception):
    """Base exception for all esg_sync errors."""

    pass


class ConfigurationError(EsgSyncError):
    """Raised when configuration is invalid or missing."""

    pass


class ConnectorNotFoundError(ConfigurationError):
    """Raised when a connector id does not resolve to a stored connector."""

    reason = "not found"

    def __init__(self, connector_id: int) -> None:
        super().__init__(f"Connector with ID {connector_id} not found")
        self.connector_id = connector_id


class ConnectorDisabledError(ConfigurationError):
    """Raised when a run or probe is requested for a disabled connector."""

    reason = "disabled"

    def __init__(self, connector_id: int) -> None:
        super().__init__(
            f"Connector {connector_id} is disabled. No outbound calls will be executed."
        )
        self.connector_id = connector_id


class ConnectorTypeMismatchError(ConfigurationError):
    """Raised when a connector's type is changed or used for the wrong source."""

    reason = "type mismatch"


class MissingCapabilityError(ConfigurationError):
    """Raised when a connector does not declare the capability an operation needs."""

    reason = "missing capability"

    def __init__(self, connector_id: int, capability: str) -> None:
        super().__init__(
            f"Connector {connector_id} does not declare the '{capability}' capability"
        )
        self.connector_id = connector_id
        self.capability = capability


class OverrideNotAuthorizedError(ConfigurationError):
    """Raised when an override approver is not permitted to overwrite manual data."""

    reason = "override not authorized"

    def __init__(self, approver: str) -> None:
        super().__init__(f"User '{approver}' is not authorized to approve overrides")
        self.approver = approver


class CredentialResolutionError(ConfigurationError):
    """Raised when a connector's secret reference cannot be resolved."""

    reason = "credential unavailable"


class SyncAlreadyRunningError(EsgSyncError):
    """Raised when a sync is requested while another run is active for the connector."""

    reason = "already running"

    def __init__(self, connector_id: int, correlation_id: str | None = None) -> None:
        message = f"A sync run is already running for connector {connector_id}"
        if correlation_id:
            message = f"{message} (correlation_id={correlation_id})"
        super().__init__(message)
        self.connector_id = connector_id
        self.correlation_id = correlation_id


class ConnectorAuthenticationError(EsgSyncError):
    """Raised when the source system rejects the connector's credentials."""

    reason = "authentication failed"

    def __init__(
        self,
        connector_id: int,
        message: str,
        *,
        correlation_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.connector_id = connector_id
        self.correlation_id = correlation_id
        self.status_code = status_code


class MappingError(EsgSyncError):
    """Raised when a single external record cannot be mapped to internal fields."""

    pass
