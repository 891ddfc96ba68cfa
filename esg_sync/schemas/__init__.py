"""Schemas package initialization."""
from .connector import (
    AuthType,
    ConnectorCreate,
    ConnectorStatus,
    ConnectorType,
    ConnectorUpdate,
    ConnectorView,
    RetryPolicy,
)
from .mapping import FieldMapping, FinanceMappingConfig, HRMappingConfig, parse_mapping_config
from .results import (
    IntegrationLogView,
    ProbeResult,
    RunDetails,
    RunSearchResult,
    RunState,
    RunStatistics,
    RunSummary,
    SyncRecordView,
    SyncRunView,
)

__all__ = [
    "AuthType",
    "ConnectorCreate",
    "ConnectorStatus",
    "ConnectorType",
    "ConnectorUpdate",
    "ConnectorView",
    "RetryPolicy",
    "FieldMapping",
    "FinanceMappingConfig",
    "HRMappingConfig",
    "parse_mapping_config",
    "IntegrationLogView",
    "ProbeResult",
    "RunDetails",
    "RunSearchResult",
    "RunState",
    "RunStatistics",
    "RunSummary",
    "SyncRecordView",
    "SyncRunView",
]
