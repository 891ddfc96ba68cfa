"""HR source system client."""

from __future__ import annotations

from .base import SourceClient


class HRSourceClient(SourceClient):
    """Pulls employees, departments and org units from an HR system."""

    connector_type = "hr"
    fetch_path = "/employees"
    record_keys = ("employees",)
