"""Finance source system client."""

from __future__ import annotations

from .base import SourceClient


class FinanceSourceClient(SourceClient):
    """Pulls spend, revenue, capex, opex and supplier data from a Finance system."""

    connector_type = "finance"
    fetch_path = "/financial-data"
    record_keys = ("transactions", "entries")
