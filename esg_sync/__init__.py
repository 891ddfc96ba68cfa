"""ESG connector synchronization pipeline for HR and Finance source systems."""

__version__ = "0.1.0"
