"""Cadence: flow execution engine for multi-step outreach campaigns."""

__version__ = "0.1.0"
