"""Prepaid SIM status lookups against the legacy CRM web front end."""

__version__ = "0.3.0"
