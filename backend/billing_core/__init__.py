"""Billing & Entitlement Core service."""

__version__ = "0.1.0"
