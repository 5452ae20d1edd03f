"""Tenant lifecycle, entitlement and marketplace billing core."""

__version__ = "1.0.0"
