"""Boundary to the platform's data layer (tenants, calls, clients, bookings)."""

from .base import DataLayer
from .http import HttpDataLayer
from .memory import InMemoryDataLayer

__all__ = ["DataLayer", "HttpDataLayer", "InMemoryDataLayer"]
