"""Transports delivering audit and consent records to a durable store."""

from .base import Transport
from .http import HttpTransport
from .postgres import PostgresTransport

__all__ = ["HttpTransport", "PostgresTransport", "Transport"]
