"""Interfaces package for adapters.

Define interfaces para servicios y transportes."""

from .base_service import BaseService, ServiceStatus
from .transport import MQTTTransport

__all__ = [
    "BaseService",
    "ServiceStatus",
    "MQTTTransport",
]
