"""Base service interfaces for the rtl_433 MQTT output.

Define interfaces comunes para evitar dependencias circulares.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from enum import Enum


class ServiceStatus(Enum):
    """Estados posibles de un servicio."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class BaseService(ABC):
    """Interfaz base para todos los servicios."""

    def __init__(self):
        self._status = ServiceStatus.STOPPED
        self._error_message: Optional[str] = None

    @property
    def status(self) -> ServiceStatus:
        """Estado actual del servicio."""
        return self._status

    @property
    def error_message(self) -> Optional[str]:
        """Mensaje de error si el servicio está en estado ERROR."""
        return self._error_message

    @property
    def is_running(self) -> bool:
        """True si el servicio está ejecutándose."""
        return self._status == ServiceStatus.RUNNING

    @abstractmethod
    async def start(self) -> None:
        """Inicia el servicio."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Detiene el servicio."""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Verifica el estado de salud del servicio."""
        pass
