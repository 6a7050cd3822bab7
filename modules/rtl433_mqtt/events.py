"""Notificaciones del transporte MQTT hacia el gestor de conexión.

Cada notificación es un tipo propio; el gestor las consume con una única
función de transición de estados.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportConnected:
    """Resultado de abrir el socket: 0 es éxito, otro valor es el código de error."""
    status: int
    description: str = ""


@dataclass(frozen=True)
class HandshakeResult:
    """CONNACK del broker: 0 es 'accepted'."""
    return_code: int
    description: str = ""


@dataclass(frozen=True)
class PublishAcked:
    """PUBACK de una publicación QoS 1."""
    message_id: int


@dataclass(frozen=True)
class InboundPublish:
    """Publicación entrante (solo se registra)."""
    topic: str
    payload: bytes


@dataclass(frozen=True)
class TransportClosed:
    """El transporte se cerró."""
    reason: int = 0
    description: str = ""


@dataclass(frozen=True)
class TimerTick:
    """Tick del temporizador de reenvío."""
    now: float


ClientEvent = Union[
    TransportConnected,
    HandshakeResult,
    PublishAcked,
    InboundPublish,
    TransportClosed,
    TimerTick,
]


class EventSink:
    """Handle explícito entre un transporte y su gestor de conexión.

    El transporte entrega todas sus notificaciones a través del handle.
    Al desligarlo, las notificaciones posteriores se descartan sin tocar
    el estado del gestor.
    """

    def __init__(self, handler: Callable[[ClientEvent], None]):
        self._handler: Optional[Callable[[ClientEvent], None]] = handler

    @property
    def attached(self) -> bool:
        """True si el handle sigue ligado a un gestor."""
        return self._handler is not None

    def deliver(self, event: ClientEvent) -> bool:
        """Entrega una notificación.

        Returns:
            True si había un gestor ligado
        """
        handler = self._handler
        if handler is None:
            logger.debug(f"Notificación descartada tras el cierre: {event}")
            return False
        handler(event)
        return True

    def detach(self) -> None:
        """Desliga el handle de su gestor."""
        self._handler = None
