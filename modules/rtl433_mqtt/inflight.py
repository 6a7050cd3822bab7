"""Seguimiento de publicaciones sin confirmar (inflight).

Guarda copias propias de cada publicación QoS >= 1 hasta recibir su PUBACK
y las reenvía, con el mismo message id, cuando vence su plazo.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

logger = logging.getLogger(__name__)

# Ventana de confirmación en segundos
ACK_TIMEOUT = 1.2

MIN_CAPACITY = 8


@dataclass
class InflightMessage:
    """Publicación pendiente de confirmación."""
    topic: str
    payload: bytes
    message_id: int
    deadline: float
    retries: int = 0


class InflightTracker:
    """Colección de publicaciones sin confirmar.

    Características:
    - Copias propias de tópico y payload al agregar
    - Borrado por intercambio con el último (el orden no importa)
    - Reenvío periódico sin límite de reintentos

    Solo se usa desde el loop de eventos, por eso no lleva locks.
    """

    def __init__(self, ack_timeout: float = ACK_TIMEOUT, clock: Callable[[], float] = time.monotonic):
        """Inicializa el tracker.

        Args:
            ack_timeout: Segundos de espera antes de reenviar
            clock: Reloj monotónico
        """
        self.ack_timeout = ack_timeout
        self._clock = clock
        self._messages: List[InflightMessage] = []
        self._capacity = 0

    @property
    def capacity(self) -> int:
        """Capacidad reservada (crece 8, luego x1.5)."""
        return self._capacity

    def add(self, topic: str, message_id: int, payload: bytes, now: Optional[float] = None) -> InflightMessage:
        """Agrega una publicación pendiente.

        Args:
            topic: Tópico de la publicación
            message_id: Message id asignado
            payload: Payload de la publicación
            now: Instante actual (por defecto, el reloj del tracker)

        Returns:
            La entrada creada
        """
        if len(self._messages) >= self._capacity:
            self._capacity = MIN_CAPACITY if self._capacity < MIN_CAPACITY else self._capacity + self._capacity // 2

        if now is None:
            now = self._clock()

        message = InflightMessage(
            topic=str(topic),
            payload=bytes(payload),
            message_id=message_id,
            deadline=now + self.ack_timeout,
        )
        self._messages.append(message)

        logger.debug(f"MQTT publicando: {message_id} ({len(self._messages)} inflight)")
        return message

    def remove(self, message_id: int) -> bool:
        """Quita la entrada con un message id.

        Returns:
            True si se encontró
        """
        for index, message in enumerate(self._messages):
            if message.message_id == message_id:
                last = self._messages.pop()
                if index < len(self._messages):
                    self._messages[index] = last
                logger.debug(f"MQTT confirmado: {message_id} ({len(self._messages)} inflight)")
                return True

        return False

    def sweep(self, now: float, send: Callable[[InflightMessage], None]) -> int:
        """Reenvía las entradas cuyo plazo venció.

        Args:
            now: Instante actual
            send: Función que escribe la publicación en la conexión

        Returns:
            Número de entradas reenviadas
        """
        resent = 0
        for message in self._messages:
            if message.deadline < now:
                logger.info(f"MQTT reenviando ({message.retries + 1}): {message.message_id}")
                send(message)
                message.deadline = now + self.ack_timeout
                message.retries += 1
                resent += 1

        return resent

    def clear(self) -> None:
        """Descarta todas las entradas."""
        self._messages.clear()

    def destroy(self) -> None:
        """Descarta todas las entradas y libera la capacidad."""
        self.clear()
        self._capacity = 0

    def get(self, message_id: int) -> Optional[InflightMessage]:
        """Entrada con un message id, si existe."""
        for message in self._messages:
            if message.message_id == message_id:
                return message
        return None

    @property
    def total_retries(self) -> int:
        """Suma de reintentos de las entradas actuales."""
        return sum(message.retries for message in self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[InflightMessage]:
        return iter(list(self._messages))

    def __contains__(self, message_id: object) -> bool:
        return any(message.message_id == message_id for message in self._messages)

    def __repr__(self) -> str:
        return f"InflightTracker(inflight={len(self._messages)}, capacity={self._capacity})"
