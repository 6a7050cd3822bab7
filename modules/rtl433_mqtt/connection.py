"""Gestor de la conexión MQTT.

Mantiene la única conexión saliente, reconecta al perder el transporte y
reutiliza el estado del tracker inflight entre conexiones.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from adapters.interfaces.transport import MQTTTransport
from modules.rtl433_mqtt.errors import ConnectionManagerError, TransportError
from modules.rtl433_mqtt.events import (
    ClientEvent,
    EventSink,
    HandshakeResult,
    InboundPublish,
    PublishAcked,
    TimerTick,
    TransportClosed,
    TransportConnected,
)
from modules.rtl433_mqtt.inflight import InflightMessage, InflightTracker

CONNACK_ACCEPTED = 0
MESSAGE_ID_MODULO = 1 << 16


class ConnectionState(Enum):
    """Estados de la conexión MQTT."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SHUTTING_DOWN = "shutting_down"


class ConnectionManager:
    """Gestor de conexión MQTT con reconexión inmediata.

    Características:
    - Reconexión inmediata e indefinida al cerrarse el transporte
    - Sin back-off ni límite de intentos
    - Errores de conexión registrados una sola vez por código
    - Publicaciones QoS >= 1 guardadas en el tracker hasta su PUBACK
    """

    def __init__(
        self,
        transport: MQTTTransport,
        client_id: str,
        qos: int = 0,
        retain: bool = False,
        tracker: Optional[InflightTracker] = None,
    ):
        """Inicializa el gestor.

        Args:
            transport: Transporte MQTT (reutilizado en cada reconexión)
            client_id: Client id enviado en el CONNECT
            qos: Nivel QoS de todas las publicaciones
            retain: Flag retain de todas las publicaciones
            tracker: Tracker inflight (se crea uno si no se pasa)
        """
        self.transport = transport
        self.client_id = client_id
        self.qos = qos
        self.retain = retain
        self.tracker = tracker if tracker is not None else InflightTracker()
        self.logger = logging.getLogger(__name__)

        self._state = ConnectionState.DISCONNECTED
        self._sink: Optional[EventSink] = None
        self._message_id = 0
        self._prev_status: Optional[int] = None
        self._connect_attempts = 0
        self._unknown_acks = 0

    @property
    def state(self) -> ConnectionState:
        """Estado actual de la conexión."""
        return self._state

    @property
    def is_connected(self) -> bool:
        """True si el transporte está conectado."""
        return self._state == ConnectionState.CONNECTED

    @property
    def message_id(self) -> int:
        """Último message id asignado."""
        return self._message_id

    def start(self) -> None:
        """Abre la conexión por primera vez.

        Raises:
            ConnectionManagerError: Si el gestor ya se inició o se cerró
            TransportError: Si el transporte no se puede crear
        """
        if self._sink is not None or self._state == ConnectionState.SHUTTING_DOWN:
            raise ConnectionManagerError(f"Gestor de conexión ya iniciado (estado {self._state.value})")

        self._sink = EventSink(self.handle_event)
        self.logger.info(f"Publicando datos MQTT a {self.transport.address}")
        self._connect()

    def _connect(self) -> None:
        self._state = ConnectionState.CONNECTING
        self._connect_attempts += 1
        try:
            self.transport.open(self._sink)
        except TransportError as e:
            if self._connect_attempts == 1:
                raise
            self.logger.error(f"MQTT connect ({self.transport.address}) falló: {e}")

    def handle_event(self, event: ClientEvent) -> None:
        """Función única de transición de estados.

        Args:
            event: Notificación del transporte o del temporizador
        """
        if self._state == ConnectionState.SHUTTING_DOWN:
            return

        if isinstance(event, TransportConnected):
            self._on_transport_connected(event)
        elif isinstance(event, HandshakeResult):
            self._on_handshake(event)
        elif isinstance(event, PublishAcked):
            self._on_publish_acked(event)
        elif isinstance(event, InboundPublish):
            self.logger.info(f"MQTT mensaje entrante {event.topic}: {event.payload!r}")
        elif isinstance(event, TransportClosed):
            self._on_transport_closed(event)
        elif isinstance(event, TimerTick):
            self._on_timer(event)
        else:
            self.logger.warning(f"Notificación MQTT desconocida: {event!r}")

    def _on_transport_connected(self, event: TransportConnected) -> None:
        if event.status == 0:
            self.logger.info("MQTT conectado...")
            self._state = ConnectionState.CONNECTED
        elif self._prev_status != event.status:
            detail = f": {event.description}" if event.description else ""
            self.logger.error(f"MQTT error de conexión ({event.status}){detail}")
        self._prev_status = event.status

    def _on_handshake(self, event: HandshakeResult) -> None:
        if event.return_code != CONNACK_ACCEPTED:
            detail = f" ({event.description})" if event.description else ""
            self.logger.error(f"MQTT error de conexión: {event.return_code}{detail}")
        else:
            self.logger.info("MQTT conexión establecida.")

    def _on_publish_acked(self, event: PublishAcked) -> None:
        if not self.tracker.remove(event.message_id):
            self._unknown_acks += 1
            self.logger.warning(f"MQTT confirmación de mensaje desconocido (msg_id: {event.message_id})")

    def _on_transport_closed(self, event: TransportClosed) -> None:
        if self._prev_status == 0:
            self.logger.warning("MQTT conexión perdida...")
        self._state = ConnectionState.DISCONNECTED
        self._connect()

    def _on_timer(self, event: TimerTick) -> None:
        if not self.is_connected:
            return
        self.tracker.sweep(event.now, self._resend)

    def _resend(self, message: InflightMessage) -> None:
        self.transport.publish(message.topic, message.payload, message.message_id, self.qos, self.retain, dup=True)

    def _next_message_id(self) -> int:
        # 0 no es un packet id válido en MQTT
        self._message_id = (self._message_id + 1) % MESSAGE_ID_MODULO or 1
        return self._message_id

    def publish(self, topic: str, payload: bytes) -> int:
        """Publica un mensaje.

        Si no hay conexión la escritura se omite; con QoS >= 1 la entrada
        queda en el tracker y el reenvío periódico la entrega al reconectar.

        Args:
            topic: Tópico MQTT
            payload: Payload del mensaje

        Returns:
            Message id asignado
        """
        message_id = self._next_message_id()
        if self.qos > 0:
            self.tracker.add(topic, message_id, payload)

        if self.is_connected:
            self.transport.publish(topic, payload, message_id, self.qos, self.retain)

        return message_id

    def shutdown(self) -> None:
        """Cierra la conexión de forma síncrona.

        Primero desliga el handle de eventos, luego cierra el transporte:
        cualquier notificación posterior se descarta.
        """
        if self._state == ConnectionState.SHUTTING_DOWN:
            return

        self._state = ConnectionState.SHUTTING_DOWN
        if self._sink is not None:
            self._sink.detach()
        self.transport.detach()
        self.transport.close()
        self.tracker.destroy()
        self.logger.info("MQTT conexión cerrada")

    def status(self) -> Dict[str, Any]:
        """Obtiene el estado actual del gestor.

        Returns:
            Diccionario con métricas de estado
        """
        return {
            "connection_status": self._state.value,
            "connected": self.is_connected,
            "client_id": self.client_id,
            "address": self.transport.address,
            "qos": self.qos,
            "retain": self.retain,
            "message_id": self._message_id,
            "connect_attempts": self._connect_attempts,
            "inflight": len(self.tracker),
            "inflight_retries": self.tracker.total_retries,
            "unknown_acks": self._unknown_acks,
        }

    def __repr__(self) -> str:
        return f"ConnectionManager(client_id={self.client_id}, status={self._state.value})"
