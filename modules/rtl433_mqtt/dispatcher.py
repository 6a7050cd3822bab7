"""Despacho de eventos decodificados a tópicos MQTT.

Un evento sin ``model`` es una actualización de estado y va solo al tópico
de estados. El resto va al tópico de eventos (JSON completo) y se desglosa
campo a campo bajo el tópico del dispositivo::

    <devices>/battery_ok      -> "1"
    <devices>/temperature_C   -> "21.5"
    <devices>/codes/0/data    -> "7e03"
"""

import json
import logging
from typing import Any, Callable, Mapping, Optional

from modules.rtl433_mqtt.errors import PayloadTooLargeError, TopicOverflowError
from modules.rtl433_mqtt.formatting import format_value
from modules.rtl433_mqtt.topic_template import TopicBuffer, render_topic

logger = logging.getLogger(__name__)

# Los mensajes de estado necesitan un presupuesto grande
STATE_PAYLOAD_LIMIT = 20000
# Los eventos más grandes rondan los 500 bytes
EVENT_PAYLOAD_LIMIT = 2048

# Ya codificados en el tópico del dispositivo
SKIPPED_KEYS = ("type", "model", "subtype")

Publisher = Callable[[str, bytes], Any]
Serializer = Callable[[Mapping[str, Any]], str]


def serialize_event(event: Mapping[str, Any]) -> str:
    """Serializa un evento completo a JSON."""
    return json.dumps(event, ensure_ascii=False, allow_nan=False)


class PublishDispatcher:
    """Recorre un evento y publica cada tópico configurado.

    Usa un único TopicBuffer; tras cada llamada el buffer vuelve a su
    longitud previa.
    """

    def __init__(
        self,
        publish: Publisher,
        hostname: str,
        devices: Optional[str] = None,
        events: Optional[str] = None,
        states: Optional[str] = None,
        serializer: Serializer = serialize_event,
        buffer: Optional[TopicBuffer] = None,
    ):
        """Inicializa el despachador.

        Args:
            publish: Función publish(topic, payload) del gestor de conexión
            hostname: Nombre corto del host local
            devices: Plantilla del tópico por dispositivo
            events: Plantilla del tópico de eventos
            states: Plantilla del tópico de estados
            serializer: Serializador JSON de eventos completos
            buffer: Buffer de tópico compartido
        """
        self._publish = publish
        self.hostname = hostname
        self.devices = devices
        self.events = events
        self.states = states
        self.serializer = serializer
        self.buffer = buffer if buffer is not None else TopicBuffer()
        self.published = 0
        self.skipped = 0

    def publish_event(self, event: Mapping[str, Any]) -> int:
        """Publica un evento en todos los tópicos que le corresponden.

        Args:
            event: Evento decodificado

        Returns:
            Número de publicaciones realizadas
        """
        before = self.published
        mark = self.buffer.mark()
        try:
            if "model" not in event:
                if self.states:
                    self._publish_json(self.states, event, STATE_PAYLOAD_LIMIT)
                return self.published - before

            if self.events:
                self._publish_json(self.events, event, EVENT_PAYLOAD_LIMIT)

            if self.devices:
                self._publish_devices(event)
        finally:
            self.buffer.pop(mark)

        return self.published - before

    def _publish_json(self, template: str, event: Mapping[str, Any], limit: int) -> None:
        mark = self.buffer.mark()
        try:
            payload = self.serializer(event).encode("utf-8")
            if len(payload) > limit:
                raise PayloadTooLargeError(len(payload), limit)
            render_topic(self.buffer, template, event, self.hostname)
            self._send(payload)
        except ValueError as e:
            # NaN e Infinity no son JSON válido
            self.skipped += 1
            logger.warning(f"Publicación MQTT omitida, evento no serializable: {e}")
        except (PayloadTooLargeError, TopicOverflowError) as e:
            self.skipped += 1
            logger.warning(f"Publicación MQTT omitida: {e}")
        finally:
            self.buffer.pop(mark)

    def _publish_devices(self, event: Mapping[str, Any]) -> None:
        mark = self.buffer.mark()
        try:
            render_topic(self.buffer, self.devices, event, self.hostname)
        except TopicOverflowError as e:
            self.skipped += 1
            logger.warning(f"Tópico de dispositivo omitido: {e}")
            self.buffer.pop(mark)
            return

        try:
            self._publish_fields(event)
        finally:
            self.buffer.pop(mark)

    def _publish_fields(self, data: Mapping[str, Any]) -> None:
        for key, value in data.items():
            if key in SKIPPED_KEYS:
                continue
            self._publish_child(key, value)

    def _publish_child(self, segment: str, value: Any) -> None:
        mark = self.buffer.mark()
        try:
            self.buffer.push(segment)
            self._publish_value(value)
        except TopicOverflowError as e:
            self.skipped += 1
            logger.warning(f"Campo MQTT omitido: {e}")
        finally:
            self.buffer.pop(mark)

    def _publish_value(self, value: Any) -> None:
        if isinstance(value, Mapping):
            self._publish_fields(value)
        elif isinstance(value, (list, tuple)):
            for index, element in enumerate(value):
                self._publish_child(str(index), element)
        else:
            self._send(format_value(value).encode("utf-8"))

    def _send(self, payload: bytes) -> None:
        self._publish(self.buffer.topic, payload)
        self.published += 1
