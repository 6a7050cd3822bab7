"""Plantillas de tópico MQTT.

Una plantilla mezcla texto literal con tokens entre corchetes::

    rtl_433/[hostname]/devices[/type][/model][/subtype][/channel][/id]

Cada token tiene la forma ``[<separador><clave>[:default]]``. El separador
(un carácter no alfanumérico opcional) solo se emite si el token resuelve a
algo. Las claves se resuelven contra los campos de primer nivel del evento,
salvo ``hostname`` que es el nombre corto del host local.
"""

import logging
from typing import Any, List, Mapping, NamedTuple, Optional, Union

from modules.rtl433_mqtt.errors import TemplateError, TopicOverflowError
from modules.rtl433_mqtt.formatting import format_double, sanitize_topic

logger = logging.getLogger(__name__)

MAX_TOPIC_LENGTH = 256

HOSTNAME_KEY = "hostname"
EVENT_KEYS = ("type", "model", "subtype", "channel", "id", "protocol")
TEMPLATE_KEYS = (HOSTNAME_KEY,) + EVENT_KEYS


class Literal(NamedTuple):
    """Texto literal de una plantilla."""
    text: str


class Token(NamedTuple):
    """Token ``[<sep><key>[:default]]`` de una plantilla."""
    key: str
    separator: str = ""
    default: Optional[str] = None


Segment = Union[Literal, Token]


class TopicBuffer:
    """Constructor de rutas de tópico con disciplina push/pop.

    Un único buffer se reutiliza durante toda una publicación. ``push``
    devuelve el punto de restauración y ``pop`` trunca hasta él, de modo que
    los hermanos nunca ven sufijos de un campo anterior.
    """

    def __init__(self, capacity: int = MAX_TOPIC_LENGTH):
        """Inicializa el buffer.

        Args:
            capacity: Longitud máxima del tópico en caracteres
        """
        if capacity <= 0:
            raise ValueError("La capacidad debe ser mayor a 0")

        self._capacity = capacity
        self._topic = ""

    @property
    def capacity(self) -> int:
        """Longitud máxima del tópico."""
        return self._capacity

    @property
    def topic(self) -> str:
        """Tópico actual."""
        return self._topic

    def mark(self) -> int:
        """Punto de restauración (cursor actual)."""
        return len(self._topic)

    def append(self, text: str) -> int:
        """Agrega texto al final del tópico.

        Args:
            text: Texto a agregar

        Returns:
            Nuevo cursor

        Raises:
            TopicOverflowError: Si se excede la capacidad (el buffer no cambia)
        """
        if len(self._topic) + len(text) > self._capacity:
            raise TopicOverflowError(self._topic + text, self._capacity)
        self._topic += text
        return len(self._topic)

    def push(self, key: str) -> int:
        """Agrega un segmento ``/key``.

        Args:
            key: Nombre del segmento

        Returns:
            Punto de restauración previo al push
        """
        mark = len(self._topic)
        self.append("/" + key)
        return mark

    def pop(self, mark: int) -> None:
        """Trunca el tópico hasta un punto de restauración."""
        if mark < 0 or mark > len(self._topic):
            raise ValueError(f"Cursor fuera de rango: {mark}")
        self._topic = self._topic[:mark]

    def clear(self) -> None:
        """Vacía el tópico."""
        self._topic = ""

    def __len__(self) -> int:
        return len(self._topic)

    def __str__(self) -> str:
        return self.topic

    def __repr__(self) -> str:
        return f"TopicBuffer(topic={self.topic!r}, capacity={self._capacity})"


def parse_template(template: str) -> List[Segment]:
    """Parsea una plantilla en literales y tokens.

    Args:
        template: Plantilla de tópico

    Returns:
        Lista de segmentos en orden

    Raises:
        TemplateError: Si hay un token sin cerrar o una clave desconocida
    """
    segments: List[Segment] = []
    pos = 0
    end = len(template)

    while pos < end:
        start = pos
        while pos < end and template[pos] != "[":
            pos += 1
        if pos > start:
            segments.append(Literal(template[start:pos]))
        if pos >= end:
            break
        pos += 1  # '['

        separator = ""
        if pos < end and not template[pos].isalnum() and template[pos] not in ":[]":
            separator = template[pos]
            pos += 1

        key_start = pos
        while pos < end and template[pos] not in ":][":
            pos += 1
        key = template[key_start:pos]

        default = None
        if pos < end and template[pos] == ":":
            pos += 1
            default_start = pos
            while pos < end and template[pos] not in "][":
                pos += 1
            default = template[default_start:pos]

        if pos >= end or template[pos] != "]":
            raise TemplateError(template, "token sin cerrar")
        pos += 1  # ']'

        if key not in TEMPLATE_KEYS:
            raise TemplateError(template, f"token desconocido \"{key}\"")

        segments.append(Token(key, separator, default))

    return segments


def validate_template(template: str) -> str:
    """Valida una plantilla al arrancar.

    Returns:
        La misma plantilla, si es válida
    """
    parse_template(template)
    return template


def resolve_token(key: str, event: Mapping[str, Any], hostname: str) -> Optional[str]:
    """Resuelve una clave de token a texto de tópico.

    Returns:
        Texto resuelto, o None si el evento no tiene un valor utilizable
    """
    if key == HOSTNAME_KEY:
        return hostname

    if key not in event:
        return None

    value = event[key]
    if isinstance(value, str):
        return sanitize_topic(value)
    if isinstance(value, float):
        return sanitize_topic(format_double(value))
    if isinstance(value, int):
        return "%d" % value

    logger.warning(f"No se puede agregar un valor de tipo {type(value).__name__} al tópico ({key})")
    return None


def render_topic(buffer: TopicBuffer, template: str, event: Mapping[str, Any], hostname: str) -> int:
    """Expande una plantilla en el buffer a partir del cursor actual.

    Los defaults se copian tal cual, sin volver a parsear ni limpiar.

    Args:
        buffer: Buffer de tópico compartido
        template: Plantilla de tópico
        event: Evento con los campos de primer nivel
        hostname: Nombre corto del host local

    Returns:
        Nuevo cursor del buffer
    """
    for segment in parse_template(template):
        if isinstance(segment, Literal):
            buffer.append(segment.text)
            continue

        text = resolve_token(segment.key, event, hostname)
        if text is None:
            text = segment.default
        if text is None:
            continue

        buffer.append(segment.separator + text)

    return buffer.mark()
