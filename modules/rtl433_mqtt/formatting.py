"""Utilidades de formato para tópicos y payloads MQTT."""

import binascii
import re
import socket
from typing import Any, Optional

_TOPIC_UNSAFE = re.compile(r"[^A-Za-z0-9.\-]")

CLIENT_ID_PREFIX = "rtl_433"


def sanitize_topic(segment: str) -> str:
    """Limpia un segmento de tópico a [-.A-Za-z0-9].

    Cualquier otro carácter (espacios, '/', '+', '#', '$') se reemplaza
    por '_'.

    Args:
        segment: Texto a limpiar

    Returns:
        Segmento limpio
    """
    return _TOPIC_UNSAFE.sub("_", segment)


def format_double(value: float) -> str:
    """Formatea un float para publicar como texto.

    Usa notación científica para valores muy grandes o muy pequeños
    (incluye cero y negativos). En otro caso, punto fijo con 5 decimales
    sin ceros finales, dejando siempre un dígito tras el punto.

    Args:
        value: Valor a formatear

    Returns:
        Texto del valor
    """
    if value > 1e7 or value < 1e-4:
        return "%g" % value

    text = "%.5f" % value
    end = len(text)
    while text[end - 1] == "0" and text[end - 2] != ".":
        end -= 1
    return text[:end]


def format_int(value: int) -> str:
    """Formatea un entero en decimal."""
    return "%d" % value


def format_value(value: Any) -> str:
    """Formatea un valor escalar de evento como texto."""
    if isinstance(value, str):
        return value
    if isinstance(value, float):
        return format_double(value)
    if isinstance(value, int):
        return format_int(value)
    return str(value)


def short_hostname(hostname: Optional[str] = None) -> str:
    """Nombre de host sin la parte de dominio.

    Args:
        hostname: Nombre a recortar; por defecto el del sistema

    Returns:
        Nombre corto
    """
    if hostname is None:
        hostname = socket.gethostname()
    return hostname[:63].split(".", 1)[0]


def crc16(data: bytes, init: int = 0xFFFF) -> int:
    """CRC-16/CCITT (polinomio 0x1021, sin reflexión)."""
    return binascii.crc_hqx(data, init)


def make_client_id(hostname: str, dev_hint: Optional[str] = None) -> str:
    """Genera un client id corto y determinista.

    El mismo host con el mismo dispositivo de entrada reconecta siempre con
    el mismo identificador, también entre reinicios.

    Args:
        hostname: Nombre corto del host
        dev_hint: Pista del dispositivo de entrada (opcional)

    Returns:
        Client id de la forma 'rtl_433-xxxxyyyy'
    """
    host_crc = crc16(hostname.encode("utf-8"))
    devq_crc = crc16(dev_hint.encode("utf-8") if dev_hint else b"")
    return f"{CLIENT_ID_PREFIX}-{host_crc:04x}{devq_crc:04x}"
