"""Configuración de la salida MQTT.

Parsea el string de configuración::

    [mqtt[s]://]host[:port][,key[=value]...]

y lo valida con Pydantic antes de crear la conexión. Cualquier error aquí es
fatal al arrancar.
"""

import logging
import re
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from modules.rtl433_mqtt.errors import ConfigurationError
from modules.rtl433_mqtt.formatting import make_client_id, short_hostname
from modules.rtl433_mqtt.tls import TLSOptions, apply_tls_param
from modules.rtl433_mqtt.topic_template import validate_template

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 1883
DEFAULT_TLS_PORT = 8883

BASE_TOPIC_PREFIX = "rtl_433"
PATH_DEVICES = "devices[/type][/model][/subtype][/channel][/id]"
PATH_EVENTS = "events"
PATH_STATES = "states"

_SCHEME = re.compile(r"^(mqtts?)://", re.IGNORECASE)
_TRUE_WORDS = ("true", "yes", "on", "enable")
_FALSE_WORDS = ("false", "no", "off", "disable")

USECHANNEL_REMOVED = (
    "\"usechannel=...\" has been removed. Use a topic format string:\n"
    "for \"afterid\"   use e.g. \"devices=rtl_433/[hostname]/devices[/type][/model][/subtype][/id][/channel]\"\n"
    "for \"beforeid\"  use e.g. \"devices=rtl_433/[hostname]/devices[/type][/model][/subtype][/channel][/id]\"\n"
    "for \"replaceid\" use e.g. \"devices=rtl_433/[hostname]/devices[/type][/model][/subtype][/channel]\"\n"
    "for \"no\"        use e.g. \"devices=rtl_433/[hostname]/devices[/type][/model][/subtype][/id]\""
)


class MQTTOutputOptions(BaseModel):
    """Modelo de configuración de la salida MQTT.

    Valida los parámetros de conexión y las plantillas de tópico.
    """

    host: str = Field(DEFAULT_HOST, min_length=1, description="Host del broker")
    port: int = Field(DEFAULT_PORT, description="Puerto del broker")
    tls: TLSOptions = Field(default_factory=TLSOptions)
    username: Optional[str] = None
    password: Optional[str] = None
    retain: bool = False
    qos: int = Field(0, description="Nivel QoS (0-2)")
    devices: Optional[str] = Field(None, description="Plantilla del tópico por dispositivo")
    events: Optional[str] = Field(None, description="Plantilla del tópico de eventos")
    states: Optional[str] = Field(None, description="Plantilla del tópico de estados")
    client_id: str = Field(..., min_length=1, max_length=255)
    hostname: str = Field(..., description="Nombre corto del host local")
    keepalive: int = 60

    @field_validator("port")
    @classmethod
    def validate_port(cls, v):
        """Validar puerto TCP."""
        if v <= 0 or v > 65535:
            raise ValueError(f"Puerto fuera de rango: {v}")
        return v

    @field_validator("qos")
    @classmethod
    def validate_qos(cls, v):
        """Validar nivel QoS."""
        if v not in (0, 1, 2):
            raise ValueError(f"QoS debe ser 0, 1 o 2 (recibido {v})")
        return v

    @field_validator("devices", "events", "states")
    @classmethod
    def validate_topic_template(cls, v):
        """Validar plantillas de tópico (tokens cerrados y claves conocidas)."""
        if v is None:
            return v
        return validate_template(v)

    @property
    def base_topic(self) -> str:
        """Tópico base por defecto."""
        return default_base_topic(self.hostname)

    @property
    def topics(self) -> List[Tuple[str, str]]:
        """Plantillas activas como pares (nombre, plantilla)."""
        return [
            (name, template)
            for name, template in (("devices", self.devices), ("events", self.events), ("states", self.states))
            if template
        ]


def default_base_topic(hostname: str) -> str:
    """Tópico base: rtl_433/<host>."""
    return f"{BASE_TOPIC_PREFIX}/{hostname}"


def topic_default(value: Optional[str], base: Optional[str], suffix: str) -> str:
    """Plantilla dada por el usuario, o base/suffix si no hay valor."""
    if value:
        return value
    if not base:
        return suffix
    return f"{base}/{suffix}"


def parse_bool(value: Optional[str], default: bool = True) -> bool:
    """Convierte un valor de opción a bool (clave sola = default)."""
    if value is None or value == "":
        return default
    lowered = value.lower()
    if lowered in _TRUE_WORDS:
        return True
    if lowered in _FALSE_WORDS:
        return False
    try:
        return int(value) != 0
    except ValueError:
        raise ConfigurationError(f"Valor booleano inválido \"{value}\"")


def parse_int(value: Optional[str], default: int) -> int:
    """Convierte un valor de opción a entero (clave sola = default)."""
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Valor numérico inválido \"{value}\"")


def split_scheme(param: str) -> Tuple[bool, str]:
    """Separa el esquema del resto del parámetro.

    Returns:
        (tls, resto)
    """
    match = _SCHEME.match(param)
    if match:
        return match.group(1).lower() == "mqtts", param[match.end():]
    if "://" in param:
        scheme = param.split("://", 1)[0]
        raise ConfigurationError(f"Esquema no soportado \"{scheme}\"", "scheme")
    return False, param


def split_host_port(param: str, default_port: int) -> Tuple[str, int, str]:
    """Separa host, puerto y opciones.

    Returns:
        (host, port, opciones)
    """
    hostport, _, opts = param.partition(",")
    hostport = hostport.strip()

    if hostport.startswith("["):
        host, sep, rest = hostport[1:].partition("]")
        if not sep:
            raise ConfigurationError(f"Dirección IPv6 sin cerrar \"{hostport}\"", "host")
        port_text = rest[1:] if rest.startswith(":") else ""
    else:
        host, _, port_text = hostport.partition(":")

    port = default_port
    if port_text:
        try:
            port = int(port_text)
        except ValueError:
            raise ConfigurationError(f"Puerto inválido \"{port_text}\"", "port")

    return host or DEFAULT_HOST, port, opts


def iter_kwargs(opts: str):
    """Itera pares (clave, valor) de 'k=v,k2,k3=v3'."""
    for item in opts.split(","):
        key, sep, value = item.partition("=")
        key = "".join(key.split()).lower()
        if not key:
            continue
        yield key, value.strip() if sep else None


def parse_output_options(
    param: Optional[str],
    dev_hint: Optional[str] = None,
    hostname: Optional[str] = None,
) -> MQTTOutputOptions:
    """Construye la configuración desde el string de la salida MQTT.

    Args:
        param: String de configuración
        dev_hint: Pista del dispositivo de entrada para el client id
        hostname: Nombre de host (por defecto el del sistema)

    Returns:
        Configuración validada

    Raises:
        ConfigurationError: Si alguna opción no es válida
    """
    hostname = short_hostname(hostname)
    base_topic = default_base_topic(hostname)

    use_tls, rest = split_scheme(param or "")
    tls = TLSOptions()
    if use_tls:
        tls.ca_cert = "*"

    host, port, opts = split_host_port(rest, DEFAULT_TLS_PORT if use_tls else DEFAULT_PORT)

    values = {
        "host": host,
        "port": port,
        "client_id": make_client_id(hostname, dev_hint),
        "hostname": hostname,
    }

    for key, value in iter_kwargs(opts):
        if key in ("u", "user"):
            values["username"] = value
        elif key in ("p", "pass"):
            values["password"] = value
        elif key in ("r", "retain"):
            values["retain"] = parse_bool(value, True)
        elif key in ("q", "qos"):
            values["qos"] = parse_int(value, 1)
        elif key in ("d", "devices"):
            values["devices"] = topic_default(value, base_topic, PATH_DEVICES)
        elif key in ("c", "usechannel"):
            raise ConfigurationError(USECHANNEL_REMOVED, key)
        elif key in ("e", "events"):
            values["events"] = topic_default(value, base_topic, PATH_EVENTS)
        elif key in ("s", "states"):
            values["states"] = topic_default(value, base_topic, PATH_STATES)
        elif apply_tls_param(tls, key, value):
            pass
        else:
            raise ConfigurationError(f"Opción inválida \"{key}\"", key)

    # Por defecto se usan los tres formatos
    if not any(values.get(name) for name in ("devices", "events", "states")):
        values["devices"] = topic_default(None, base_topic, PATH_DEVICES)
        values["events"] = topic_default(None, base_topic, PATH_EVENTS)
        values["states"] = topic_default(None, base_topic, PATH_STATES)

    values["tls"] = tls

    try:
        options = MQTTOutputOptions(**values)
    except ValidationError as e:
        raise ConfigurationError(f"Configuración MQTT inválida: {e.errors()[0]['msg']}", None, e) from e

    logger.info(
        f"Publicando datos MQTT a {options.host} puerto {options.port}"
        f"{' (TLS)' if options.tls.enabled else ''}"
    )
    for name, template in options.topics:
        logger.info(f"Publicando {name} al tópico MQTT \"{template}\"")
    if options.qos == 2:
        logger.warning("QoS 2 solo se reenvía como QoS 1: no hay garantía exactly-once")

    return options
