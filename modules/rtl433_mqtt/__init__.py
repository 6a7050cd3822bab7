"""rtl_433 MQTT Output

Módulo para publicar eventos decodificados de sensores a un broker MQTT,
con tópicos por plantilla, reconexión automática y reenvío QoS 1.
"""

from modules.rtl433_mqtt.connection import ConnectionManager, ConnectionState
from modules.rtl433_mqtt.dispatcher import PublishDispatcher
from modules.rtl433_mqtt.errors import ConfigurationError, MQTTOutputError, TemplateError
from modules.rtl433_mqtt.inflight import InflightMessage, InflightTracker
from modules.rtl433_mqtt.options import MQTTOutputOptions, parse_output_options
from modules.rtl433_mqtt.topic_template import TopicBuffer, render_topic

__version__ = "1.0.0"
__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "PublishDispatcher",
    "ConfigurationError",
    "MQTTOutputError",
    "TemplateError",
    "InflightMessage",
    "InflightTracker",
    "MQTTOutputOptions",
    "parse_output_options",
    "TopicBuffer",
    "render_topic",
]
