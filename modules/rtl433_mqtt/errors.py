"""Excepciones específicas de la salida MQTT.

Este módulo define las excepciones de la salida MQTT. Los errores de
configuración son fatales al arrancar; los errores de tópico y payload solo
descartan la publicación afectada.
"""

from typing import Optional


class MQTTOutputError(Exception):
    """Excepción base para errores de la salida MQTT.

    Todas las excepciones de este módulo heredan de esta clase.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        """Inicializa la excepción base.

        Args:
            message: Mensaje de error legible
            original_error: Excepción original que causó este error
        """
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        """Retorna representación string del error."""
        if self.original_error:
            return f"{self.message} (Causa: {self.original_error})"
        return self.message


class ConfigurationError(MQTTOutputError):
    """Error en el string de configuración de la salida MQTT.

    Se lanza cuando:
    - Una clave de configuración no es reconocida
    - Un valor está fuera de rango (puerto, QoS)
    - Se pide una opción TLS que este build no soporta
    """

    def __init__(self, message: str, key: Optional[str] = None, original_error: Optional[Exception] = None):
        """Inicializa error de configuración.

        Args:
            message: Descripción del problema
            key: Clave de configuración afectada
            original_error: Excepción original
        """
        super().__init__(message, original_error)
        self.key = key


class TemplateError(ConfigurationError):
    """Error en una plantilla de tópico.

    Se lanza cuando:
    - Un token no está cerrado con ']'
    - Un token contiene otro '['
    - La clave del token no es una de las conocidas
    """

    def __init__(self, template: str, reason: str, original_error: Optional[Exception] = None):
        """Inicializa error de plantilla.

        Args:
            template: Plantilla que falló
            reason: Razón específica
            original_error: Excepción original
        """
        message = f"Plantilla de tópico inválida \"{template}\": {reason}"
        super().__init__(message, None, original_error)
        self.template = template
        self.reason = reason


class TopicOverflowError(MQTTOutputError):
    """Error cuando el tópico excede la capacidad del buffer."""

    def __init__(self, topic: str, capacity: int):
        message = (
            f"Tópico excede {capacity} caracteres: "
            f"\"{topic[:64]}...\""
        )
        super().__init__(message)
        self.topic = topic
        self.capacity = capacity


class PayloadTooLargeError(MQTTOutputError):
    """Error cuando el evento serializado excede el presupuesto de payload."""

    def __init__(self, size: int, limit: int):
        message = f"Payload de {size} bytes excede el límite de {limit} bytes"
        super().__init__(message)
        self.size = size
        self.limit = limit


class TransportError(MQTTOutputError):
    """Error al crear o abrir el transporte MQTT.

    Solo se lanza al arrancar. Los fallos de conexión en tiempo de
    ejecución llegan como notificaciones, nunca como excepciones.
    """

    def __init__(self, address: str, original_error: Optional[Exception] = None):
        """Inicializa error de transporte.

        Args:
            address: Dirección host:puerto del broker
            original_error: Excepción original
        """
        message = f"No se pudo crear la conexión MQTT a {address}"
        super().__init__(message, original_error)
        self.address = address


class ConnectionManagerError(MQTTOutputError):
    """Error de uso del gestor de conexión (por ejemplo, arrancar dos veces)."""
    pass
