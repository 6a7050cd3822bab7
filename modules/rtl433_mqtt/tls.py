"""Opciones TLS de la salida MQTT."""

import logging
import ssl
from typing import Optional

from pydantic import BaseModel, Field

from modules.rtl433_mqtt.errors import ConfigurationError

logger = logging.getLogger(__name__)

# tls_ca_cert=* activa TLS sin verificar el certificado del broker
INSECURE_CA = "*"

TLS_KEYS = (
    "tls_cert",
    "tls_key",
    "tls_ca_cert",
    "tls_cipher_suites",
    "tls_server_name",
    "tls_psk_identity",
    "tls_psk_key",
)

# Opciones reconocidas que este build no soporta
UNSUPPORTED_TLS_KEYS = ("tls_server_name", "tls_psk_identity", "tls_psk_key")


class TLSOptions(BaseModel):
    """Opciones TLS de la conexión."""

    cert: Optional[str] = Field(None, description="Certificado cliente (PEM)")
    key: Optional[str] = Field(None, description="Clave privada del certificado cliente")
    ca_cert: Optional[str] = Field(None, description="CA del broker, o '*' para no verificar")
    cipher_suites: Optional[str] = Field(None, description="Lista de cifrados OpenSSL")

    @property
    def enabled(self) -> bool:
        """True si TLS está activado."""
        return self.ca_cert is not None

    @property
    def verify(self) -> bool:
        """True si se verifica el certificado del broker."""
        return self.enabled and self.ca_cert != INSECURE_CA

    def create_ssl_context(self) -> Optional[ssl.SSLContext]:
        """Crea el contexto SSL para el transporte.

        Returns:
            Contexto SSL, o None si TLS no está activado

        Raises:
            ConfigurationError: Si los certificados o cifrados no son válidos
        """
        if not self.enabled:
            return None

        try:
            context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
            if self.verify:
                context.load_verify_locations(cafile=self.ca_cert)
            else:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
                logger.warning("TLS activado sin verificación del certificado del broker")

            if self.cert:
                context.load_cert_chain(certfile=self.cert, keyfile=self.key)
            if self.cipher_suites:
                context.set_ciphers(self.cipher_suites)
        except (OSError, ssl.SSLError) as e:
            raise ConfigurationError("Configuración TLS inválida", "tls", e) from e

        return context


def apply_tls_param(tls: TLSOptions, key: str, value: Optional[str]) -> bool:
    """Aplica una opción tls_* al modelo.

    Args:
        tls: Opciones TLS a modificar
        key: Clave en minúsculas
        value: Valor de la opción

    Returns:
        True si la clave era una opción TLS

    Raises:
        ConfigurationError: Si la opción no tiene valor o no está soportada
    """
    if key not in TLS_KEYS:
        return False

    if key in UNSUPPORTED_TLS_KEYS:
        raise ConfigurationError(f"Opción \"{key}\" no disponible en este build", key)

    if not value:
        raise ConfigurationError(f"Opción \"{key}\" requiere un valor", key)

    setattr(tls, key[len("tls_"):], value)
    return True
