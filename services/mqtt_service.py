"""MQTT service para publicar eventos de rtl_433 en un broker MQTT."""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional

from adapters.interfaces.base_service import BaseService, ServiceStatus
from adapters.interfaces.transport import MQTTTransport
from infrastructure.paho_transport import PahoTransport
from modules.rtl433_mqtt.connection import ConnectionManager
from modules.rtl433_mqtt.dispatcher import PublishDispatcher
from modules.rtl433_mqtt.events import TimerTick
from modules.rtl433_mqtt.options import MQTTOutputOptions, parse_output_options

logger = logging.getLogger(__name__)

# Intervalo del temporizador de reenvío (segundos)
SWEEP_INTERVAL = 0.5

TransportFactory = Callable[[MQTTOutputOptions], MQTTTransport]


def create_paho_transport(options: MQTTOutputOptions) -> MQTTTransport:
    """Crea el transporte paho-mqtt para unas opciones."""
    return PahoTransport(
        host=options.host,
        port=options.port,
        client_id=options.client_id,
        username=options.username,
        password=options.password,
        ssl_context=options.tls.create_ssl_context(),
        keepalive=options.keepalive,
    )


class MQTTService(BaseService):
    """Servicio de salida MQTT.

    Une el gestor de conexión, el despachador de tópicos y el temporizador
    de reenvío sobre el loop asyncio actual.
    """

    def __init__(self, options: MQTTOutputOptions, transport_factory: TransportFactory = create_paho_transport):
        """Inicializa el servicio MQTT.

        Args:
            options: Configuración validada de la salida
            transport_factory: Constructor del transporte MQTT
        """
        super().__init__()
        self.options = options
        self.transport = transport_factory(options)
        self.connection = ConnectionManager(
            self.transport,
            client_id=options.client_id,
            qos=options.qos,
            retain=options.retain,
        )
        self.dispatcher = PublishDispatcher(
            self.connection.publish,
            hostname=options.hostname,
            devices=options.devices,
            events=options.events,
            states=options.states,
        )
        self._sweep_task: Optional[asyncio.Task] = None
        logger.info(f"MQTTService inicializado: {self.transport.address} ({options.client_id})")

    @classmethod
    def from_param(
        cls,
        param: Optional[str],
        dev_hint: Optional[str] = None,
        transport_factory: TransportFactory = create_paho_transport,
    ) -> "MQTTService":
        """Crea el servicio desde el string de configuración.

        Raises:
            ConfigurationError: Si la configuración no es válida
        """
        return cls(parse_output_options(param, dev_hint), transport_factory)

    async def start(self) -> None:
        """Conecta al broker e inicia el temporizador de reenvío."""
        if self._status != ServiceStatus.STOPPED:
            logger.warning("Servicio ya iniciado")
            return

        self._status = ServiceStatus.STARTING
        try:
            self.connection.start()
        except Exception as e:
            self._status = ServiceStatus.ERROR
            self._error_message = str(e)
            logger.error(f"Error iniciando servicio MQTT: {e}")
            raise

        if self.options.qos > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

        self._status = ServiceStatus.RUNNING

    async def stop(self) -> None:
        """Cierra la conexión y cancela el temporizador."""
        if self._status == ServiceStatus.STOPPED:
            return

        self._status = ServiceStatus.STOPPING
        logger.info("Deteniendo servicio MQTT...")

        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        self.connection.shutdown()
        self._status = ServiceStatus.STOPPED
        logger.info("Servicio MQTT detenido")

    def publish_event(self, event: Mapping[str, Any]) -> int:
        """Publica un evento decodificado.

        Returns:
            Número de publicaciones realizadas
        """
        return self.dispatcher.publish_event(event)

    async def _sweep_loop(self) -> None:
        """Bucle del temporizador de reenvío."""
        while True:
            await asyncio.sleep(SWEEP_INTERVAL)
            self.connection.handle_event(TimerTick(time.monotonic()))

    async def health_check(self) -> Dict[str, Any]:
        """Verifica el estado de salud del servicio."""
        status = self.connection.status()
        status.update({
            "service_status": self._status.value,
            "published": self.dispatcher.published,
            "skipped": self.dispatcher.skipped,
            "topics": dict(self.options.topics),
        })
        return status

    def __repr__(self) -> str:
        return f"MQTTService(client_id={self.options.client_id}, status={self._status.value})"
