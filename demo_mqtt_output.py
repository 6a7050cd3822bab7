#!/usr/bin/env python3
"""Demo de la salida MQTT de rtl_433

Lee eventos JSON (uno por línea) desde stdin y los publica en un broker
MQTT con reconexión automática.

Ejemplo:
    rtl_433 -F json | python demo_mqtt_output.py "mqtt://localhost:1883,retain=0,qos=1"
"""

import argparse
import asyncio
import json
import logging
import sys

from modules.rtl433_mqtt import ConfigurationError
from modules.rtl433_mqtt.errors import TransportError
from services.mqtt_service import MQTTService

# Configurar logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def read_events(service: MQTTService):
    """Publica cada línea JSON de stdin hasta EOF."""
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break

        line = line.strip()
        if not line:
            continue

        try:
            event = json.loads(line)
        except json.JSONDecodeError as e:
            logger.warning(f"Línea JSON inválida ignorada: {e}")
            continue

        if not isinstance(event, dict):
            logger.warning("Se esperaba un objeto JSON por línea")
            continue

        count = service.publish_event(event)
        logger.debug(f"Evento publicado en {count} tópicos")


async def main(param: str, dev_hint: str = None, linger: float = 2.0) -> int:
    """Función principal del demo."""
    try:
        service = MQTTService.from_param(param, dev_hint)
    except (ConfigurationError, TransportError) as e:
        logger.error(str(e))
        return 1

    await service.start()
    try:
        await read_events(service)
        # Dar tiempo a los PUBACK pendientes antes de cerrar
        await asyncio.sleep(linger)
        logger.info(f"Estado final: {await service.health_check()}")
    finally:
        await service.stop()

    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Publica eventos JSON de stdin en MQTT")
    parser.add_argument("param", nargs="?", default="", help="[mqtt[s]://]host[:port][,key=value...]")
    parser.add_argument("--dev-hint", default=None, help="Dispositivo de entrada (para el client id)")
    parser.add_argument("--linger", type=float, default=2.0, help="Segundos de espera antes de cerrar")
    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(main(args.param, args.dev_hint, args.linger)))
    except KeyboardInterrupt:
        print("\nDemo interrumpido.")
