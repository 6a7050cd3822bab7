"""Tests para el transporte paho-mqtt.

Los primeros grupos sustituyen el cliente paho por un Mock; el loop asyncio
también, con call_soon ejecutando el callback en el acto. El último grupo usa
el cliente paho real contra un broker mínimo en 127.0.0.1.
"""

import asyncio
import socket
import struct
import time

import pytest
from unittest.mock import Mock, patch

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.reasoncodes import ReasonCode

from infrastructure.paho_transport import PahoTransport, format_address
from modules.rtl433_mqtt.connection import ConnectionManager
from modules.rtl433_mqtt.events import (
    EventSink,
    HandshakeResult,
    InboundPublish,
    PublishAcked,
    TimerTick,
    TransportClosed,
    TransportConnected,
)


@pytest.fixture
def loop():
    """Fixture con un loop simulado."""
    mock = Mock()
    mock.call_soon.side_effect = lambda callback, *args: callback(*args)
    mock.call_soon_threadsafe.side_effect = lambda callback, *args: callback(*args)
    mock.create_task.side_effect = lambda coro: coro.close() or Mock()
    return mock


@pytest.fixture
def client():
    """Fixture con el cliente paho simulado."""
    with patch("infrastructure.paho_transport.mqtt.Client") as client_cls:
        instance = client_cls.return_value
        instance.publish.return_value = Mock(mid=10, rc=mqtt.MQTT_ERR_SUCCESS)
        instance.disconnect.return_value = mqtt.MQTT_ERR_SUCCESS
        instance._send_publish.return_value = mqtt.MQTT_ERR_SUCCESS
        instance._out_messages = {}
        yield instance


@pytest.fixture
def events():
    """Fixture con la lista de notificaciones recibidas."""
    return []


@pytest.fixture
def transport(client, loop, events):
    """Fixture con un transporte abierto."""
    transport = PahoTransport("broker", 1883, "rtl_433-00000000", loop=loop)
    transport.open(EventSink(events.append))
    return transport


def make_sock(fd=5):
    sock = Mock()
    sock.fileno.return_value = fd
    return sock


def queued_message(mid, topic="t", payload=b"x"):
    """Mensaje tal como lo guarda paho en _out_messages."""
    message = mqtt.MQTTMessage(mid, topic.encode("utf-8"))
    message.payload = payload
    message.qos = 1
    message.retain = False
    return message


class TestPahoTransport:
    """Tests para PahoTransport."""

    def test_address(self, client, loop):
        """Test dirección host:puerto."""
        assert PahoTransport("broker", 1883, "x", loop=loop).address == "broker:1883"
        assert format_address("::1", 8883) == "[::1]:8883"

    def test_credentials(self, client, loop):
        """Test usuario y contraseña."""
        PahoTransport("broker", 1883, "x", username="u", password="p", loop=loop)

        client.username_pw_set.assert_called_once_with("u", "p")

    def test_handshake(self, transport, events):
        """Test CONNACK aceptado y rechazado."""
        transport._on_connect(None, None, None, ReasonCode(PacketTypes.CONNACK, "Success"), None)
        transport._on_connect(None, None, None, ReasonCode(PacketTypes.CONNACK, "Not authorized"), None)

        assert events[0] == HandshakeResult(0, "Success")
        assert isinstance(events[1], HandshakeResult)
        assert events[1].return_code != 0

    def test_publish_maps_message_id(self, transport, client, events):
        """Test que el PUBACK lleva nuestro message id."""
        assert transport.publish("t", b"x", 42, 1, False) is True
        client.publish.assert_called_once_with("t", b"x", qos=1, retain=False)

        transport._on_publish(None, None, 10, None, None)

        assert events[-1] == PublishAcked(42)

    def test_qos0_publish_not_acked(self, transport, events):
        """Test que QoS 0 no genera PublishAcked."""
        transport.publish("t", b"x", 7, 0, False)
        transport._on_publish(None, None, 10, None, None)

        assert not any(isinstance(e, PublishAcked) for e in events)

    def test_publish_failure(self, transport, client):
        """Test publicación no escrita."""
        client.publish.return_value = Mock(mid=11, rc=mqtt.MQTT_ERR_NO_CONN)

        assert transport.publish("t", b"x", 1, 1, False) is False

    def test_inbound_message(self, transport, events):
        """Test publicación entrante."""
        transport._on_message(None, None, Mock(topic="cmd", payload=b"1"))

        assert events[-1] == InboundPublish("cmd", b"1")

    def test_disconnect(self, transport, events):
        """Test cierre del transporte."""
        transport._on_disconnect(None, None, None, ReasonCode(PacketTypes.DISCONNECT, "Normal disconnection"), None)

        assert events[-1] == TransportClosed(0, "Normal disconnection")

    def test_detach(self, transport, events):
        """Test que tras desligar no se entregan notificaciones."""
        sink = transport.detach()

        transport._on_message(None, None, Mock(topic="cmd", payload=b"1"))

        assert isinstance(sink, EventSink)
        assert events == []

    def test_socket_registration(self, transport, client, loop):
        """Test registro del socket en el loop."""
        sock = make_sock()

        transport._on_socket_open(client, None, sock)
        transport._on_socket_register_write(client, None, sock)

        loop.add_reader.assert_called_once_with(5, client.loop_read)
        loop.add_writer.assert_called_once_with(5, client.loop_write)
        # connect y loop_misc
        assert loop.create_task.call_count == 2

        transport._on_socket_close(client, None, sock)

        loop.remove_reader.assert_called_once_with(5)

    def test_close(self, transport, client, loop):
        """Test cierre inmediato."""
        transport._on_socket_open(client, None, make_sock())

        transport.close()

        client.disconnect.assert_called_once()
        client.loop_write.assert_called_once()
        loop.remove_reader.assert_called_once_with(5)


class TestRetransmit:
    """Tests para el reenvío de publicaciones pendientes."""

    def test_resend_keeps_packet_id(self, transport, client):
        """Test que el reenvío usa el mismo packet id con DUP."""
        transport.publish("t", b"x", 42, 1, False)
        message = queued_message(10)
        client._out_messages[10] = message

        assert transport.publish("t", b"x", 42, 1, False, dup=True) is True

        client.publish.assert_called_once()
        client._send_publish.assert_called_once_with(10, b"t", b"x", 1, False, True, message.info, message.properties)
        assert message.dup is True
        assert len(client._out_messages) == 1

    def test_resend_ack_maps_message_id(self, transport, client, events):
        """Test que el PUBACK del reenvío confirma nuestro message id."""
        transport.publish("t", b"x", 42, 1, False)
        client._out_messages[10] = queued_message(10)
        transport.publish("t", b"x", 42, 1, False, dup=True)

        transport._on_publish(None, None, 10, None, None)

        assert events == [PublishAcked(42)]

    def test_resend_without_queued_message(self, transport, client):
        """Test que sin copia en paho se publica de nuevo."""
        transport.publish("t", b"x", 42, 1, False)
        client.publish.return_value = Mock(mid=11, rc=mqtt.MQTT_ERR_SUCCESS)

        assert transport.publish("t", b"x", 42, 1, False, dup=True) is True

        assert client.publish.call_count == 2
        client._send_publish.assert_not_called()
        assert transport._wire_ids == {11: 42}

    def test_resend_not_written(self, transport, client):
        """Test reenvío sin socket."""
        transport.publish("t", b"x", 42, 1, False)
        client._out_messages[10] = queued_message(10)
        client._send_publish.return_value = mqtt.MQTT_ERR_NO_CONN

        assert transport.publish("t", b"x", 42, 1, False, dup=True) is False

    def test_queue_full_not_mapped(self, transport, client, events):
        """Test que una publicación rechazada por paho no se registra."""
        client.publish.return_value = Mock(mid=10, rc=mqtt.MQTT_ERR_QUEUE_SIZE)

        assert transport.publish("t", b"x", 42, 1, False) is False
        transport._on_publish(None, None, 10, None, None)

        assert transport._wire_ids == {}
        assert events == []

    def test_disconnect_prunes_wire_ids(self, transport, client, events):
        """Test que al desconectar solo quedan los mids que paho conserva."""
        transport.publish("a", b"1", 42, 1, False)
        client.publish.return_value = Mock(mid=11, rc=mqtt.MQTT_ERR_SUCCESS)
        transport.publish("b", b"2", 43, 1, False)
        client._out_messages[11] = queued_message(11, "b", b"2")

        transport._on_disconnect(None, None, None, ReasonCode(PacketTypes.DISCONNECT, "Normal disconnection"), None)

        assert transport._wire_ids == {11: 43}
        assert transport._paho_mids == {43: 11}

        events.clear()
        transport._on_publish(None, None, 10, None, None)
        transport._on_publish(None, None, 11, None, None)

        assert events == [PublishAcked(43)]


class TestAsyncOpen:
    """Tests de apertura con el loop asyncio real."""

    @pytest.mark.asyncio
    async def test_open(self, client, events):
        """Test que connect se ejecuta fuera del loop."""
        transport = PahoTransport("broker", 1883, "x")

        transport.open(EventSink(events.append))
        assert events == []

        await transport._connect_task
        await asyncio.sleep(0)

        client.connect.assert_called_once_with("broker", 1883, 60)
        assert events == [TransportConnected(0)]

    @pytest.mark.asyncio
    async def test_open_failure(self, client, events):
        """Test fallo al abrir el socket."""
        client.connect.side_effect = ConnectionRefusedError(111, "Connection refused")
        transport = PahoTransport("broker", 1883, "x")

        transport.open(EventSink(events.append))
        await transport._connect_task
        await asyncio.sleep(0)

        assert [type(e) for e in events] == [TransportConnected, TransportClosed]
        assert events[0].status == 111

    @pytest.mark.asyncio
    async def test_close_while_connecting(self, client, events):
        """Test cierre antes de que connect termine."""
        transport = PahoTransport("broker", 1883, "x")
        transport.open(EventSink(events.append))

        transport.close()
        client.disconnect.assert_not_called()

        await transport._connect_task
        await asyncio.sleep(0)

        client.disconnect.assert_called_once()
        assert events == []

    @pytest.mark.asyncio
    async def test_socket_open_from_executor(self, client, events):
        """Test que el registro del socket vuelve al hilo del loop."""
        transport = PahoTransport("broker", 1883, "x")
        transport.open(EventSink(events.append))
        await transport._connect_task

        left, right = socket.socketpair()
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, transport._on_socket_open, client, None, left)
            await asyncio.sleep(0)

            assert transport._fd == left.fileno()

            transport.close()

            assert transport._fd is None
        finally:
            left.close()
            right.close()


class LocalBroker:
    """Broker MQTT 3.1.1 mínimo: acepta CONNECT y nunca envía PUBACK."""

    def __init__(self):
        self.publishes = []
        self.port = None
        self._server = None

    async def start(self):
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        self._server.close()
        await self._server.wait_closed()

    async def _read_packet(self, reader):
        header = (await reader.readexactly(1))[0]
        length, shift = 0, 0
        while True:
            byte = (await reader.readexactly(1))[0]
            length |= (byte & 0x7F) << shift
            shift += 7
            if not byte & 0x80:
                break
        body = await reader.readexactly(length) if length else b""
        return header, body

    async def _handle(self, reader, writer):
        try:
            while True:
                header, body = await self._read_packet(reader)
                kind = header & 0xF0
                if kind == 0x10:
                    writer.write(b"\x20\x02\x00\x00")
                elif kind == 0x30:
                    qos = (header >> 1) & 0x03
                    (topic_length,) = struct.unpack("!H", body[:2])
                    packet_id = None
                    if qos:
                        (packet_id,) = struct.unpack("!H", body[2 + topic_length:4 + topic_length])
                    self.publishes.append((packet_id, bool(header & 0x08)))
                elif kind == 0xC0:
                    writer.write(b"\xd0\x00")
                elif kind == 0xE0:
                    break
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionResetError):
            pass
        finally:
            writer.close()


async def wait_until(predicate, timeout=2.0):
    """Espera a que se cumpla una condición sin bloquear el loop."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            pytest.fail("Condición no cumplida a tiempo")
        await asyncio.sleep(0.01)


class TestLocalBroker:
    """Tests con el cliente paho real contra un broker local."""

    @pytest.mark.asyncio
    async def test_retransmit_reuses_packet_id(self):
        """Test que los reenvíos llevan el mismo packet id y DUP."""
        broker = LocalBroker()
        await broker.start()
        transport = PahoTransport("127.0.0.1", broker.port, "rtl_433-test")
        manager = ConnectionManager(transport, "rtl_433-test", qos=1)
        try:
            manager.start()
            await wait_until(lambda: manager.is_connected and transport.client.is_connected())

            message_id = manager.publish("rtl_433/test", b"21.5")
            await wait_until(lambda: len(broker.publishes) == 1)

            now = time.monotonic()
            manager.handle_event(TimerTick(now + 2))
            await wait_until(lambda: len(broker.publishes) == 2)
            manager.handle_event(TimerTick(now + 4))
            await wait_until(lambda: len(broker.publishes) == 3)

            packet_ids = {packet_id for packet_id, _ in broker.publishes}
            assert len(packet_ids) == 1
            assert None not in packet_ids
            assert [dup for _, dup in broker.publishes] == [False, True, True]
            assert len(transport.client._out_messages) == 1
            assert manager.tracker.get(message_id).retries == 2
        finally:
            manager.shutdown()
            await broker.stop()

    @pytest.mark.asyncio
    async def test_connect_refused(self):
        """Test que un puerto cerrado notifica el fallo sin bloquear."""
        unused = socket.socket()
        unused.bind(("127.0.0.1", 0))
        port = unused.getsockname()[1]
        unused.close()

        events = []
        transport = PahoTransport("127.0.0.1", port, "rtl_433-test")
        transport.open(EventSink(events.append))
        await wait_until(lambda: len(events) == 2)

        assert isinstance(events[0], TransportConnected)
        assert events[0].status != 0
        assert isinstance(events[1], TransportClosed)
