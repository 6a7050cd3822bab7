"""paho-mqtt transport driven by an asyncio event loop.

The paho client never runs its own network thread: its socket is registered
with the loop (``add_reader`` / ``add_writer``) and keepalive runs from a
small ``loop_misc`` task. Every paho callback is turned into a typed client
event and delivered through the ``EventSink`` on the next loop iteration, so
no notification re-enters the connection manager.

``connect()`` resolves the host and opens the TCP socket synchronously, so it
runs in the default executor. The socket callbacks it fires from that thread
are handed back to the loop with ``call_soon_threadsafe``.
"""

import asyncio
import logging
import ssl
import threading
from typing import Dict, Optional

import paho.mqtt.client as mqtt

from adapters.interfaces.transport import MQTTTransport
from modules.rtl433_mqtt.errors import TransportError
from modules.rtl433_mqtt.events import (
    ClientEvent,
    EventSink,
    HandshakeResult,
    InboundPublish,
    PublishAcked,
    TransportClosed,
    TransportConnected,
)


logger = logging.getLogger(__name__)

MISC_LOOP_INTERVAL = 1.0

# paho keeps the message queued for these results
_QUEUED_RESULTS = (mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN)


def format_address(host: str, port: int) -> str:
    """host:port, with IPv6 hosts in brackets."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


class PahoTransport(MQTTTransport):
    """MQTT transport on top of paho-mqtt.

    QoS >= 1 publishes are sent through paho once. A retransmit (``dup=True``)
    re-sends the message paho still holds, under its original packet id and
    with the DUP flag, so paho never queues a second copy.
    """

    def __init__(
        self,
        host: str,
        port: int,
        client_id: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
        keepalive: int = 60,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.host = host
        self.port = port
        self.keepalive = keepalive
        self._loop = loop
        self._loop_thread: Optional[int] = None
        self._sink: Optional[EventSink] = None
        self._fd: Optional[int] = None
        self._misc_task: Optional[asyncio.Task] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._closed = False
        # paho mid -> our message id, for QoS >= 1 publishes awaiting PUBACK
        self._wire_ids: Dict[int, int] = {}
        # our message id -> paho mid
        self._paho_mids: Dict[int, int] = {}

        try:
            self._client = mqtt.Client(
                mqtt.CallbackAPIVersion.VERSION2,
                client_id=client_id,
                clean_session=True,
                protocol=mqtt.MQTTv311,
            )
            if username is not None:
                self._client.username_pw_set(username, password)
            if ssl_context is not None:
                self._client.tls_set_context(ssl_context)
        except (ValueError, ssl.SSLError) as e:
            raise TransportError(self.address, e) from e

        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_publish = self._on_publish
        self._client.on_message = self._on_message
        self._client.on_socket_open = self._on_socket_open
        self._client.on_socket_close = self._on_socket_close
        self._client.on_socket_register_write = self._on_socket_register_write
        self._client.on_socket_unregister_write = self._on_socket_unregister_write

    @property
    def address(self) -> str:
        return format_address(self.host, self.port)

    @property
    def client(self) -> mqtt.Client:
        """Underlying paho client."""
        return self._client

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _emit(self, event: ClientEvent) -> None:
        sink = self._sink
        if sink is None:
            return
        self.loop.call_soon(sink.deliver, event)

    def _in_loop(self, callback, *args) -> None:
        """Run a callback on the loop thread, now if already there."""
        if threading.get_ident() == self._loop_thread:
            callback(*args)
        else:
            self.loop.call_soon_threadsafe(callback, *args)

    def open(self, sink: EventSink) -> None:
        self._sink = sink
        self._loop_thread = threading.get_ident()
        self._connect_task = self.loop.create_task(self._connect())

    async def _connect(self) -> None:
        try:
            await self.loop.run_in_executor(None, self._client.connect, self.host, self.port, self.keepalive)
        except (OSError, ValueError) as e:
            status = getattr(e, "errno", None) or -1
            self._emit(TransportConnected(status, str(e)))
            self._emit(TransportClosed(status, str(e)))
            return

        if self._closed:
            self._disconnect()
            return

        self._emit(TransportConnected(0))

    def publish(self, topic: str, payload: bytes, message_id: int, qos: int, retain: bool, dup: bool = False) -> bool:
        if dup and qos > 0:
            message = self._queued_message(message_id)
            if message is not None:
                return self._resend(message)

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if qos > 0 and info.rc in _QUEUED_RESULTS:
            self._forget(message_id)
            self._wire_ids[info.mid] = message_id
            self._paho_mids[message_id] = info.mid
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"MQTT publish {message_id} not written: {mqtt.error_string(info.rc)}")
            return False
        return True

    def _queued_message(self, message_id: int) -> Optional[mqtt.MQTTMessage]:
        mid = self._paho_mids.get(message_id)
        if mid is None:
            return None
        return self._client._out_messages.get(mid)

    def _resend(self, message: mqtt.MQTTMessage) -> bool:
        # Same packet id, DUP set; paho keeps its single queued copy
        message.dup = True
        rc = self._client._send_publish(
            message.mid,
            message.topic.encode("utf-8"),
            message.payload,
            message.qos,
            message.retain,
            True,
            message.info,
            message.properties,
        )
        if rc != mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"MQTT resend of packet {message.mid} not written: {mqtt.error_string(rc)}")
            return False
        return True

    def _forget(self, message_id: int) -> None:
        mid = self._paho_mids.pop(message_id, None)
        if mid is not None:
            self._wire_ids.pop(mid, None)

    def _prune_wire_ids(self) -> None:
        queued = self._client._out_messages
        self._wire_ids = {mid: message_id for mid, message_id in self._wire_ids.items() if mid in queued}
        self._paho_mids = {message_id: mid for mid, message_id in self._wire_ids.items()}

    def detach(self) -> Optional[EventSink]:
        sink, self._sink = self._sink, None
        return sink

    def close(self) -> None:
        self._closed = True
        if self._connect_task is not None and not self._connect_task.done():
            # _connect disconnects once the executor returns
            return
        self._disconnect()

    def _disconnect(self) -> None:
        if self._client.disconnect() == mqtt.MQTT_ERR_SUCCESS:
            self._client.loop_write()
        self._unregister_socket()
        self._wire_ids.clear()
        self._paho_mids.clear()

    # paho callbacks

    def _on_connect(self, client, userdata, connect_flags, reason_code, properties) -> None:
        self._emit(HandshakeResult(reason_code.value, str(reason_code)))

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties) -> None:
        # paho replays what it still holds after reconnect; drop the rest
        self._prune_wire_ids()
        self._emit(TransportClosed(reason_code.value, str(reason_code)))

    def _on_publish(self, client, userdata, mid, reason_code, properties) -> None:
        message_id = self._wire_ids.pop(mid, None)
        if message_id is not None:
            self._paho_mids.pop(message_id, None)
            self._emit(PublishAcked(message_id))

    def _on_message(self, client, userdata, message) -> None:
        self._emit(InboundPublish(message.topic, message.payload))

    # asyncio socket integration

    def _on_socket_open(self, client, userdata, sock) -> None:
        self._in_loop(self._register_socket, sock.fileno())

    def _on_socket_close(self, client, userdata, sock) -> None:
        self._in_loop(self._unregister_socket)

    def _on_socket_register_write(self, client, userdata, sock) -> None:
        self._in_loop(self._register_write, sock.fileno())

    def _on_socket_unregister_write(self, client, userdata, sock) -> None:
        self._in_loop(self._unregister_write, sock.fileno())

    def _register_socket(self, fd: int) -> None:
        if self._closed:
            return
        self._fd = fd
        self.loop.add_reader(fd, self._client.loop_read)
        if self._misc_task is None:
            self._misc_task = self.loop.create_task(self._misc_loop())

    def _register_write(self, fd: int) -> None:
        if fd == self._fd:
            self.loop.add_writer(fd, self._client.loop_write)

    def _unregister_write(self, fd: int) -> None:
        if fd == self._fd:
            self.loop.remove_writer(fd)

    def _unregister_socket(self) -> None:
        if self._fd is not None:
            self.loop.remove_reader(self._fd)
            self.loop.remove_writer(self._fd)
            self._fd = None
        if self._misc_task is not None:
            self._misc_task.cancel()
            self._misc_task = None

    async def _misc_loop(self) -> None:
        while self._client.loop_misc() == mqtt.MQTT_ERR_SUCCESS:
            try:
                await asyncio.sleep(MISC_LOOP_INTERVAL)
            except asyncio.CancelledError:
                break

    def __repr__(self) -> str:
        return f"PahoTransport(address={self.address}, connected={self._fd is not None})"
