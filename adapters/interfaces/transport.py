"""MQTT transport interface.

The transport owns the socket, the TLS handshake and the MQTT packet codec.
It reports everything that happens on the wire through an ``EventSink``.
This module imports nothing from ``modules`` to avoid circular imports.
"""

from abc import ABC, abstractmethod


class MQTTTransport(ABC):
    """Interface for a single outbound MQTT connection.

    ``open`` may be called again after a ``TransportClosed`` notification to
    reconnect with the same address, credentials and TLS settings.
    """

    @property
    @abstractmethod
    def address(self) -> str:
        """Broker address as host:port."""
        pass

    @abstractmethod
    def open(self, sink) -> None:
        """Start connecting and send the CONNECT handshake once the socket is up.

        Outcome is reported asynchronously: ``TransportConnected`` followed by
        ``HandshakeResult`` on success, or ``TransportConnected`` with a
        non-zero status followed by ``TransportClosed`` on failure.
        """
        pass

    @abstractmethod
    def publish(self, topic: str, payload: bytes, message_id: int, qos: int, retain: bool, dup: bool = False) -> bool:
        """Write a PUBLISH packet.

        ``PublishAcked`` notifications carry ``message_id``. With ``dup`` the
        packet is a retransmission of ``message_id``: it keeps the packet id
        of the first send and carries the DUP flag.

        Returns:
            True if the packet was handed to the socket
        """
        pass

    @abstractmethod
    def detach(self):
        """Drop the event sink so later callbacks are discarded."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the connection immediately."""
        pass
