"""Infrastructure layer for the rtl_433 MQTT output.

This package contains concrete implementations of external interfaces,
currently the paho-mqtt transport.
"""

__version__ = "1.0.0"
