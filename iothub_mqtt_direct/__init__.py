""" IoT Hub MQTT Direct

This library derives Shared Access Signature credentials from a device connection string,
and uses them to connect a device to Azure IoT Hub with a generic MQTT client.
"""

from .connection_string import ConnectionDescriptor, parse  # noqa: F401
from .sastoken import SasToken, generate_sastoken, format_resource_uri  # noqa: F401
from .session import DeviceSession  # noqa: F401
from .config import ProxyOptions  # noqa: F401
from .exceptions import (  # noqa: F401
    ParseError,
    WrongFieldCount,
    MalformedField,
    EmptyValue,
    InvalidKeyEncoding,
    SasTokenError,
    MQTTError,
    MQTTConnectionFailedError,
)
from .constant import VERSION as __version__  # noqa: F401
