# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import logging
import socks
import ssl
from typing import Optional
from . import constant


logger = logging.getLogger(__name__)


string_to_socks_constant_map = {"HTTP": socks.HTTP, "SOCKS4": socks.SOCKS4, "SOCKS5": socks.SOCKS5}
socks_constant_to_string_map = {socks.HTTP: "HTTP", socks.SOCKS4: "SOCKS4", socks.SOCKS5: "SOCKS5"}


class ProxyOptions:
    """Where and how to tunnel the MQTT connection through a proxy server"""

    def __init__(
        self,
        proxy_type: str,
        proxy_addr: str,
        proxy_port: int,
        proxy_username: Optional[str] = None,
        proxy_password: Optional[str] = None,
    ):
        """
        :param proxy_type: "HTTP", "SOCKS4" or "SOCKS5", or the matching PySocks constant
        :param str proxy_addr: Hostname or IP address of the proxy
        :param int proxy_port: The port of the proxy server.
        :param str proxy_username: (optional) username for SOCKS5 proxy, or userid for SOCKS4 proxy.
        :param str proxy_password: (optional) password for the SOCKS5 proxy username.
        """
        (self._proxy_type, self._proxy_type_socks) = _format_proxy_type(proxy_type)
        self._proxy_addr = proxy_addr
        self._proxy_port = int(proxy_port)
        self._proxy_username = proxy_username
        self._proxy_password = proxy_password

    @property
    def proxy_type(self) -> str:
        return self._proxy_type

    @property
    def proxy_type_socks(self) -> int:
        return self._proxy_type_socks

    @property
    def proxy_address(self) -> str:
        return self._proxy_addr

    @property
    def proxy_port(self) -> int:
        return self._proxy_port

    @property
    def proxy_username(self) -> Optional[str]:
        return self._proxy_username

    @property
    def proxy_password(self) -> Optional[str]:
        return self._proxy_password


class ClientConfig:
    """Everything a DeviceSession needs to reach IoT Hub over MQTT, validated up front"""

    def __init__(
        self,
        *,
        hostname: str,
        device_id: str,
        port: int = constant.DEFAULT_PORT,
        keep_alive: int = constant.DEFAULT_KEEP_ALIVE,
        ssl_context: Optional[ssl.SSLContext] = None,
        proxy_options: Optional[ProxyOptions] = None,
    ) -> None:
        """
        :param str hostname: The IoT Hub hostname
        :param str device_id: The device identity within the IoT Hub
        :param int port: The port of the MQTT broker
        :param int keep_alive: Maximum period in seconds between communications with the
            broker.
        :param ssl_context: SSLContext to use with the client. If not provided a default one
            will be created.
        :type ssl_context: :class:`ssl.SSLContext`
        :param proxy_options: Proxy to tunnel the connection through (optional)
        :type proxy_options: :class:`ProxyOptions`
        """
        # Network
        self.hostname = hostname
        self.port = _sanitize_port(port)
        self.proxy_options = proxy_options
        if ssl_context is None:
            ssl_context = default_ssl_context()
        self.ssl_context = ssl_context

        # Identity
        self.device_id = device_id

        # MQTT
        self.keep_alive = _sanitize_keep_alive(keep_alive)


def default_ssl_context() -> ssl.SSLContext:
    """Return a default SSLContext"""
    ssl_context = ssl.SSLContext(protocol=ssl.PROTOCOL_TLS_CLIENT)
    ssl_context.minimum_version = ssl.TLSVersion.TLSv1_2
    ssl_context.verify_mode = ssl.CERT_REQUIRED
    ssl_context.check_hostname = True
    ssl_context.load_default_certs()
    return ssl_context


# Sanitization #


def _format_proxy_type(proxy_type):
    """Return the proxy type as (name, PySocks constant), given either form"""
    try:
        return (proxy_type, string_to_socks_constant_map[proxy_type])
    except KeyError:
        # Also accept the socks library constants directly
        try:
            return (socks_constant_to_string_map[proxy_type], proxy_type)
        except KeyError:
            raise ValueError("Invalid Proxy Type")


def _sanitize_keep_alive(keep_alive):
    # Zero would disable keep alive pings entirely, which IoT Hub does not allow
    return _sanitize_int("keep_alive", keep_alive, 1, constant.MAX_KEEP_ALIVE_SECS)


def _sanitize_port(port):
    return _sanitize_int("port", port, 1, 65535)


def _sanitize_int(name, value, lowest, highest):
    try:
        value = int(value)
    except (ValueError, TypeError):
        raise TypeError("'{}' must be numeric, got {!r}".format(name, value))
    if not lowest <= value <= highest:
        raise ValueError("'{}' must be between {} and {}, got {}".format(name, lowest, highest, value))
    return value
