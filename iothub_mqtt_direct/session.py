# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
import asyncio
import logging
import ssl
from types import TracebackType
from typing import Any, AsyncGenerator, Coroutine, Optional, Type, TypeVar, Union

import paho.mqtt.client as mqtt  # type: ignore

from . import config
from . import connection_string as cs
from . import constant
from . import mqtt_topic
from .exceptions import MQTTError
from .mqtt_client import MQTTClient

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class DeviceSession:
    """A single MQTT session with IoT Hub for a device, authenticated with a SAS Token.

    Use as an async context manager. The connection is established upon entry and closed
    upon exit. The session never reconnects; once the password expires, a new session must
    be created from a new ConnectionDescriptor.
    """

    def __init__(
        self,
        descriptor: cs.ConnectionDescriptor,
        *,
        port: int = constant.DEFAULT_PORT,
        keep_alive: int = constant.DEFAULT_KEEP_ALIVE,
        ssl_context: Optional[ssl.SSLContext] = None,
        proxy_options: Optional[config.ProxyOptions] = None,
    ) -> None:
        """
        :param descriptor: Connection details and password for the device
        :type descriptor: :class:`ConnectionDescriptor`
        :param int port: The port of the MQTT broker. Default is 8883
        :param int keep_alive: Maximum period in seconds between MQTT communications.
            Default is 60 seconds
        :param ssl_context: Custom SSL context to be used when establishing a connection.
            If not provided, a default one will be used
        :type ssl_context: :class:`ssl.SSLContext`
        :param proxy_options: Configuration structure for sending traffic through a proxy server
        :type proxy_options: :class:`ProxyOptions`

        :raises: ValueError or TypeError if an invalid port or keep alive is provided
        """
        self._descriptor = descriptor
        self._config = config.ClientConfig(
            hostname=descriptor.host_name,
            device_id=descriptor.device_id,
            port=port,
            keep_alive=keep_alive,
            ssl_context=ssl_context,
            proxy_options=proxy_options,
        )
        self._c2d_topic = mqtt_topic.get_c2d_topic_for_subscribe(descriptor.device_id)
        self._telemetry_topic = mqtt_topic.get_telemetry_topic_for_publish(descriptor.device_id)
        self._c2d_subscribed = False

        # Set upon context manager entry, since the MQTTClient must be created inside a
        # running event loop
        self._mqtt_client: Optional[MQTTClient] = None
        # Completes when the connection ends, with the MQTTError that caused it, if any
        self._wait_for_disconnect_task: Optional[asyncio.Task] = None

    @classmethod
    def from_connection_string(
        cls,
        connection_string: str,
        expires_in_minutes: int = constant.DEFAULT_TOKEN_TTL_MINUTES,
        **kwargs,
    ) -> "DeviceSession":
        """Instantiate a DeviceSession using an IoT Hub device connection string

        :param str connection_string: The IoT Hub device connection string
        :param int expires_in_minutes: Number of minutes the session password is valid for

        :raises: ParseError if the provided connection string is invalid
        """
        descriptor = cs.parse(connection_string, expires_in_minutes=expires_in_minutes)
        return cls(descriptor, **kwargs)

    @property
    def descriptor(self) -> cs.ConnectionDescriptor:
        return self._descriptor

    @property
    def connected(self) -> bool:
        return self._mqtt_client is not None and self._mqtt_client.is_connected()

    @property
    def c2d_subscribed(self) -> bool:
        return self._c2d_subscribed

    async def __aenter__(self) -> "DeviceSession":
        self._mqtt_client = MQTTClient(
            client_id=self._descriptor.device_id,
            hostname=self._config.hostname,
            port=self._config.port,
            keep_alive=self._config.keep_alive,
            ssl_context=self._config.ssl_context,
            proxy_options=self._config.proxy_options,
        )
        self._mqtt_client.set_credentials(
            username=mqtt_topic.get_username(
                self._descriptor.host_name, self._descriptor.device_id
            ),
            password=self._descriptor.password,
        )
        logger.info(
            "Connecting to {} as {}".format(self._config.hostname, self._descriptor.device_id)
        )
        try:
            await self._mqtt_client.connect()
        except (Exception, asyncio.CancelledError):
            await self._mqtt_client.close()
            self._mqtt_client = None
            raise
        logger.info("Connected")
        self._wait_for_disconnect_task = asyncio.create_task(
            self._mqtt_client.wait_for_disconnect()
        )
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        if self._mqtt_client is None:
            return
        try:
            await self._mqtt_client.disconnect()
            logger.info("Disconnected")
        finally:
            if self._wait_for_disconnect_task:
                self._wait_for_disconnect_task.cancel()
                self._wait_for_disconnect_task = None
            await self._mqtt_client.close()
            self._mqtt_client = None
            self._c2d_subscribed = False

    def _get_client(self) -> MQTTClient:
        if self._mqtt_client is None or not self._mqtt_client.is_connected():
            # rc 4 (MQTT_ERR_NO_CONN), since a QoS 1 publish would otherwise be queued silently
            raise MQTTError(rc=mqtt.MQTT_ERR_NO_CONN)
        return self._mqtt_client

    async def send_message(self, payload: Union[str, bytes]) -> int:
        """Send a telemetry message to IoT Hub

        :param payload: The content of the message
        :type payload: str or bytes

        :returns: The mid of the acknowledged publish
        :raises: MQTTError if there is an error sending the message, or not connected
        """
        mid = await self._interrupt_on_disconnect(
            self._get_client().publish(self._telemetry_topic, payload)
        )
        logger.debug("Message {} published".format(mid))
        return mid

    async def subscribe_c2d(self) -> None:
        """Subscribe to cloud-to-device messages, waiting for the broker to acknowledge

        :raises: MQTTError if there is an error subscribing, or not connected
        """
        await self._interrupt_on_disconnect(self._get_client().subscribe(self._c2d_topic))
        self._c2d_subscribed = True
        logger.info("Subscribed")

    async def unsubscribe_c2d(self) -> None:
        """Unsubscribe from cloud-to-device messages, waiting for the broker to acknowledge

        :raises: MQTTError if there is an error unsubscribing, or not connected
        """
        await self._interrupt_on_disconnect(self._get_client().unsubscribe(self._c2d_topic))
        self._c2d_subscribed = False
        logger.info("Unsubscribed")

    def messages(self) -> AsyncGenerator[mqtt.MQTTMessage, None]:
        """Returns an async generator of incoming cloud-to-device messages

        The generator raises MQTTError if the connection drops while it is waiting.

        :raises: MQTTError if not connected
        """
        incoming = self._get_client().get_incoming_message_generator()
        device_id = self._descriptor.device_id

        async def next_message() -> mqtt.MQTTMessage:
            return await incoming.__anext__()

        async def c2d_generator() -> AsyncGenerator[mqtt.MQTTMessage, None]:
            while True:
                try:
                    message = await self._interrupt_on_disconnect(next_message())
                except StopAsyncIteration:
                    return
                if mqtt_topic.is_c2d_topic(message.topic, device_id):
                    yield message
                else:
                    logger.warning("Dropping message received on topic {}".format(message.topic))

        return c2d_generator()

    async def _interrupt_on_disconnect(self, coro: Coroutine[Any, Any, _T]) -> _T:
        """Await a coroutine, unless the connection ends before it completes

        :raises: MQTTError carrying the disconnect rc if the connection ends first
        """
        wait_for_disconnect = self._wait_for_disconnect_task
        if wait_for_disconnect is None:
            coro.close()
            raise MQTTError(rc=mqtt.MQTT_ERR_NO_CONN)

        original_task = asyncio.create_task(coro)
        try:
            await asyncio.wait(
                [original_task, wait_for_disconnect], return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            original_task.cancel()
            raise

        if original_task.done():
            return original_task.result()

        original_task.cancel()
        await asyncio.gather(original_task, return_exceptions=True)
        cause = None if wait_for_disconnect.cancelled() else wait_for_disconnect.result()
        if cause is None:
            # Ended by exiting the session
            raise MQTTError(rc=mqtt.MQTT_ERR_NO_CONN)
        logger.error("Connection dropped: {}".format(cause))
        raise MQTTError(rc=cause.rc) from cause
