# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import asyncio
import functools
import janus
import logging
import paho.mqtt.client as mqtt  # type: ignore
import ssl
from typing import Any, Callable, Dict, AsyncGenerator, Optional, Tuple, Union
from .config import ProxyOptions
from .exceptions import MQTTError, MQTTConnectionFailedError


logger = logging.getLogger(__name__)


# NOTE: Paho defines many rc values, but only a handful can come back from each method.
# Anything outside these lists gets logged as unexpected.
expected_connect_rc = [mqtt.MQTT_ERR_SUCCESS]
expected_disconnect_rc = [mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN]
expected_subscribe_rc = [mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN]
expected_unsubscribe_rc = [mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN]
expected_publish_rc = [mqtt.MQTT_ERR_SUCCESS, mqtt.MQTT_ERR_NO_CONN, mqtt.MQTT_ERR_QUEUE_SIZE]

# Handler-only rcs
expected_on_disconnect_rc = [
    mqtt.MQTT_ERR_SUCCESS,
    mqtt.MQTT_ERR_CONN_REFUSED,
    mqtt.MQTT_ERR_CONN_LOST,
    mqtt.MQTT_ERR_KEEPALIVE,
]
expected_on_connect_rc = [
    mqtt.CONNACK_ACCEPTED,
    mqtt.CONNACK_REFUSED_PROTOCOL_VERSION,
    mqtt.CONNACK_REFUSED_IDENTIFIER_REJECTED,
    mqtt.CONNACK_REFUSED_SERVER_UNAVAILABLE,
    mqtt.CONNACK_REFUSED_BAD_USERNAME_PASSWORD,
    mqtt.CONNACK_REFUSED_NOT_AUTHORIZED,
]

# An operation handed to Paho that returns (rc, mid)
PahoOperation = Callable[[], Tuple[int, Optional[int]]]


class MQTTClient:
    """
    Async wrapper around a Paho MQTT client for a single broker connection

    Paho reports every broker acknowledgement (CONNACK, SUBACK, UNSUBACK, PUBACK) on its own
    network thread. Each one is handed back to the event loop, where it completes the Future
    that the matching coroutine is awaiting.

    There is no automatic reconnect. When the connection drops, everything still waiting on
    an acknowledgement fails with a MQTTError carrying the disconnect rc.

    All operations use QoS 1.
    """

    def __init__(
        self,
        client_id: str,
        hostname: str,
        port: int,
        keep_alive: int = 60,
        ssl_context: Optional[ssl.SSLContext] = None,
        proxy_options: Optional[ProxyOptions] = None,
    ) -> None:
        """
        Must be invoked from within a running event loop.

        :param str client_id: MQTT client id, which for IoT Hub is the device id
        :param str hostname: Broker hostname
        :param int port: Broker port
        :param int keep_alive: Seconds of silence allowed before Paho sends a ping
        :param ssl_context: TLS settings for the connection. Paho builds a default when omitted.
        :type ssl_context: :class:`ssl.SSLContext`
        :param proxy_options: Proxy to tunnel the connection through (optional)
        :type proxy_options: :class:`iothub_mqtt_direct.config.ProxyOptions`
        """
        self._hostname = hostname
        self._port = port
        self._keep_alive = keep_alive

        self._mqtt_client = self._create_mqtt_client(client_id, ssl_context, proxy_options)
        self._event_loop = asyncio.get_running_loop()

        # Only written by the Paho handlers, which run one at a time on the network thread
        self._connected = False
        # Set when the connection ends. None if it was ended by .disconnect()
        self._disconnect_cause: Optional[MQTTError] = None

        self.disconnected_cond = asyncio.Condition()
        # Serializes .connect() and .disconnect()
        self._connection_lock = asyncio.Lock()
        # Guards the pending operation dicts below
        self._mid_tracker_lock = asyncio.Lock()

        # Future for Paho's blocking loop_forever(), running in the default executor
        self._network_loop: Optional[asyncio.Future] = None
        self._pending_connect: Optional[asyncio.Future] = None
        self._pending_subs: Dict[int, asyncio.Future] = {}
        self._pending_unsubs: Dict[int, asyncio.Future] = {}
        self._pending_pubs: Dict[int, asyncio.Future] = {}

        # Filled synchronously from the network thread, drained asynchronously on the loop
        self._incoming_messages: "janus.Queue[mqtt.MQTTMessage]" = janus.Queue()

    def _create_mqtt_client(
        self,
        client_id: str,
        ssl_context: Optional[ssl.SSLContext],
        proxy_options: Optional[ProxyOptions],
    ) -> mqtt.Client:
        """Build the Paho client and wire up its handlers"""
        logger.debug("Creating Paho client")

        # clean_session=False so IoT Hub keeps C2D subscriptions for the device
        mqtt_client = mqtt.Client(
            client_id=client_id,
            clean_session=False,
            protocol=mqtt.MQTTv311,
            transport="tcp",
            reconnect_on_failure=False,
        )

        if proxy_options:
            logger.debug("Routing MQTT traffic through {} proxy".format(proxy_options.proxy_type))
            mqtt_client.proxy_set(
                proxy_type=proxy_options.proxy_type_socks,
                proxy_addr=proxy_options.proxy_address,
                proxy_port=proxy_options.proxy_port,
                proxy_username=proxy_options.proxy_username,
                proxy_password=proxy_options.proxy_password,
            )

        mqtt_client.enable_logger(logging.getLogger("paho"))

        # A context of None makes Paho build its own default
        mqtt_client.tls_set_context(context=ssl_context)

        def on_connect(client: mqtt.Client, userdata: Any, flags: Dict[str, int], rc: int) -> None:
            logger.debug("CONNACK received: rc {} - {}".format(rc, mqtt.connack_string(rc)))
            if rc not in expected_on_connect_rc:
                logger.warning("CONNACK rc {} was unexpected".format(rc))

            async def report_connack() -> None:
                if rc == mqtt.CONNACK_ACCEPTED:
                    logger.debug("Client State: CONNECTED")
                    self._connected = True
                    self._disconnect_cause = None
                if self._pending_connect:
                    self._pending_connect.set_result(rc)
                else:
                    logger.warning("CONNACK received with no connect attempt waiting on it")

            # Block the network thread until the state change has landed, so that a following
            # on_disconnect cannot observe a stale state
            asyncio.run_coroutine_threadsafe(report_connack(), self._event_loop).result()

        def on_disconnect(client: mqtt.Client, userdata: Any, rc: int) -> None:
            rc_msg = mqtt.error_string(rc)

            if not self.is_connected():
                # Paho also calls this handler when a CONNACK refuses the connection, and
                # again after a connection that was already lost
                logger.debug("Disconnect while not connected: rc {} - {}".format(rc, rc_msg))
                return

            if rc == mqtt.MQTT_ERR_SUCCESS:
                logger.debug("Disconnected: rc {} - {}".format(rc, rc_msg))
            else:
                logger.warning("Connection lost: rc {} - {}".format(rc, rc_msg))

            async def mark_disconnected() -> None:
                logger.debug("Client State: DISCONNECTED")
                self._connected = False
                if rc != mqtt.MQTT_ERR_SUCCESS:
                    self._disconnect_cause = MQTTError(rc=rc)
                async with self.disconnected_cond:
                    self.disconnected_cond.notify_all()

            asyncio.run_coroutine_threadsafe(mark_disconnected(), self._event_loop).result()

            # Nothing will reconnect, so these acknowledgements can never arrive.
            # NOTE: Not waited on. The lock may be held by a coroutine that is itself waiting
            # on the network thread.
            asyncio.run_coroutine_threadsafe(self._fail_all_pending(rc), self._event_loop)

        def on_subscribe(client: mqtt.Client, userdata: Any, mid: int, granted_qos: int) -> None:
            logger.debug("SUBACK received for mid {}".format(mid))
            # NOTE: Never wait on these results from the network thread. The issuing coroutine
            # holds the mid tracker lock while Paho is sending.
            asyncio.run_coroutine_threadsafe(
                self._complete_pending(self._pending_subs, mid, "SUBACK"), self._event_loop
            )

        def on_unsubscribe(client: mqtt.Client, userdata: Any, mid: int) -> None:
            logger.debug("UNSUBACK received for mid {}".format(mid))
            asyncio.run_coroutine_threadsafe(
                self._complete_pending(self._pending_unsubs, mid, "UNSUBACK"), self._event_loop
            )

        def on_publish(client: mqtt.Client, userdata: Any, mid: int) -> None:
            logger.debug("PUBACK received for mid {}".format(mid))
            asyncio.run_coroutine_threadsafe(
                self._complete_pending(self._pending_pubs, mid, "PUBACK"), self._event_loop
            )

        def on_message(client: mqtt.Client, userdata: Any, message: mqtt.MQTTMessage) -> None:
            logger.debug("Incoming MQTT Message received on {}".format(message.topic))
            self._incoming_messages.sync_q.put(message)

        mqtt_client.on_connect = on_connect
        mqtt_client.on_disconnect = on_disconnect
        mqtt_client.on_subscribe = on_subscribe
        mqtt_client.on_unsubscribe = on_unsubscribe
        mqtt_client.on_publish = on_publish
        mqtt_client.on_message = on_message

        return mqtt_client

    async def _complete_pending(self, pending: Dict[int, asyncio.Future], mid: int, ack: str):
        async with self._mid_tracker_lock:
            f = pending.get(mid)
            if f is None:
                # Either never requested, or the requester was cancelled
                logger.warning("Unexpected {} received for mid {}".format(ack, mid))
            elif not f.done():
                f.set_result(True)

    async def _fail_all_pending(self, rc: int) -> None:
        if rc == mqtt.MQTT_ERR_SUCCESS:
            rc = mqtt.MQTT_ERR_NO_CONN
        async with self._mid_tracker_lock:
            for pending in (self._pending_subs, self._pending_unsubs, self._pending_pubs):
                for f in pending.values():
                    if not f.done():
                        f.set_exception(MQTTError(rc=rc))
                pending.clear()

    def _network_loop_running(self) -> bool:
        return self._network_loop is not None and not self._network_loop.done()

    def is_connected(self) -> bool:
        """
        True while a broker connection is established.

        The value may change as soon as it has been returned.
        """
        return self._connected

    async def wait_for_disconnect(self) -> Optional[MQTTError]:
        """
        Wait until the client is no longer connected.

        :returns: The MQTTError describing why the connection dropped, or None if it was
            ended by .disconnect() or never established
        """
        async with self.disconnected_cond:
            await self.disconnected_cond.wait_for(lambda: not self.is_connected())
        return self._disconnect_cause

    def set_credentials(self, username: str, password: Optional[str] = None) -> None:
        """
        Store the username and password to present in the next CONNECT.

        Only takes effect on the next call to .connect().

        :param str username: Username to authenticate with
        :param str password: Password to authenticate with, such as a SAS token (optional)
        """
        self._mqtt_client.username_pw_set(username=username, password=password)

    def get_incoming_message_generator(self) -> AsyncGenerator[mqtt.MQTTMessage, None]:
        """Return a generator that yields every incoming message, in order of arrival"""
        incoming_messages = self._incoming_messages.async_q

        async def message_generator() -> AsyncGenerator[mqtt.MQTTMessage, None]:
            while True:
                yield await incoming_messages.get()

        return message_generator()

    async def connect(self) -> None:
        """
        Open the broker connection and wait for the CONNACK.

        Does nothing if already connected.

        :raises: MQTTConnectionFailedError if the connection cannot be opened or is refused
        """
        async with self._connection_lock:
            # Only this method sets the connected state to True, and it holds the lock
            if self.is_connected():
                logger.debug("Already connected!")
                return
            try:
                await self._do_connect()
            except asyncio.CancelledError:
                logger.warning("Connect attempt cancelled. It may still complete if in-flight")
                raise
            finally:
                self._pending_connect = None

    async def _do_connect(self) -> None:
        self._pending_connect = self._event_loop.create_future()

        logger.debug("Connecting to {}:{}...".format(self._hostname, self._port))
        try:
            rc = await self._event_loop.run_in_executor(
                None,
                functools.partial(
                    self._mqtt_client.connect,
                    host=self._hostname,
                    port=self._port,
                    keepalive=self._keep_alive,
                ),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise MQTTConnectionFailedError(message="Failure in Paho .connect()") from e
        logger.debug("Paho .connect() returned rc {} - {}".format(rc, mqtt.error_string(rc)))

        if rc != mqtt.MQTT_ERR_SUCCESS:
            # Paho raises rather than returning a failure, so this should not happen.
            # The rc is not a CONNACK rc, so it goes on the cause instead.
            logger.warning("Unexpected rc {} from Paho .connect()".format(rc))
            raise MQTTConnectionFailedError(message="Unexpected Paho .connect() rc") from MQTTError(
                rc=rc
            )

        # loop_forever() needs the socket opened by .connect(). It returns once Paho
        # disconnects for any reason, including a refused CONNACK.
        if self._network_loop_running():
            # Left over from a cancelled attempt
            logger.debug("Paho network loop already running")
        else:
            logger.debug("Starting Paho network loop")
            self._network_loop = self._event_loop.run_in_executor(
                None, self._mqtt_client.loop_forever
            )

        logger.debug("Waiting for CONNACK...")
        rc = await self._pending_connect
        if rc != mqtt.CONNACK_ACCEPTED:
            if self._network_loop is not None:
                await self._network_loop
                self._network_loop = None
            raise MQTTConnectionFailedError(rc=rc)

    async def disconnect(self) -> None:
        """
        Disconnect from the MQTT broker and stop the network loop.

        Safe to call when not connected.
        """
        async with self._connection_lock:
            # A network loop Future exists if connected, if the connection was lost, or if a
            # cancelled connect left it behind. Paho needs .disconnect() in all three cases.
            if self._network_loop is None:
                logger.debug("Already disconnected!")
                return

            logger.debug("Disconnecting")
            rc = await self._event_loop.run_in_executor(None, self._mqtt_client.disconnect)
            logger.debug("Paho .disconnect() returned rc {} - {}".format(rc, mqtt.error_string(rc)))

            if rc == mqtt.MQTT_ERR_SUCCESS:
                async with self.disconnected_cond:
                    await self.disconnected_cond.wait_for(lambda: not self.is_connected())
                await self._network_loop
                self._network_loop = None
            elif rc == mqtt.MQTT_ERR_NO_CONN:
                # Connection was already gone, and the network loop with it
                self._network_loop = None
            else:
                logger.warning("Unexpected rc {} from Paho .disconnect()".format(rc))

    async def close(self) -> None:
        """Release the incoming message queue. The client cannot be used after."""
        self._incoming_messages.close()
        await self._incoming_messages.wait_closed()

    async def subscribe(self, topic: str) -> None:
        """
        Subscribe to a topic, returning once the broker has acknowledged.

        :param str topic: The topic filter to subscribe to

        :raises: ValueError if the topic is None or empty
        :raises: MQTTError if Paho rejects the subscribe, including when not connected
        """

        def paho_subscribe() -> Tuple[int, Optional[int]]:
            return self._mqtt_client.subscribe(topic=topic, qos=1)

        await self._do_acked_operation(
            "subscribe", paho_subscribe, self._pending_subs, expected_subscribe_rc
        )

    async def unsubscribe(self, topic: str) -> None:
        """
        Unsubscribe from a topic, returning once the broker has acknowledged.

        :param str topic: The topic filter to unsubscribe from

        :raises: ValueError if the topic is None or empty
        :raises: MQTTError if Paho rejects the unsubscribe, including when not connected
        """

        def paho_unsubscribe() -> Tuple[int, Optional[int]]:
            return self._mqtt_client.unsubscribe(topic=topic)

        await self._do_acked_operation(
            "unsubscribe", paho_unsubscribe, self._pending_unsubs, expected_unsubscribe_rc
        )

    async def publish(self, topic: str, payload: Union[str, bytes, int, float, None]) -> int:
        """
        Publish a message, returning once the broker has acknowledged.

        :param str topic: The topic to publish on
        :param payload: The message content
        :type payload: str, bytes, int, float or None

        :returns: The mid of the acknowledged publish
        :raises: ValueError if topic is None, empty, or contains a wildcard
        :raises: ValueError if the payload is larger than 268435455 bytes
        :raises: TypeError for a payload of any other type
        :raises: MQTTError if there is an error publishing, including when not connected
        """

        def paho_publish() -> Tuple[int, Optional[int]]:
            message_info = self._mqtt_client.publish(topic=topic, payload=payload, qos=1)
            return (message_info.rc, message_info.mid)

        return await self._do_acked_operation(
            "publish", paho_publish, self._pending_pubs, expected_publish_rc
        )

    async def _do_acked_operation(
        self,
        name: str,
        paho_operation: PahoOperation,
        pending: Dict[int, asyncio.Future],
        expected_rc: list,
    ) -> int:
        """Run a Paho operation and wait for the acknowledgement carrying its mid"""
        mid = None
        try:
            # The acknowledgement handler needs this lock too, so holding it until the Future
            # is registered means an early acknowledgement cannot be missed
            async with self._mid_tracker_lock:
                (rc, mid) = await self._event_loop.run_in_executor(None, paho_operation)
                logger.debug(
                    "Paho .{}() returned rc {} - {} (mid {})".format(
                        name, rc, mqtt.error_string(rc), mid
                    )
                )
                if rc != mqtt.MQTT_ERR_SUCCESS:
                    # A QoS 1 publish made while disconnected would be queued by Paho with
                    # MQTT_ERR_NO_CONN, and never sent since nothing reconnects
                    if rc not in expected_rc:
                        logger.warning("Unexpected rc {} from Paho .{}()".format(rc, name))
                    raise MQTTError(rc)

                acked = self._event_loop.create_future()
                pending[mid] = acked

            logger.debug("Waiting for {} acknowledgement for mid {}".format(name, mid))
            await acked
            return mid
        except asyncio.CancelledError:
            if mid is None:
                logger.debug("{} cancelled before being sent".format(name.capitalize()))
            else:
                logger.warning(
                    "{} for mid {} cancelled. The broker may still receive it".format(
                        name.capitalize(), mid
                    )
                )
            raise
        finally:
            async with self._mid_tracker_lock:
                if mid is not None:
                    pending.pop(mid, None)
