# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""Connect a device to IoT Hub over MQTT without the device SDK

Usage:
    python -m iothub_mqtt_direct token "<connection string>"
    python -m iothub_mqtt_direct run "<connection string>"
"""

import argparse
import asyncio
import logging
import os
import sys

from . import connection_string as cs
from . import constant
from .config import ProxyOptions
from .exceptions import ParseError, MQTTError, MQTTConnectionFailedError
from .session import DeviceSession

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_CONNECTION_FAILURE = 1
EXIT_INVALID_INPUT = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="iothub_mqtt_direct",
        description="Connect to an Azure IoT Hub using a generic MQTT client",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging (including Paho)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    token_parser = subparsers.add_parser("token", help="Print a SAS Token for a device")
    _add_connection_args(token_parser)

    run_parser = subparsers.add_parser(
        "run", help="Connect, subscribe, send test messages and wait for input before exiting"
    )
    _add_connection_args(run_parser)
    run_parser.add_argument(
        "--port", type=int, default=constant.DEFAULT_PORT, help="MQTT broker port"
    )
    run_parser.add_argument(
        "--keep-alive",
        type=int,
        default=constant.DEFAULT_KEEP_ALIVE,
        help="Maximum period in seconds between MQTT communications",
    )
    run_parser.add_argument(
        "--message-count",
        type=int,
        default=constant.DEFAULT_MESSAGE_COUNT,
        help="Number of test messages to send",
    )
    run_parser.add_argument(
        "--interval",
        type=float,
        default=constant.DEFAULT_MESSAGE_INTERVAL,
        help="Seconds to wait after sending each test message",
    )
    run_parser.add_argument(
        "--no-wait",
        dest="wait_for_input",
        action="store_false",
        help="Exit after sending instead of waiting for Enter",
    )
    run_parser.add_argument(
        "--proxy-type", choices=["HTTP", "SOCKS4", "SOCKS5"], help="Type of proxy server"
    )
    run_parser.add_argument("--proxy-addr", help="Address of the proxy server")
    run_parser.add_argument("--proxy-port", type=int, help="Port of the proxy server")
    return parser


def _add_connection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "connection_string",
        nargs="?",
        default=os.getenv(constant.CONNECTION_STRING_ENV_VAR),
        help="Device connection string (default: ${} environment variable)".format(
            constant.CONNECTION_STRING_ENV_VAR
        ),
    )
    parser.add_argument(
        "--ttl-minutes",
        type=int,
        default=constant.DEFAULT_TOKEN_TTL_MINUTES,
        help="Number of minutes before the SAS Token expires",
    )


def _get_proxy_options(args: argparse.Namespace):
    if not args.proxy_type:
        return None
    if not args.proxy_addr or not args.proxy_port:
        raise ValueError("--proxy-addr and --proxy-port are required with --proxy-type")
    return ProxyOptions(
        proxy_type=args.proxy_type, proxy_addr=args.proxy_addr, proxy_port=args.proxy_port
    )


async def receive_c2d_messages(session: DeviceSession) -> None:
    """Log incoming cloud-to-device messages until cancelled"""
    async for message in session.messages():
        logger.info(
            "Message received: {}\n\ton topic: {}".format(
                message.payload.decode("utf-8", errors="replace"), message.topic
            )
        )


async def run(args: argparse.Namespace, descriptor: cs.ConnectionDescriptor) -> int:
    session = DeviceSession(
        descriptor,
        port=args.port,
        keep_alive=args.keep_alive,
        proxy_options=_get_proxy_options(args),
    )
    try:
        async with session:
            await session.subscribe_c2d()
            receiver = asyncio.create_task(receive_c2d_messages(session))
            try:
                for i in range(args.message_count):
                    mid = await session.send_message(constant.TEST_MESSAGE_FORMAT.format(i))
                    logger.info("Sent message {}".format(mid))
                    await asyncio.sleep(args.interval)

                if args.wait_for_input:
                    # Wait for input before exiting
                    loop = asyncio.get_running_loop()
                    await loop.run_in_executor(None, input, "Press Enter to disconnect\n")

                if not session.connected:
                    logger.error("Connection lost before the session ended")
                    return EXIT_CONNECTION_FAILURE
                if session.c2d_subscribed:
                    await session.unsubscribe_c2d()
            finally:
                receiver.cancel()
                await asyncio.gather(receiver, return_exceptions=True)
    except MQTTConnectionFailedError as e:
        logger.error("Failed to connect: {}".format(e))
        return EXIT_CONNECTION_FAILURE
    except MQTTError as e:
        logger.error("MQTT operation failed: {}".format(e))
        return EXIT_CONNECTION_FAILURE
    return EXIT_SUCCESS


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.verbose:
        logging.getLogger("paho").setLevel(logging.WARNING)

    if not args.connection_string:
        parser.error(
            "a connection string is required (or set ${})".format(
                constant.CONNECTION_STRING_ENV_VAR
            )
        )

    try:
        descriptor = cs.parse(args.connection_string, expires_in_minutes=args.ttl_minutes)
    except ParseError as e:
        logger.error("Invalid connection string: {}".format(e))
        return EXIT_INVALID_INPUT

    if args.command == "token":
        print(descriptor.password)
        return EXIT_SUCCESS

    try:
        return asyncio.run(run(args, descriptor))
    except ValueError as e:
        # Invalid options (e.g. keep alive, port, proxy)
        logger.error(str(e))
        return EXIT_INVALID_INPUT
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
