# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines constants for use across the iothub-mqtt-direct package
"""

VERSION = "0.1.0"

# MQTT over TLS
DEFAULT_PORT = 8883
DEFAULT_KEEP_ALIVE = 60
# The max keep alive is determined by the load balancer currently.
MAX_KEEP_ALIVE_SECS = 1740

# SAS
DEFAULT_TOKEN_TTL_MINUTES = 60

# Demo run
DEFAULT_MESSAGE_COUNT = 2
DEFAULT_MESSAGE_INTERVAL = 2.0
TEST_MESSAGE_FORMAT = "Test Message: {}"

CONNECTION_STRING_ENV_VAR = "IOTHUB_DEVICE_CONNECTION_STRING"
