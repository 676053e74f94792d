# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines exceptions used by other modules"""

import paho.mqtt.client as mqtt  # type: ignore


# Connection string / credential parsing
# NOTE: None of these are recoverable. They result from bad input, and retrying with the
# same input will always produce the same failure.
class ParseError(ValueError):
    """Represents a failure to derive connection details from given input"""

    pass


class WrongFieldCount(ParseError):
    """The connection string does not contain exactly three fields"""

    pass


class MalformedField(ParseError):
    """A field of the connection string does not start with its required key"""

    pass


class EmptyValue(ParseError):
    """A required field of the connection string has no value"""

    pass


class InvalidKeyEncoding(ParseError):
    """The shared access key is not valid base64"""

    pass


class SasTokenError(ValueError):
    """Error in SasToken"""

    pass


# MQTT
class MQTTError(Exception):
    """Represents a failure with a Paho-given error rc code"""

    def __init__(self, rc):
        self.rc = rc
        super().__init__(mqtt.error_string(rc))


class MQTTConnectionFailedError(Exception):
    """Represents a failure to connect.
    Can have a Paho-given connack rc code, or a message"""

    def __init__(self, rc=None, message=None):
        if not rc and not message:
            raise ValueError("must provide rc or message")
        if rc and message:
            raise ValueError("rc and message are mutually exclusive")
        self.rc = rc
        if rc:
            message = mqtt.connack_string(rc)
        super().__init__(message)
