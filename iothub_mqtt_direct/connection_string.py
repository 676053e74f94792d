# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains tools for working with device Connection Strings"""

import base64
import datetime
import logging
from typing import Optional
from . import constant
from . import sastoken as st
from .exceptions import WrongFieldCount, MalformedField, EmptyValue
from .signing_mechanism import decode_key

__all__ = ["ConnectionDescriptor", "parse"]

logger = logging.getLogger(__name__)

CS_DELIMITER = ";"
CS_VAL_SEPARATOR = "="

HOST_NAME = "HostName"
DEVICE_ID = "DeviceId"
SHARED_ACCESS_KEY = "SharedAccessKey"

# Fields must appear in exactly this order
_field_order = [HOST_NAME, DEVICE_ID, SHARED_ACCESS_KEY]


class ConnectionDescriptor:
    """Connection details for a device, along with the password used to authenticate.

    All attributes are read-only. The password is derived once, upon instantiation.
    """

    def __init__(
        self,
        host_name: str,
        device_id: str,
        shared_key: bytes,
        expires_in_minutes: int = constant.DEFAULT_TOKEN_TTL_MINUTES,
        now: Optional[st.Timestamp] = None,
    ) -> None:
        """
        :param str host_name: Hostname of the IoT Hub
        :param str device_id: The device identity
        :param bytes shared_key: The (decoded) shared access key of the device
        :param int expires_in_minutes: Number of minutes before the password expires
        :param now: The time the password is generated at. Current time if not provided.
        :type now: datetime or number of seconds since epoch

        :raises: EmptyValue if any of the details are empty
        """
        if not host_name or not host_name.strip():
            raise EmptyValue("Invalid Connection String - Empty {}".format(HOST_NAME))
        if not device_id or not device_id.strip():
            raise EmptyValue("Invalid Connection String - Empty {}".format(DEVICE_ID))
        if not shared_key:
            raise EmptyValue("Invalid Connection String - Empty {}".format(SHARED_ACCESS_KEY))
        if now is None:
            now = datetime.datetime.now(datetime.timezone.utc)

        self._host_name = host_name
        self._device_id = device_id
        self._shared_key = bytes(shared_key)
        self._password = st.generate_sastoken_from_raw_key(
            resource_uri=self.resource_uri,
            signing_key=self._shared_key,
            expires_in_minutes=expires_in_minutes,
            now=now,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConnectionDescriptor):
            return NotImplemented
        return (
            self._host_name == other._host_name
            and self._device_id == other._device_id
            and self._shared_key == other._shared_key
            and self._password == other._password
        )

    def __hash__(self) -> int:
        return hash((self._host_name, self._device_id, self._shared_key, self._password))

    def __str__(self) -> str:
        return self.to_connection_string()

    def __repr__(self) -> str:
        # Never include secrets in the repr
        return "ConnectionDescriptor(host_name={!r}, device_id={!r})".format(
            self._host_name, self._device_id
        )

    @property
    def host_name(self) -> str:
        return self._host_name

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def shared_key(self) -> bytes:
        return self._shared_key

    @property
    def password(self) -> str:
        """The SAS Token used as the MQTT password"""
        return self._password

    @property
    def resource_uri(self) -> str:
        return st.format_resource_uri(self._host_name, self._device_id)

    @property
    def expiry_time(self) -> int:
        return st.SasToken(self._password).expiry_time

    def to_connection_string(self) -> str:
        """Return the canonical connection string for these details"""
        return CS_DELIMITER.join(
            [
                HOST_NAME + CS_VAL_SEPARATOR + self._host_name,
                DEVICE_ID + CS_VAL_SEPARATOR + self._device_id,
                SHARED_ACCESS_KEY
                + CS_VAL_SEPARATOR
                + base64.b64encode(self._shared_key).decode("ascii"),
            ]
        )


def parse(
    connection_string: str,
    expires_in_minutes: int = constant.DEFAULT_TOKEN_TTL_MINUTES,
    now: Optional[st.Timestamp] = None,
) -> ConnectionDescriptor:
    """Parse a device connection string of the form
    "HostName=<host>;DeviceId=<id>;SharedAccessKey=<base64 key>"

    Key names are case-insensitive, but their order is fixed.

    :param str connection_string: String with connection details provided by Azure
    :param int expires_in_minutes: Number of minutes before the derived password expires
    :param now: The time the password is generated at. Current time if not provided.
    :type now: datetime or number of seconds since epoch

    :returns: The details of the connection string
    :rtype: :class:`ConnectionDescriptor`

    :raises: TypeError if the connection string is not a str
    :raises: WrongFieldCount if there are not exactly three fields
    :raises: MalformedField if a field does not start with the expected key
    :raises: EmptyValue if a field has no value
    :raises: InvalidKeyEncoding if the shared access key is not valid base64
    """
    if not isinstance(connection_string, str):
        raise TypeError("Connection String must be of type str")

    cs_args = connection_string.split(CS_DELIMITER)
    if len(cs_args) != len(_field_order):
        raise WrongFieldCount(
            "Invalid Connection String - Expected {} fields, got {}".format(
                len(_field_order), len(cs_args)
            )
        )

    values = []
    for arg, key in zip(cs_args, _field_order):
        prefix = key.lower() + CS_VAL_SEPARATOR
        if not arg.lower().startswith(prefix):
            raise MalformedField("Invalid Connection String - Expected {} field".format(key))
        # The prefix is exactly the key and separator, so slicing by its length gives the
        # substring after the first separator. Any "=" in the value (e.g. base64 padding)
        # is kept.
        value = arg[len(prefix) :]
        if not value.strip():
            raise EmptyValue("Invalid Connection String - Empty {}".format(key))
        values.append(value)

    host_name, device_id, shared_access_key = values
    shared_key = decode_key(shared_access_key)
    logger.debug("Parsed connection string for device {} on {}".format(device_id, host_name))

    return ConnectionDescriptor(
        host_name=host_name,
        device_id=device_id,
        shared_key=shared_key,
        expires_in_minutes=expires_in_minutes,
        now=now,
    )
