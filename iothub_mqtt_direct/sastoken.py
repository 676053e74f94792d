# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module contains tools for working with Shared Access Signature (SAS) Tokens"""

import datetime
import logging
import math
import time
import urllib.parse
from typing import List, Optional, Union
from typing_extensions import TypedDict
from .exceptions import SasTokenError
from .signing_mechanism import SymmetricKeySigningMechanism

logger = logging.getLogger(__name__)

REQUIRED_SASTOKEN_FIELDS: List[str] = ["sr", "sig", "se"]
TOKEN_FORMAT: str = "SharedAccessSignature sr={resource}&sig={signature}&se={expiry}"
TOKEN_PREFIX: str = "SharedAccessSignature "

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)

# A point in time, either as a datetime (naive values are treated as UTC) or as seconds
# since epoch.
Timestamp = Union[datetime.datetime, int, float]

# NOTE: Whenever using standard URL encoding via the urllib.parse.quote() API
# make sure to specify that there are NO safe values (e.g. safe=""). By default
# "/" is skipped in encoding, and the "/devices/" separator of the resource URI MUST
# be encoded for the signature to match what IoT Hub computes.
#
# DO NOT use urllib.parse.quote_plus(). Base64 signatures contain '+' characters, which
# must become "%2B", and quote_plus() does not treat ' ' the same way either.


class SasTokenInfo(TypedDict):
    sr: str
    sig: str
    se: str


class SasToken:
    def __init__(self, sastoken_str: str) -> None:
        """Create a SasToken object from a SAS Token string
        :param str sastoken_str: The SAS Token string

        :raises: SasTokenError if SAS Token string is invalid
        """
        self._token_str: str = sastoken_str
        self._token_info: SasTokenInfo = _get_sastoken_info_from_string(sastoken_str)

    def __str__(self) -> str:
        return self._token_str

    def __repr__(self) -> str:
        return "SasToken(resource_uri={!r}, expiry_time={})".format(
            self.resource_uri, self.expiry_time
        )

    def is_expired(self, now: Optional[Timestamp] = None) -> bool:
        """Indicate if the token has expired as of the given time (default: current time)"""
        if now is None:
            current = time.time()
        else:
            current = _to_epoch_seconds(now)
        return current >= self.expiry_time

    @property
    def expiry_time(self) -> int:
        return int(self._token_info["se"])

    @property
    def resource_uri(self) -> str:
        uri = self._token_info["sr"]
        return urllib.parse.unquote(uri)

    @property
    def signature(self) -> str:
        signature = self._token_info["sig"]
        return urllib.parse.unquote(signature)


def format_resource_uri(hostname: str, device_id: str) -> str:
    """Format the (not yet URL encoded) resource URI for a device on IoT Hub"""
    return "{hostname}/devices/{device_id}".format(hostname=hostname, device_id=device_id)


def compute_expiry(now: Timestamp, expires_in_minutes: int) -> int:
    """Return the expiry of a token, in whole seconds since epoch, rounded up.

    :param now: The time the token is being generated at
    :type now: datetime or number of seconds since epoch
    :param int expires_in_minutes: How long the token remains valid for
    """
    if isinstance(now, datetime.datetime):
        delta = _as_utc(now) + datetime.timedelta(minutes=expires_in_minutes) - EPOCH
        # timedelta normalizes so that only .days may be negative, which makes this an exact
        # ceiling without going through float seconds
        seconds = delta.days * 86400 + delta.seconds
        if delta.microseconds:
            seconds += 1
        return seconds
    else:
        return math.ceil(now + expires_in_minutes * 60)


def generate_sastoken(
    resource_uri: str, signing_key_b64: str, expires_in_minutes: int, now: Timestamp
) -> str:
    """Generate a SAS Token string signed with a symmetric key.

    The output is fully determined by the arguments. No clock is read.

    :param str resource_uri: The URI of the resource being accessed (not URL encoded)
    :param str signing_key_b64: The symmetric key (base64 encoded) to sign with
    :param int expires_in_minutes: Number of minutes (from 'now') before the token expires
    :param now: The time the token is generated at
    :type now: datetime or number of seconds since epoch

    :returns: A SAS Token string
    :raises: InvalidKeyEncoding if the signing key is not valid base64
    """
    signing_mechanism = SymmetricKeySigningMechanism(signing_key_b64)
    return _build_token(signing_mechanism, resource_uri, compute_expiry(now, expires_in_minutes))


def generate_sastoken_from_raw_key(
    resource_uri: str, signing_key: bytes, expires_in_minutes: int, now: Timestamp
) -> str:
    """Same as generate_sastoken(), but using an already decoded symmetric key"""
    signing_mechanism = SymmetricKeySigningMechanism.from_raw_key(signing_key)
    return _build_token(signing_mechanism, resource_uri, compute_expiry(now, expires_in_minutes))


def _build_token(
    signing_mechanism: SymmetricKeySigningMechanism, resource_uri: str, expiry_time: int
) -> str:
    url_encoded_uri = urllib.parse.quote(resource_uri, safe="")
    message = url_encoded_uri + "\n" + str(expiry_time)
    signature = signing_mechanism.sign(message)
    url_encoded_signature = urllib.parse.quote(signature, safe="")
    logger.debug("Generated SAS Token for {} expiring at {}".format(url_encoded_uri, expiry_time))
    return TOKEN_FORMAT.format(
        resource=url_encoded_uri,
        signature=url_encoded_signature,
        expiry=str(expiry_time),
    )


def _as_utc(when: datetime.datetime) -> datetime.datetime:
    if when.tzinfo is None:
        return when.replace(tzinfo=datetime.timezone.utc)
    return when.astimezone(datetime.timezone.utc)


def _to_epoch_seconds(when: Timestamp) -> float:
    if isinstance(when, datetime.datetime):
        return (_as_utc(when) - EPOCH).total_seconds()
    return float(when)


def _get_sastoken_info_from_string(sastoken_string: str) -> SasTokenInfo:
    """Given a SAS Token string, return a dictionary of it's keys and values"""
    pieces = sastoken_string.split(TOKEN_PREFIX)
    if len(pieces) != 2 or pieces[0] != "":
        raise SasTokenError("Invalid SAS Token string: Not a SAS Token")

    # Get sastoken info as dictionary
    try:
        sastoken_info = dict(map(str.strip, sub.split("=", 1)) for sub in pieces[1].split("&"))
    except ValueError as e:
        raise SasTokenError("Invalid SAS Token string: Incorrectly formatted") from e

    # Validate that all required fields are present
    if not all(key in sastoken_info for key in REQUIRED_SASTOKEN_FIELDS):
        raise SasTokenError("Invalid SAS Token string: Not all required fields present")

    # Warn if extraneous fields are present
    if not all(key in REQUIRED_SASTOKEN_FIELDS for key in sastoken_info):
        logger.warning("Unexpected fields present in SAS Token")

    if not sastoken_info["se"].isdigit():
        raise SasTokenError("Invalid SAS Token string: Expiry is not a whole number")

    return SasTokenInfo(sr=sastoken_info["sr"], sig=sastoken_info["sig"], se=sastoken_info["se"])
