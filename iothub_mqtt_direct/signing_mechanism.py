# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------
"""This module defines an abstract SigningMechanism, as well as a symmetric key implementation
"""

import abc
import base64
import binascii
import hmac
import hashlib
from typing import AnyStr
from .exceptions import InvalidKeyEncoding


def decode_key(key: AnyStr) -> bytes:
    """Decode a base64 symmetric key into raw bytes.

    :param key: Symmetric Key (base64 encoded)
    :type key: str or bytes

    :raises: InvalidKeyEncoding if the key is not valid base64, or decodes to nothing
    """
    # Convert key to bytes (if not already)
    if isinstance(key, str):
        try:
            key_bytes = key.encode("ascii")
        except UnicodeEncodeError:
            raise InvalidKeyEncoding("Invalid Symmetric Key - non-ASCII characters")
    else:
        key_bytes = key

    try:
        decoded = base64.b64decode(key_bytes, validate=True)
    except binascii.Error as e:
        raise InvalidKeyEncoding("Invalid Symmetric Key - not base64") from e
    if not decoded:
        raise InvalidKeyEncoding("Invalid Symmetric Key - empty")
    return decoded


class SigningMechanism(abc.ABC):
    @abc.abstractmethod
    def sign(self, data_str: AnyStr) -> str:
        pass


class SymmetricKeySigningMechanism(SigningMechanism):
    def __init__(self, key: AnyStr) -> None:
        """
        A mechanism that signs data using a symmetric key

        :param key: Symmetric Key (base64 encoded)
        :type key: str or bytes

        :raises: InvalidKeyEncoding if provided key is invalid
        """
        self._signing_key = decode_key(key)

    @classmethod
    def from_raw_key(cls, key: bytes) -> "SymmetricKeySigningMechanism":
        """Create a SymmetricKeySigningMechanism from an already decoded key"""
        return cls(base64.b64encode(key))

    def sign(self, data_str: AnyStr) -> str:
        """
        Sign a data string with symmetric key and the HMAC-SHA256 algorithm.

        :param data_str: Data string to be signed
        :type data_str: str or bytes

        :returns: The signed data (base64 encoded)
        :rtype: str
        """
        # Convert data_str to bytes (if not already)
        if isinstance(data_str, str):
            data_bytes = data_str.encode("utf-8")
        else:
            data_bytes = data_str

        # Derive signature via HMAC-SHA256 algorithm
        try:
            hmac_digest = hmac.HMAC(
                key=self._signing_key, msg=data_bytes, digestmod=hashlib.sha256
            ).digest()
        except TypeError:
            raise ValueError("Unable to sign string using the provided symmetric key")
        signed_data = base64.b64encode(hmac_digest)
        # Convert from bytes to string
        return signed_data.decode("utf-8")
