# -------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

import base64
import datetime
import logging
import pytest
from iothub_mqtt_direct import connection_string as cs
from iothub_mqtt_direct.connection_string import ConnectionDescriptor, parse
from iothub_mqtt_direct.exceptions import (
    ParseError,
    WrongFieldCount,
    MalformedField,
    EmptyValue,
    InvalidKeyEncoding,
)
from iothub_mqtt_direct.sastoken import SasToken, generate_sastoken

logging.basicConfig(level=logging.DEBUG)

fake_hostname = "myhub.azure-devices.net"
fake_device_id = "dev1"
fake_shared_access_key = "a2V5MTIz"  # base64("key123")
fake_connection_string = "HostName={};DeviceId={};SharedAccessKey={}".format(
    fake_hostname, fake_device_id, fake_shared_access_key
)
# One hour before 1700000000 (2023-11-14T22:13:20Z)
fake_now = datetime.datetime(2023, 11, 14, 21, 13, 20, tzinfo=datetime.timezone.utc)


@pytest.mark.describe("parse()")
class TestParse:
    @pytest.mark.it("Returns a ConnectionDescriptor containing the values of the connection string")
    def test_returns_descriptor(self):
        descriptor = parse(fake_connection_string, now=fake_now)
        assert isinstance(descriptor, ConnectionDescriptor)
        assert descriptor.host_name == fake_hostname
        assert descriptor.device_id == fake_device_id
        assert descriptor.shared_key == base64.b64decode(fake_shared_access_key)
        assert descriptor.shared_key == b"key123"

    @pytest.mark.it("Accepts key names in any case")
    @pytest.mark.parametrize(
        "input_string",
        [
            pytest.param(
                "hostname=myhub.azure-devices.net;deviceid=dev1;sharedaccesskey=a2V5MTIz",
                id="Lowercase",
            ),
            pytest.param(
                "HOSTNAME=myhub.azure-devices.net;DEVICEID=dev1;SHAREDACCESSKEY=a2V5MTIz",
                id="Uppercase",
            ),
            pytest.param(
                "hOsTnAmE=myhub.azure-devices.net;DeViCeId=dev1;sHaReDaCcEsSkEy=a2V5MTIz",
                id="Mixed case",
            ),
        ],
    )
    def test_case_insensitive_keys(self, input_string):
        descriptor = parse(input_string, now=fake_now)
        assert descriptor == parse(fake_connection_string, now=fake_now)

    @pytest.mark.it("Keeps the case of the values")
    def test_value_case_preserved(self):
        descriptor = parse(
            "HostName=MyHub.Azure-Devices.net;DeviceId=MyDevice;SharedAccessKey=a2V5MTIz",
            now=fake_now,
        )
        assert descriptor.host_name == "MyHub.Azure-Devices.net"
        assert descriptor.device_id == "MyDevice"

    @pytest.mark.it("Keeps '=' characters contained in the shared access key")
    def test_key_padding_preserved(self):
        # base64("key12") requires padding
        key = base64.b64encode(b"key12").decode("ascii")
        assert key.endswith("=")
        descriptor = parse(
            "HostName=h;DeviceId=d;SharedAccessKey={}".format(key),
            now=fake_now,
        )
        assert descriptor.shared_key == b"key12"

    @pytest.mark.it("Raises WrongFieldCount if the connection string does not have 3 fields")
    @pytest.mark.parametrize(
        "input_string",
        [
            pytest.param("", id="Empty string"),
            pytest.param("garbage", id="Not a connection string"),
            pytest.param("HostName=h;DeviceId=d", id="2 fields"),
            pytest.param(
                "HostName=h;DeviceId=d;SharedAccessKey=a2V5;ModuleId=m", id="4 fields"
            ),
            pytest.param("HostName=h;DeviceId=d;SharedAccessKey=a2V5;", id="Trailing delimiter"),
        ],
    )
    def test_wrong_field_count(self, input_string):
        with pytest.raises(WrongFieldCount):
            parse(input_string, now=fake_now)

    @pytest.mark.it("Raises MalformedField if a field does not start with its expected key")
    @pytest.mark.parametrize(
        "input_string",
        [
            pytest.param("Host=h;DeviceId=d;SharedAccessKey=a2V5", id="Bad first key"),
            pytest.param("HostName=h;Device=d;SharedAccessKey=a2V5", id="Bad second key"),
            pytest.param("HostName=h;DeviceId=d;SharedAccessKeyName=a2V5", id="Bad third key"),
            pytest.param("DeviceId=d;HostName=h;SharedAccessKey=a2V5", id="Wrong order"),
            pytest.param("HostName h;DeviceId=d;SharedAccessKey=a2V5", id="Missing separator"),
            pytest.param(" HostName=h;DeviceId=d;SharedAccessKey=a2V5", id="Leading whitespace"),
        ],
    )
    def test_malformed_field(self, input_string):
        with pytest.raises(MalformedField):
            parse(input_string, now=fake_now)

    @pytest.mark.it("Raises EmptyValue if a field has no value")
    @pytest.mark.parametrize(
        "input_string",
        [
            pytest.param("HostName=;DeviceId=d;SharedAccessKey=a2V5", id="Empty HostName"),
            pytest.param("HostName=h;DeviceId=;SharedAccessKey=a2V5", id="Empty DeviceId"),
            pytest.param("HostName=h;DeviceId=d;SharedAccessKey=", id="Empty SharedAccessKey"),
            pytest.param("HostName=  ;DeviceId=d;SharedAccessKey=a2V5", id="Whitespace HostName"),
        ],
    )
    def test_empty_value(self, input_string):
        with pytest.raises(EmptyValue):
            parse(input_string, now=fake_now)

    @pytest.mark.it("Raises InvalidKeyEncoding if the shared access key is not valid base64")
    @pytest.mark.parametrize(
        "key",
        [
            pytest.param("not base64!", id="Invalid characters"),
            pytest.param("a2V5M", id="Invalid length"),
            pytest.param("====", id="Only padding"),
        ],
    )
    def test_invalid_key(self, key):
        with pytest.raises(InvalidKeyEncoding):
            parse("HostName=h;DeviceId=d;SharedAccessKey={}".format(key), now=fake_now)

    @pytest.mark.it("Raises errors that are all ParseErrors (and ValueErrors)")
    @pytest.mark.parametrize(
        "error_cls", [WrongFieldCount, MalformedField, EmptyValue, InvalidKeyEncoding]
    )
    def test_error_hierarchy(self, error_cls):
        assert issubclass(error_cls, ParseError)
        assert issubclass(error_cls, ValueError)

    @pytest.mark.it("Raises TypeError if the connection string is not a str")
    @pytest.mark.parametrize(
        "input_val",
        [
            pytest.param(2123, id="Integer"),
            pytest.param(b"HostName=h;DeviceId=d;SharedAccessKey=a2V5", id="Bytes"),
            pytest.param(None, id="None"),
        ],
    )
    def test_type_error(self, input_val):
        with pytest.raises(TypeError):
            parse(input_val, now=fake_now)

    @pytest.mark.it("Derives a password from the parsed values, expiry window and time")
    def test_password(self):
        descriptor = parse(fake_connection_string, expires_in_minutes=60, now=fake_now)
        expected = generate_sastoken(
            fake_hostname + "/devices/" + fake_device_id, fake_shared_access_key, 60, fake_now
        )
        assert descriptor.password == expected
        assert descriptor.expiry_time == 1700000000

    @pytest.mark.it("Uses a 60 minute expiry window by default")
    def test_default_expiry(self):
        descriptor = parse(fake_connection_string, now=fake_now)
        assert descriptor.expiry_time == 1700000000

    @pytest.mark.it("Uses the current time if none is provided")
    def test_current_time(self):
        before = datetime.datetime.now(datetime.timezone.utc)
        descriptor = parse(fake_connection_string, expires_in_minutes=10)
        after = datetime.datetime.now(datetime.timezone.utc)
        assert before.timestamp() + 600 <= descriptor.expiry_time <= after.timestamp() + 601

    @pytest.mark.it("Produces the same descriptor when re-parsing the canonical connection string")
    @pytest.mark.parametrize(
        "input_string",
        [
            pytest.param(fake_connection_string, id="Standard"),
            pytest.param(
                "hostname=other.host;deviceid=Some-Device_1;sharedaccesskey=a2V5MTI=",
                id="Lowercase keys and padded key",
            ),
        ],
    )
    def test_round_trip(self, input_string):
        descriptor = parse(input_string, now=fake_now)
        canonical = str(descriptor)
        assert canonical.startswith("HostName=")
        assert parse(canonical, now=fake_now) == descriptor


@pytest.mark.describe("ConnectionDescriptor")
class TestConnectionDescriptor:
    @pytest.fixture
    def descriptor(self):
        return parse(fake_connection_string, now=fake_now)

    @pytest.mark.it("Maintains all attributes as read-only properties")
    @pytest.mark.parametrize(
        "attr", ["host_name", "device_id", "shared_key", "password", "resource_uri", "expiry_time"]
    )
    def test_read_only(self, descriptor, attr):
        with pytest.raises(AttributeError):
            setattr(descriptor, attr, "new value")

    @pytest.mark.it("Has a resource URI of the form '<hostname>/devices/<device id>'")
    def test_resource_uri(self, descriptor):
        assert descriptor.resource_uri == "myhub.azure-devices.net/devices/dev1"

    @pytest.mark.it("Has a password that is a SAS Token for the resource URI")
    def test_password_is_sastoken(self, descriptor):
        token = SasToken(descriptor.password)
        assert token.resource_uri == descriptor.resource_uri

    @pytest.mark.it("Returns the canonical connection string as the string representation")
    def test_str(self, descriptor):
        assert str(descriptor) == fake_connection_string
        assert descriptor.to_connection_string() == fake_connection_string

    @pytest.mark.it("Does not include secrets in the repr")
    def test_repr(self, descriptor):
        r = repr(descriptor)
        assert fake_device_id in r
        assert fake_shared_access_key not in r
        assert "SharedAccessSignature" not in r

    @pytest.mark.it("Is equal to another descriptor with the same values and time")
    def test_equality(self, descriptor):
        other = ConnectionDescriptor(fake_hostname, fake_device_id, b"key123", now=fake_now)
        assert descriptor == other
        assert hash(descriptor) == hash(other)

    @pytest.mark.it("Is not equal to a descriptor created at a different time")
    def test_inequality(self, descriptor):
        other = ConnectionDescriptor(
            fake_hostname,
            fake_device_id,
            b"key123",
            now=fake_now + datetime.timedelta(seconds=1),
        )
        assert descriptor != other

    @pytest.mark.it("Raises EmptyValue if instantiated with an empty value")
    @pytest.mark.parametrize(
        "kwargs",
        [
            pytest.param({"host_name": "", "device_id": "d", "shared_key": b"k"}, id="HostName"),
            pytest.param({"host_name": "h", "device_id": "", "shared_key": b"k"}, id="DeviceId"),
            pytest.param({"host_name": "h", "device_id": "d", "shared_key": b""}, id="Key"),
        ],
    )
    def test_empty(self, kwargs):
        with pytest.raises(EmptyValue):
            ConnectionDescriptor(now=fake_now, **kwargs)

    @pytest.mark.it("Exposes the connection string field names as module constants")
    def test_constants(self):
        assert cs.HOST_NAME == "HostName"
        assert cs.DEVICE_ID == "DeviceId"
        assert cs.SHARED_ACCESS_KEY == "SharedAccessKey"
