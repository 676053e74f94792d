# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See License.txt in the project root for
# license information.
# --------------------------------------------------------------------------

# NOTE: Device ID is never URL encoded in a topic string, as IoT Hub does not do URL decoding
# on it.


def _get_topic_base(device_id: str) -> str:
    """
    return the string that is at the beginning of all topics for this device
    """
    return "devices/" + str(device_id)


def get_c2d_topic_for_subscribe(device_id: str) -> str:
    """
    :return: The topic for cloud to device messages. It is of the format
    "devices/<deviceid>/messages/devicebound/#"
    """
    return _get_topic_base(device_id) + "/messages/devicebound/#"


def get_telemetry_topic_for_publish(device_id: str) -> str:
    """
    :return: The topic for telemetry messages. It is of the format
    "devices/<deviceid>/messages/events/"
    """
    return _get_topic_base(device_id) + "/messages/events/"


def get_username(hostname: str, device_id: str) -> str:
    """
    :return: The MQTT username for the device. It is of the format "<hostname>/<deviceid>"
    """
    return hostname + "/" + device_id


def is_c2d_topic(topic: str, device_id: str) -> bool:
    """
    Topics for C2D message are of the following format:
    devices/<deviceId>/messages/devicebound
    """
    return topic.startswith(_get_topic_base(device_id) + "/messages/devicebound")
