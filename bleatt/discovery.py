"""Discovery of a peer's services, characteristics and descriptors."""

from __future__ import annotations

import struct
from typing import Optional

from bleatt.att import NO_CONNECTION, Att
from bleatt.characteristic import RemoteCharacteristic, RemoteDescriptor
from bleatt.remote import RemoteDevice, RemoteService
from bleatt.server import AttOpcode, AttributeType
from bleatt.uuid import Uuid

_FULL_RANGE_END = 0xFFFF
_DESCRIPTOR_UUID_LENGTH = 2


def discover_attributes(
    att: Att,
    address_type: int,
    address: bytes,
    service_uuid_filter: Optional[str] = None,
) -> bool:
    """Discover the attributes of a connected peer.

    Without a filter every service is rediscovered. With a filter, a
    service already known under that UUID ends the search at once;
    otherwise only matching services are added.
    """
    connection_handle = att.connection_handle(address_type, address)
    if connection_handle == NO_CONNECTION:
        return False
    if not att.exchange_mtu(connection_handle):
        return False
    device = att.ensure_device(connection_handle)
    if device is None:
        return False
    if service_uuid_filter is None:
        device.clear_services()
    else:
        wanted = service_uuid_filter.lower()
        if any(service.uuid.lower() == wanted for service in device.services):
            return True
    return (
        discover_services(att, connection_handle, device, service_uuid_filter)
        and discover_characteristics(att, connection_handle, device)
        and discover_descriptors(att, connection_handle, device)
    )


def discover_services(
    att: Att,
    connection_handle: int,
    device: RemoteDevice,
    service_uuid_filter: Optional[str] = None,
) -> bool:
    """Read the primary services of a peer into ``device``."""
    wanted = Uuid(service_uuid_filter) if service_uuid_filter is not None else None
    req_start = 0x0001
    req_end = _FULL_RANGE_END
    while req_end == _FULL_RANGE_END:
        response = att.read_by_group_req(
            connection_handle, req_start, req_end, AttributeType.SERVICE
        )
        if not response:
            return False
        if response[0] != AttOpcode.READ_BY_GROUP_RESP:
            break
        entry_size = response[1]
        if entry_size <= 4:
            return False
        uuid_len = entry_size - 4
        for offset in range(2, len(response), entry_size):
            if offset + 4 > len(response):
                break
            start_handle, end_handle = struct.unpack_from("<HH", response, offset)
            uuid_bytes = response[offset + 4 : offset + 4 + uuid_len]
            if wanted is None or (
                uuid_len == wanted.length and uuid_bytes == wanted.data[:uuid_len]
            ):
                device.add_service(RemoteService(uuid_bytes, start_handle, end_handle))
            req_start = (end_handle + 1) & 0xFFFF
            if req_start == 0x0000:
                req_end = 0x0000
    return True


def discover_characteristics(att: Att, connection_handle: int, device: RemoteDevice) -> bool:
    """Read the characteristics of every service of ``device``."""
    for service in device.services:
        req_start = service.start_handle
        req_end = service.end_handle
        while True:
            response = att.read_by_type_req(
                connection_handle, req_start, req_end, AttributeType.CHARACTERISTIC
            )
            if not response:
                return False
            if response[0] != AttOpcode.READ_BY_TYPE_RESP:
                break
            entry_size = response[1]
            if entry_size <= 5:
                return False
            uuid_len = entry_size - 5
            for offset in range(2, len(response), entry_size):
                if offset + 5 > len(response):
                    break
                start_handle, properties, value_handle = struct.unpack_from(
                    "<HBH", response, offset
                )
                uuid_bytes = response[offset + 5 : offset + 5 + uuid_len]
                service.add_characteristic(
                    RemoteCharacteristic(
                        uuid_bytes,
                        att,
                        connection_handle,
                        start_handle,
                        properties,
                        value_handle,
                    )
                )
                req_start = (value_handle + 1) & 0xFFFF
    return True


def discover_descriptors(att: Att, connection_handle: int, device: RemoteDevice) -> bool:
    """Read the descriptors following each characteristic of ``device``."""
    for service in device.services:
        characteristics = service.characteristics
        followers = list(characteristics[1:]) + [None]
        for characteristic, following in zip(characteristics, followers):
            req_start = characteristic.value_handle + 1
            req_end = following.value_handle if following is not None else service.end_handle
            if req_start > req_end:
                continue
            while True:
                response = att.find_info_req(connection_handle, req_start, req_end)
                if not response:
                    return False
                if response[0] != AttOpcode.FIND_INFO_RESP:
                    break
                entry_size = response[1] * 4
                if entry_size == 0:
                    return False
                for offset in range(2, len(response), entry_size):
                    if offset + 2 > len(response):
                        break
                    (handle,) = struct.unpack_from("<H", response, offset)
                    uuid_bytes = response[offset + 2 : offset + 2 + _DESCRIPTOR_UUID_LENGTH]
                    characteristic.add_descriptor(
                        RemoteDescriptor(uuid_bytes, att, connection_handle, handle)
                    )
                    req_start = (handle + 1) & 0xFFFF
    return True