"""Server side of the attribute protocol over a local attribute table."""

from __future__ import annotations

import enum
import struct
from typing import Any, Callable, Iterable, Optional

from bleatt.properties import Property
from bleatt.uuid import Uuid

_TYPE_SIZE = 2
_CCCD_UUID_DATA = b"\x02\x29"
_SECONDARY_SERVICE = 0x2801

SendCallback = Callable[[int, bytes], None]
WrittenHandler = Callable[[Any, "LocalCharacteristic"], None]
CccdHandler = Callable[[Any, "LocalCharacteristic", int], None]


class AttOpcode(enum.IntEnum):
    """Attribute protocol operation codes."""

    ERROR = 0x01
    MTU_REQ = 0x02
    MTU_RESP = 0x03
    FIND_INFO_REQ = 0x04
    FIND_INFO_RESP = 0x05
    FIND_BY_TYPE_REQ = 0x06
    FIND_BY_TYPE_RESP = 0x07
    READ_BY_TYPE_REQ = 0x08
    READ_BY_TYPE_RESP = 0x09
    READ_REQ = 0x0A
    READ_RESP = 0x0B
    READ_BLOB_REQ = 0x0C
    READ_BLOB_RESP = 0x0D
    READ_MULTI_REQ = 0x0E
    READ_MULTI_RESP = 0x0F
    READ_BY_GROUP_REQ = 0x10
    READ_BY_GROUP_RESP = 0x11
    WRITE_REQ = 0x12
    WRITE_RESP = 0x13
    WRITE_CMD = 0x52
    PREP_WRITE_REQ = 0x16
    PREP_WRITE_RESP = 0x17
    EXEC_WRITE_REQ = 0x18
    EXEC_WRITE_RESP = 0x19
    HANDLE_NOTIFY = 0x1B
    HANDLE_IND = 0x1D
    HANDLE_CNF = 0x1E
    SIGNED_WRITE_CMD = 0xD2


class AttErrorCode(enum.IntEnum):
    """Attribute protocol error codes."""

    INVALID_HANDLE = 0x01
    READ_NOT_PERM = 0x02
    WRITE_NOT_PERM = 0x03
    INVALID_PDU = 0x04
    AUTHENTICATION = 0x05
    REQ_NOT_SUPP = 0x06
    INVALID_OFFSET = 0x07
    AUTHORIZATION = 0x08
    PREP_QUEUE_FULL = 0x09
    ATTR_NOT_FOUND = 0x0A
    ATTR_NOT_LONG = 0x0B
    INSUFF_ENCR_KEY_SIZE = 0x0C
    INVAL_ATTR_VALUE_LEN = 0x0D
    UNLIKELY = 0x0E
    INSUFF_ENC = 0x0F
    UNSUPP_GRP_TYPE = 0x10
    INSUFF_RESOURCES = 0x11


class AttributeType(enum.IntEnum):
    """The attribute type UUIDs of table entries."""

    SERVICE = 0x2800
    CHARACTERISTIC = 0x2803
    DESCRIPTOR = 0x2900


def _u16(value: int) -> bytes:
    return struct.pack("<H", value & 0xFFFF)


def _read_u16(data: bytes, offset: int = 0) -> int:
    return struct.unpack_from("<H", data, offset)[0]


class _LocalAttribute:
    type: AttributeType

    def __init__(self, uuid: str) -> None:
        self.uuid = Uuid(uuid)

    @property
    def uuid_data(self) -> bytes:
        """The UUID bytes, least significant first."""
        return self.uuid.data

    @property
    def uuid_length(self) -> int:
        """The UUID size in bytes."""
        return self.uuid.length

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.uuid.text!r})"


class LocalDescriptor(_LocalAttribute):
    """A descriptor in the local attribute table."""

    type = AttributeType.DESCRIPTOR

    def __init__(self, uuid: str, value: bytes | bytearray = b"") -> None:
        super().__init__(uuid)
        self.value = bytes(value)
        self.handle = 0

    @property
    def value_size(self) -> int:
        """The length of the descriptor value."""
        return len(self.value)


class LocalCharacteristic(_LocalAttribute):
    """A characteristic in the local attribute table.

    A characteristic that notifies or indicates carries a client
    characteristic configuration descriptor as its first descriptor.
    """

    type = AttributeType.CHARACTERISTIC

    def __init__(
        self,
        uuid: str,
        properties: int,
        value_size: int,
        value: bytes | bytearray = b"",
    ) -> None:
        super().__init__(uuid)
        if value_size < 0:
            raise ValueError("value_size must not be negative")
        self.properties = Property(properties & 0xFF)
        self.value_size = value_size
        self._value = bytes(value)[:value_size]
        self.handle = 0
        self.value_handle = 0
        self.cccd_value = 0
        self.on_written: Optional[WrittenHandler] = None
        self.on_cccd_written: Optional[CccdHandler] = None
        self.descriptors: list[LocalDescriptor] = []
        self._cccd: Optional[LocalDescriptor] = None
        if self.properties & (Property.NOTIFY | Property.INDICATE):
            self._cccd = LocalDescriptor("2902", _u16(0))
            self.descriptors.append(self._cccd)

    @property
    def value(self) -> bytes:
        """The current value."""
        return self._value

    @property
    def value_length(self) -> int:
        """The length of the current value."""
        return len(self._value)

    def write_value(self, peer: Any, value: bytes | bytearray) -> None:
        """Store a value written by a peer, capped to the value size."""
        self._value = bytes(value)[: self.value_size]
        if self.on_written is not None:
            self.on_written(peer, self)

    def write_cccd_value(self, peer: Any, value: int) -> None:
        """Store the configuration written by a peer, reporting changes."""
        value &= 0xFFFF
        if value == self.cccd_value:
            return
        self.cccd_value = value
        if self._cccd is not None:
            self._cccd.value = _u16(value)
        if self.on_cccd_written is not None:
            self.on_cccd_written(peer, self, value)

    def read_value(self, peer: Any, offset: int, length: int) -> bytes:
        """Return up to length bytes of the value from offset."""
        return self._value[offset : offset + length]


class LocalService(_LocalAttribute):
    """A primary service in the local attribute table."""

    type = AttributeType.SERVICE

    def __init__(self, uuid: str, characteristics: Iterable[LocalCharacteristic] = ()) -> None:
        super().__init__(uuid)
        self.characteristics = list(characteristics)
        self.start_handle = 0
        self.end_handle = 0


class AttributeTable:
    """The flat list of local attributes; handle n is entry n - 1.

    A characteristic occupies two entries: its declaration and its value.
    """

    def __init__(self) -> None:
        self._entries: list[_LocalAttribute] = []

    def add_service(self, service: LocalService) -> None:
        """Append a service with its characteristics and descriptors."""
        service.start_handle = len(self._entries) + 1
        self._entries.append(service)
        for characteristic in service.characteristics:
            characteristic.handle = len(self._entries) + 1
            self._entries.append(characteristic)
            characteristic.value_handle = len(self._entries) + 1
            self._entries.append(characteristic)
            for descriptor in characteristic.descriptors:
                descriptor.handle = len(self._entries) + 1
                self._entries.append(descriptor)
        service.end_handle = len(self._entries)

    def attribute(self, index: int) -> Any:
        """The entry at a zero-based index."""
        if not 0 <= index < len(self._entries):
            raise IndexError(f"attribute index out of range: {index}")
        return self._entries[index]

    def __len__(self) -> int:
        return len(self._entries)


class AttServer:
    """Answers attribute protocol requests from the local table."""

    def __init__(self, table: AttributeTable, send: SendCallback) -> None:
        self._table = table
        self._send = send
        self._long_write_handle = 0
        self._long_write_value = bytearray()
        self._long_write_length = 0

    @property
    def long_write_handle(self) -> int:
        """The handle of the queued long write, or 0."""
        return self._long_write_handle

    def handle_request(
        self, connection_handle: int, mtu: int, peer: Any, opcode: int, data: bytes
    ) -> None:
        """Handle one request PDU; data is the payload after the opcode."""
        data = bytes(data)
        if opcode == AttOpcode.FIND_INFO_REQ:
            self._find_info(connection_handle, mtu, data)
        elif opcode == AttOpcode.FIND_BY_TYPE_REQ:
            self._find_by_type(connection_handle, mtu, data)
        elif opcode == AttOpcode.READ_BY_TYPE_REQ:
            self._read_by_type(connection_handle, mtu, data)
        elif opcode == AttOpcode.READ_BY_GROUP_REQ:
            self._read_by_group(connection_handle, mtu, data)
        elif opcode in (AttOpcode.READ_REQ, AttOpcode.READ_BLOB_REQ):
            self._read_or_blob(connection_handle, mtu, peer, opcode, data)
        elif opcode in (AttOpcode.WRITE_REQ, AttOpcode.WRITE_CMD):
            self._write_req_or_cmd(connection_handle, peer, opcode, data)
        elif opcode == AttOpcode.PREP_WRITE_REQ:
            self._prep_write(connection_handle, data)
        elif opcode == AttOpcode.EXEC_WRITE_REQ:
            self._exec_write(connection_handle, peer, data)
        else:
            self.send_error(connection_handle, opcode, 0x0000, AttErrorCode.REQ_NOT_SUPP)

    def send_error(self, connection_handle: int, opcode: int, handle: int, code: int) -> None:
        """Send an error response."""
        pdu = bytes([AttOpcode.ERROR, opcode & 0xFF]) + _u16(handle) + bytes([code & 0xFF])
        self._send(connection_handle, pdu)

    def reset_long_write(self) -> None:
        """Discard any queued long write."""
        self._long_write_handle = 0
        self._long_write_length = 0

    def clear_cccds(self, peer: Any) -> None:
        """Reset every characteristic's configuration to zero."""
        for index in range(len(self._table)):
            attribute = self._table.attribute(index)
            if attribute.type == AttributeType.CHARACTERISTIC:
                attribute.write_cccd_value(peer, 0x0000)

    def _lookup(self, handle: int) -> Any:
        index = (handle - 1) & 0xFFFF
        if index >= len(self._table):
            return None
        return self._table.attribute(index)

    def _bounds(self, start: int, end: int) -> tuple[int, int]:
        return (start - 1) & 0xFFFF, (end - 1) & 0xFFFF

    def _find_info(self, conn: int, mtu: int, data: bytes) -> None:
        if len(data) != 4:
            start = _read_u16(data) if len(data) >= 2 else 0
            self.send_error(conn, AttOpcode.FIND_INFO_REQ, start, AttErrorCode.INVALID_PDU)
            return
        start, end = _read_u16(data, 0), _read_u16(data, 2)
        response = bytearray([AttOpcode.FIND_INFO_RESP, 0x00])
        index, last = self._bounds(start, end)
        while index < len(self._table) and index <= last:
            attribute = self._table.attribute(index)
            handle = index + 1
            is_value = (
                attribute.type == AttributeType.CHARACTERISTIC
                and attribute.value_handle == handle
            )
            is_descriptor = attribute.type == AttributeType.DESCRIPTOR
            uuid_len = attribute.uuid_length if is_value or is_descriptor else _TYPE_SIZE
            info_type = 0x01 if uuid_len == 2 else 0x02
            if response[1] == 0:
                response[1] = info_type
            if response[1] != info_type:
                break
            response += _u16(handle)
            if is_value or is_descriptor:
                response += attribute.uuid_data[:uuid_len]
            else:
                response += _u16(attribute.type)
            if len(response) + 2 + uuid_len > mtu:
                break
            index += 1
        if len(response) == 2:
            self.send_error(conn, AttOpcode.FIND_INFO_REQ, start, AttErrorCode.ATTR_NOT_FOUND)
        else:
            self._send(conn, bytes(response))

    def _find_by_type(self, conn: int, mtu: int, data: bytes) -> None:
        if len(data) < 6:
            start = _read_u16(data) if len(data) >= 2 else 0
            self.send_error(conn, AttOpcode.FIND_BY_TYPE_REQ, start, AttErrorCode.INVALID_PDU)
            return
        start, end, attr_type = struct.unpack_from("<HHH", data)
        value = data[6:]
        response = bytearray([AttOpcode.FIND_BY_TYPE_RESP])
        if attr_type == AttributeType.SERVICE:
            index, last = self._bounds(start, end)
            while index < len(self._table) and index <= last:
                attribute = self._table.attribute(index)
                if (
                    attribute.type == attr_type
                    and attribute.uuid_length == len(value)
                    and attribute.uuid_data == value
                ):
                    response += _u16(attribute.start_handle) + _u16(attribute.end_handle)
                if len(response) + 4 > mtu:
                    break
                index += 1
        if len(response) == 1:
            self.send_error(conn, AttOpcode.FIND_BY_TYPE_REQ, start, AttErrorCode.ATTR_NOT_FOUND)
        else:
            self._send(conn, bytes(response))

    def _read_by_group(self, conn: int, mtu: int, data: bytes) -> None:
        group = _read_u16(data, 4) if len(data) >= 6 else None
        if len(data) != 6 or group not in (AttributeType.SERVICE, _SECONDARY_SERVICE):
            start = _read_u16(data) if len(data) >= 2 else 0
            self.send_error(
                conn, AttOpcode.READ_BY_GROUP_REQ, start, AttErrorCode.UNSUPP_GRP_TYPE
            )
            return
        start, end = _read_u16(data, 0), _read_u16(data, 2)
        response = bytearray([AttOpcode.READ_BY_GROUP_RESP, 0x00])
        index, last = self._bounds(start, end)
        while index < len(self._table) and index <= last:
            attribute = self._table.attribute(index)
            index += 1
            if attribute.type != group:
                continue
            uuid_len = attribute.uuid_length
            info_size = 6 if uuid_len == 2 else 20
            if response[1] == 0:
                response[1] = info_size
            if response[1] != info_size:
                break
            response += _u16(attribute.start_handle) + _u16(attribute.end_handle)
            response += attribute.uuid_data[:uuid_len]
            if len(response) + info_size > mtu:
                break
        if len(response) == 2:
            self.send_error(conn, AttOpcode.READ_BY_GROUP_REQ, start, AttErrorCode.ATTR_NOT_FOUND)
        else:
            self._send(conn, bytes(response))

    def _read_or_blob(self, conn: int, mtu: int, peer: Any, opcode: int, data: bytes) -> None:
        is_read = opcode == AttOpcode.READ_REQ
        if len(data) != (2 if is_read else 4):
            self.send_error(conn, opcode, 0x0000, AttErrorCode.INVALID_PDU)
            return
        handle = _read_u16(data)
        offset = 0 if is_read else _read_u16(data, 2)
        attribute = self._lookup(handle)
        if attribute is None:
            self.send_error(conn, opcode, handle, AttErrorCode.ATTR_NOT_FOUND)
            return
        response = bytearray([AttOpcode.READ_RESP if is_read else AttOpcode.READ_BLOB_RESP])
        if attribute.type == AttributeType.SERVICE:
            if offset:
                self.send_error(
                    conn, AttErrorCode.ATTR_NOT_LONG, handle, AttErrorCode.INVALID_PDU
                )
                return
            response += attribute.uuid_data
        elif attribute.type == AttributeType.CHARACTERISTIC:
            if attribute.handle == handle:
                if offset:
                    self.send_error(conn, opcode, handle, AttErrorCode.ATTR_NOT_LONG)
                    return
                response.append(int(attribute.properties))
                response += _u16(attribute.value_handle)
                response += attribute.uuid_data
            else:
                if not attribute.properties & Property.READ:
                    self.send_error(conn, opcode, handle, AttErrorCode.READ_NOT_PERM)
                    return
                value_length = attribute.value_length
                if offset >= value_length:
                    self.send_error(conn, opcode, handle, AttErrorCode.INVALID_OFFSET)
                    return
                length = min(mtu - len(response), value_length - offset)
                if peer is not None:
                    response += attribute.read_value(peer, offset, length)[:length]
        elif attribute.type == AttributeType.DESCRIPTOR:
            value_length = attribute.value_size
            if offset >= value_length:
                self.send_error(conn, opcode, handle, AttErrorCode.INVALID_OFFSET)
                return
            length = min(mtu - len(response), value_length - offset)
            response += attribute.value[offset : offset + length]
        self._send(conn, bytes(response))

    def _read_by_type(self, conn: int, mtu: int, data: bytes) -> None:
        if len(data) != 6:
            start = _read_u16(data) if len(data) >= 2 else 0
            self.send_error(conn, AttOpcode.READ_BY_TYPE_REQ, start, AttErrorCode.INVALID_PDU)
            return
        start, end, wanted = struct.unpack_from("<HHH", data)
        response = bytearray([AttOpcode.READ_BY_TYPE_RESP, 0x00])
        index, last = self._bounds(start, end)
        while index < len(self._table) and index <= last:
            attribute = self._table.attribute(index)
            handle = index + 1
            index += 1
            if attribute.type == wanted:
                if attribute.type != AttributeType.CHARACTERISTIC:
                    continue
                if attribute.value_handle == handle:
                    continue
                uuid_len = attribute.uuid_length
                type_size = 7 if uuid_len == 2 else 21
                if response[1] == 0:
                    response[1] = type_size
                if response[1] != type_size:
                    break
                response += _u16(handle)
                response.append(int(attribute.properties))
                response += _u16(handle + 1)
                response += attribute.uuid_data[:uuid_len]
                index += 1
                if len(response) + type_size > mtu:
                    break
            elif (
                attribute.type == AttributeType.CHARACTERISTIC
                and attribute.uuid_length == 2
                and attribute.uuid_data == _u16(wanted)
            ):
                response += _u16(handle)
                length = min((mtu - len(response)) & 0xFFFF, attribute.value_length)
                response += attribute.value[:length]
                response[1] = (2 + length) & 0xFF
                break
        if len(response) == 2:
            self.send_error(conn, AttOpcode.READ_BY_TYPE_REQ, start, AttErrorCode.ATTR_NOT_FOUND)
        else:
            self._send(conn, bytes(response))

    def _write_req_or_cmd(self, conn: int, peer: Any, opcode: int, data: bytes) -> None:
        with_response = opcode == AttOpcode.WRITE_REQ

        def refuse(handle: int, code: AttErrorCode) -> None:
            if with_response:
                self.send_error(conn, AttOpcode.WRITE_REQ, handle, code)

        if len(data) < 2:
            refuse(0x0000, AttErrorCode.INVALID_PDU)
            return
        handle = _read_u16(data)
        attribute = self._lookup(handle)
        if attribute is None:
            refuse(handle, AttErrorCode.ATTR_NOT_FOUND)
            return
        value = data[2:]
        if attribute.type == AttributeType.CHARACTERISTIC:
            if handle != attribute.value_handle or with_response:
                needed = Property.WRITE
            else:
                needed = Property.WRITE_WITHOUT_RESPONSE
            if not attribute.properties & needed:
                refuse(handle, AttErrorCode.WRITE_NOT_PERM)
                return
            if peer is not None:
                attribute.write_value(peer, value)
        elif attribute.type == AttributeType.DESCRIPTOR:
            if attribute.uuid_length != 2 or attribute.uuid_data != _CCCD_UUID_DATA:
                refuse(handle, AttErrorCode.WRITE_NOT_PERM)
                return
            owner = self._lookup(handle - 1)
            if owner is None or owner.type != AttributeType.CHARACTERISTIC:
                refuse(handle, AttErrorCode.WRITE_NOT_PERM)
                return
            if peer is not None:
                owner.write_cccd_value(peer, _read_u16(value[:2].ljust(2, b"\x00")))
        else:
            refuse(handle, AttErrorCode.WRITE_NOT_PERM)
            return
        if with_response:
            self._send(conn, bytes([AttOpcode.WRITE_RESP]))

    def _prep_write(self, conn: int, data: bytes) -> None:
        op = AttOpcode.PREP_WRITE_REQ
        if len(data) < 4:
            self.send_error(conn, op, 0x0000, AttErrorCode.INVALID_PDU)
            return
        handle, offset = struct.unpack_from("<HH", data)
        attribute = self._lookup(handle)
        if attribute is None:
            self.send_error(conn, op, handle, AttErrorCode.ATTR_NOT_FOUND)
            return
        if attribute.type != AttributeType.CHARACTERISTIC or handle != attribute.value_handle:
            self.send_error(conn, op, handle, AttErrorCode.ATTR_NOT_LONG)
            return
        if not attribute.properties & Property.WRITE:
            self.send_error(conn, op, handle, AttErrorCode.WRITE_NOT_PERM)
            return
        if self._long_write_handle == 0:
            self._long_write_value = bytearray(attribute.value_size)
            self._long_write_length = 0
            self._long_write_handle = handle
        elif self._long_write_handle != handle:
            self.send_error(conn, op, handle, AttErrorCode.UNLIKELY)
            return
        value = data[4:]
        if offset != self._long_write_length or offset + len(value) > attribute.value_size:
            self.send_error(conn, op, handle, AttErrorCode.INVALID_OFFSET)
            return
        self._long_write_value[offset : offset + len(value)] = value
        self._long_write_length += len(value)
        self._send(conn, bytes([AttOpcode.PREP_WRITE_RESP]) + data)

    def _exec_write(self, conn: int, peer: Any, data: bytes) -> None:
        if len(data) != 1:
            self.send_error(conn, AttOpcode.EXEC_WRITE_REQ, 0x0000, AttErrorCode.INVALID_PDU)
            return
        if self._long_write_handle and data[0] & 0x01:
            characteristic = self._lookup(self._long_write_handle)
            if characteristic is not None and peer is not None:
                characteristic.write_value(
                    peer, bytes(self._long_write_value[: self._long_write_length])
                )
        self.reset_long_write()
        self._send(conn, bytes([AttOpcode.EXEC_WRITE_RESP]))