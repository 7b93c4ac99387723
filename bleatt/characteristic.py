"""Characteristics and descriptors on a connected peer."""

from __future__ import annotations

import struct
from typing import Any, Callable, Optional, Protocol

from bleatt.properties import Property
from bleatt.remote import RemoteAttribute

_ATT_OP_ERROR = 0x01
_ATT_HEADER_SIZE = 3
_CCCD_UUID = "2902"

UpdatedHandler = Callable[[Any, "RemoteCharacteristic"], None]


class AttClient(Protocol):
    """The part of the attribute protocol layer used by remote attributes."""

    def handle_connected(self, handle: int) -> bool: ...

    def mtu(self, handle: int) -> int: ...

    def read_req(self, connection_handle: int, handle: int) -> bytes: ...

    def write_req(self, connection_handle: int, handle: int, data: bytes) -> bytes: ...

    def write_cmd(self, connection_handle: int, handle: int, data: bytes) -> None: ...


def _max_payload(att: AttClient, connection_handle: int) -> int:
    return max(att.mtu(connection_handle) - _ATT_HEADER_SIZE, 0)


def _response_ok(response: bytes) -> bool:
    return bool(response) and response[0] != _ATT_OP_ERROR


def _as_bytes(value: bytes | bytearray | memoryview | str) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


class RemoteDescriptor(RemoteAttribute):
    """A descriptor of a characteristic on a peer."""

    def __init__(
        self,
        uuid_bytes: Optional[bytes],
        att: AttClient,
        connection_handle: int,
        handle: int,
    ) -> None:
        super().__init__(uuid_bytes)
        self._att = att
        self.connection_handle = connection_handle
        self.handle = handle
        self._value = b""

    @property
    def value(self) -> bytes:
        """The last value read or written."""
        return self._value

    @property
    def value_length(self) -> int:
        """The length of the stored value."""
        return len(self._value)

    def __getitem__(self, offset: int) -> int:
        if not self._value:
            return 0
        return self._value[offset]

    def write_value(self, value: bytes | bytearray | memoryview) -> bool:
        """Write the value with a write request; True when the peer accepted it."""
        if not self._att.handle_connected(self.connection_handle):
            return False
        data = bytes(value)[: _max_payload(self._att, self.connection_handle)]
        response = self._att.write_req(self.connection_handle, self.handle, data)
        if not _response_ok(response):
            return False
        self._value = data
        return True

    def read(self) -> bool:
        """Read the value from the peer; True on success."""
        if not self._att.handle_connected(self.connection_handle):
            return False
        response = self._att.read_req(self.connection_handle, self.handle)
        if not _response_ok(response):
            self._value = b""
            return False
        self._value = bytes(response[1:])
        return True


class RemoteCharacteristic(RemoteAttribute):
    """A characteristic on a peer, with its descriptors and cached value."""

    def __init__(
        self,
        uuid_bytes: Optional[bytes],
        att: AttClient,
        connection_handle: int,
        start_handle: int,
        properties: int,
        value_handle: int,
    ) -> None:
        super().__init__(uuid_bytes)
        self._att = att
        self.connection_handle = connection_handle
        self.start_handle = start_handle
        self.properties = Property(properties & 0xFF)
        self.value_handle = value_handle
        self._value = b""
        self._value_updated = False
        self._updated_value_read = True
        self._descriptors: list[RemoteDescriptor] = []
        self._updated_handler: Optional[UpdatedHandler] = None

    @property
    def value(self) -> bytes:
        """The last value read, written or notified."""
        return self._value

    @property
    def value_length(self) -> int:
        """The length of the stored value."""
        return len(self._value)

    @property
    def descriptors(self) -> tuple[RemoteDescriptor, ...]:
        """The descriptors in discovery order."""
        return tuple(self._descriptors)

    def __getitem__(self, offset: int) -> int:
        if not self._value:
            return 0
        return self._value[offset]

    def write_value(
        self, value: bytes | bytearray | memoryview | str, with_response: bool = True
    ) -> bool:
        """Write the value; True when it was sent (and accepted, with a response)."""
        if not self._att.handle_connected(self.connection_handle):
            return False
        data = _as_bytes(value)[: _max_payload(self._att, self.connection_handle)]
        if self.properties & Property.WRITE and with_response:
            response = self._att.write_req(self.connection_handle, self.value_handle, data)
            if not _response_ok(response):
                return False
        elif self.properties & Property.WRITE_WITHOUT_RESPONSE:
            self._att.write_cmd(self.connection_handle, self.value_handle, data)
        else:
            return False
        self._value = data
        return True

    def value_updated(self) -> bool:
        """Whether a notification arrived since the last call; clears the flag."""
        self._att.handle_connected(self.connection_handle)
        result = self._value_updated
        self._value_updated = False
        return result

    def updated_value_read(self) -> bool:
        """Whether the last notified value was already consumed; marks it consumed."""
        result = self._updated_value_read
        self._updated_value_read = True
        return result

    def read(self) -> bool:
        """Read the value from the peer; True on success."""
        if not self._att.handle_connected(self.connection_handle):
            return False
        response = self._att.read_req(self.connection_handle, self.value_handle)
        if not _response_ok(response):
            self._value = b""
            return False
        self._value = bytes(response[1:])
        return True

    def write_cccd(self, value: int) -> bool:
        """Write the client characteristic configuration descriptor."""
        data = struct.pack("<H", value & 0xFFFF)
        for descriptor in self._descriptors:
            if descriptor.uuid == _CCCD_UUID:
                return descriptor.write_value(data)
        if self.properties & (Property.NOTIFY | Property.INDICATE):
            cccd = RemoteDescriptor(
                None, self._att, self.connection_handle, (self.value_handle + 1) & 0xFFFF
            )
            return cccd.write_value(data)
        return False

    def add_descriptor(self, descriptor: RemoteDescriptor) -> None:
        """Append a descriptor, taking a reference to it."""
        descriptor.retain()
        self._descriptors.append(descriptor)

    def set_updated_handler(self, handler: Optional[UpdatedHandler]) -> None:
        """Set the callable invoked as handler(device, characteristic) on updates."""
        self._updated_handler = handler

    def notify_value(self, device: Any, value: bytes | bytearray | memoryview) -> None:
        """Store a value pushed by the peer and report it to the handler."""
        self._value = bytes(value)
        self._value_updated = True
        self._updated_value_read = False
        if self._updated_handler is not None:
            self._updated_handler(device, self)

    def _dispose(self) -> None:
        for descriptor in self._descriptors:
            if descriptor.release() <= 0:
                descriptor._dispose()
        self._descriptors.clear()