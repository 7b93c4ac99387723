"""Attribute protocol connection layer: peers, requests and notifications."""

from __future__ import annotations

import enum
import struct
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from bleatt.remote import RemoteDevice
from bleatt.server import AttErrorCode, AttOpcode, AttributeTable, AttServer

ATT_CID = 0x0004
DEFAULT_MTU = 23
NO_CONNECTION = 0xFFFF
DEFAULT_MAX_PEERS = 8
DEFAULT_TIMEOUT = 5.0
_ADDRESS_SIZE = 6
_MAX_WRITE_DATA = 255

_SERVER_OPCODES = frozenset(
    {
        AttOpcode.FIND_INFO_REQ,
        AttOpcode.FIND_BY_TYPE_REQ,
        AttOpcode.READ_BY_TYPE_REQ,
        AttOpcode.READ_BY_GROUP_REQ,
        AttOpcode.READ_REQ,
        AttOpcode.READ_BLOB_REQ,
        AttOpcode.WRITE_REQ,
        AttOpcode.WRITE_CMD,
        AttOpcode.PREP_WRITE_REQ,
        AttOpcode.EXEC_WRITE_REQ,
    }
)


class DeviceEvent(enum.IntEnum):
    """Connection events a handler can be registered for."""

    CONNECTED = 0
    DISCONNECTED = 1


@dataclass(frozen=True)
class PeerAddress:
    """The address of a connected peer."""

    address_type: int
    address: bytes


DeviceHandler = Callable[[PeerAddress], None]


class HciTransport(Protocol):
    """The host controller interface used to reach peers."""

    def poll(self) -> None: ...

    def send_acl_pkt(self, connection_handle: int, cid: int, data: bytes) -> None: ...

    def disconnect(self, connection_handle: int) -> int: ...

    def le_create_conn(
        self,
        interval: int,
        window: int,
        initiator_filter: int,
        peer_address_type: int,
        peer_address: bytes,
        own_address_type: int,
        min_interval: int,
        max_interval: int,
        latency: int,
        supervision_timeout: int,
        min_ce_length: int,
        max_ce_length: int,
    ) -> int: ...

    def le_cancel_conn(self) -> None: ...


def _u16(value: int) -> bytes:
    return struct.pack("<H", value & 0xFFFF)


def _address(address: bytes | bytearray) -> bytes:
    data = bytes(address)
    if len(data) != _ADDRESS_SIZE:
        raise ValueError(f"address must be {_ADDRESS_SIZE} bytes, got {len(data)}")
    return data


@dataclass
class _Peer:
    connection_handle: int = NO_CONNECTION
    role: int = 0
    address_type: int = 0
    address: bytes = bytes(_ADDRESS_SIZE)
    mtu: int = DEFAULT_MTU
    device: Optional[RemoteDevice] = None

    @property
    def connected(self) -> bool:
        return self.connection_handle != NO_CONNECTION

    @property
    def peer_address(self) -> PeerAddress:
        return PeerAddress(self.address_type, self.address)

    def reset(self) -> None:
        self.connection_handle = NO_CONNECTION
        self.role = 0
        self.address_type = 0
        self.address = bytes(_ADDRESS_SIZE)
        self.mtu = DEFAULT_MTU
        if self.device is not None:
            self.device.clear_services()
        self.device = None


@dataclass
class _Pending:
    connection_handle: int = NO_CONNECTION
    op: int = 0
    waiting: bool = False
    response: Optional[bytes] = field(default=None)


class Att:
    """Tracks connected peers and speaks the attribute protocol with them.

    Timeouts are in seconds, measured with ``clock``.
    """

    def __init__(
        self,
        transport: HciTransport,
        server: Optional[AttServer] = None,
        max_peers: int = DEFAULT_MAX_PEERS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_peers < 1:
            raise ValueError("max_peers must be at least 1")
        self._transport = transport
        self._server = server if server is not None else AttServer(AttributeTable(), self._send)
        self._clock = clock
        self._max_mtu = DEFAULT_MTU
        self._timeout = DEFAULT_TIMEOUT
        self._peers = [_Peer() for _ in range(max_peers)]
        self._pending = _Pending()
        self._cnf = False
        self._handlers: dict[DeviceEvent, Optional[DeviceHandler]] = {}

    @property
    def max_mtu(self) -> int:
        """The largest MTU offered or accepted."""
        return self._max_mtu

    @property
    def timeout(self) -> float:
        """How long to wait for peers, in seconds."""
        return self._timeout

    def set_max_mtu(self, max_mtu: int) -> None:
        """Set the largest MTU offered or accepted."""
        self._max_mtu = max_mtu & 0xFFFF

    def set_timeout(self, timeout: float) -> None:
        """Set how long to wait for peers, in seconds."""
        self._timeout = timeout

    def _send(self, connection_handle: int, pdu: bytes) -> None:
        self._transport.send_acl_pkt(connection_handle, ATT_CID, bytes(pdu))

    def _send_error(self, connection_handle: int, opcode: int, handle: int, code: int) -> None:
        pdu = bytes([AttOpcode.ERROR, opcode & 0xFF]) + _u16(handle) + bytes([code & 0xFF])
        self._send(connection_handle, pdu)

    def _until_timeout(self):
        start = self._clock()
        while self._clock() - start < self._timeout:
            yield

    def _peer_by_handle(self, connection_handle: int) -> Optional[_Peer]:
        return next(
            (p for p in self._peers if p.connection_handle == connection_handle), None
        )

    def _peer_by_address(self, address_type: int, address: bytes) -> Optional[_Peer]:
        address = _address(address)
        return next(
            (p for p in self._peers if p.address_type == address_type and p.address == address),
            None,
        )

    def connect(self, address_type: int, address: bytes) -> bool:
        """Create a connection to a peer and wait for it to come up."""
        address = _address(address)
        status = self._transport.le_create_conn(
            0x0060, 0x0030, 0x00, address_type, address, 0x00,
            0x0006, 0x000C, 0x0000, 0x00C8, 0x0004, 0x0006,
        )
        if status != 0:
            return False
        connected = False
        for _ in self._until_timeout():
            self._transport.poll()
            connected = self.is_connected(address_type, address)
            if connected:
                break
        if not connected:
            self._transport.le_cancel_conn()
        return connected

    def disconnect(self, address_type: int, address: bytes) -> bool:
        """Disconnect one peer and wait until it is gone."""
        handle = self.connection_handle(address_type, address)
        if handle == NO_CONNECTION:
            return False
        self._transport.disconnect(handle)
        for _ in self._until_timeout():
            self._transport.poll()
            if not self.handle_connected(handle):
                return True
        return False

    def disconnect_all(self) -> bool:
        """Disconnect every peer; True if any disconnect was issued."""
        count = 0
        for peer in self._peers:
            if not peer.connected:
                continue
            if self._transport.disconnect(peer.connection_handle) != 0:
                continue
            count += 1
            peer.reset()
        return count > 0

    def add_connection(
        self, handle: int, role: int, address_type: int, address: bytes
    ) -> None:
        """Record a new connection in a free slot; dropped when none is free."""
        address = _address(address)
        peer = next((p for p in self._peers if not p.connected), None)
        if peer is None:
            return
        peer.connection_handle = handle
        peer.role = role
        peer.mtu = DEFAULT_MTU
        peer.address_type = address_type
        peer.address = address
        handler = self._handlers.get(DeviceEvent.CONNECTED)
        if handler is not None:
            handler(PeerAddress(address_type, address))

    def remove_connection(self, handle: int, reason: int) -> None:
        """Forget a connection; the last one also clears configuration state."""
        found = None
        for peer in self._peers:
            if peer.connection_handle == handle:
                found = peer
        if found is None:
            return
        connected_count = sum(1 for p in self._peers if p.connected)
        address = found.peer_address
        if connected_count == 1:
            self._server.clear_cccds(address)
            self._server.reset_long_write()
        handler = self._handlers.get(DeviceEvent.DISCONNECTED)
        if handler is not None:
            handler(address)
        found.reset()

    def handle_data(self, connection_handle: int, data: bytes) -> None:
        """Handle one incoming PDU from a peer."""
        data = bytes(data)
        if not data:
            return
        opcode, payload = data[0], data[1:]
        if opcode == AttOpcode.ERROR:
            self._on_error(connection_handle, payload)
        elif opcode == AttOpcode.MTU_REQ:
            self._on_mtu_req(connection_handle, payload)
        elif opcode == AttOpcode.MTU_RESP:
            self._on_mtu_resp(connection_handle, payload)
        elif opcode in (AttOpcode.FIND_INFO_RESP, AttOpcode.READ_BY_GROUP_RESP):
            if len(payload) >= 2:
                self._store_response(connection_handle, opcode, payload)
        elif opcode == AttOpcode.READ_BY_TYPE_RESP:
            if len(payload) >= 1:
                self._store_response(connection_handle, opcode, payload)
        elif opcode == AttOpcode.READ_RESP:
            self._store_response(connection_handle, opcode, payload)
        elif opcode == AttOpcode.WRITE_RESP:
            if not payload:
                self._store_response(connection_handle, opcode, payload)
        elif opcode in (AttOpcode.HANDLE_NOTIFY, AttOpcode.HANDLE_IND):
            self._on_notify_or_ind(connection_handle, opcode, payload)
        elif opcode == AttOpcode.HANDLE_CNF:
            self._cnf = True
        else:
            peer = self._peer_by_handle(connection_handle)
            self._server.handle_request(
                connection_handle,
                self.mtu(connection_handle),
                peer.peer_address if peer is not None else None,
                opcode,
                payload,
            )

    def _store_response(self, connection_handle: int, opcode: int, payload: bytes) -> None:
        pending = self._pending
        if (
            pending.waiting
            and pending.connection_handle == connection_handle
            and pending.op == opcode
        ):
            pending.response = bytes([opcode]) + payload

    def _on_error(self, connection_handle: int, payload: bytes) -> None:
        if len(payload) != 4:
            return
        pending = self._pending
        if (
            pending.waiting
            and pending.connection_handle == connection_handle
            and (pending.op - 1) == payload[0]
        ):
            pending.response = bytes([AttOpcode.ERROR]) + payload

    def _on_mtu_req(self, connection_handle: int, payload: bytes) -> None:
        if len(payload) != 2:
            self._send_error(connection_handle, AttOpcode.MTU_REQ, 0x0000, AttErrorCode.INVALID_PDU)
            return
        mtu = min(struct.unpack("<H", payload)[0], self._max_mtu)
        peer = self._peer_by_handle(connection_handle)
        if peer is not None:
            peer.mtu = mtu
        self._send(connection_handle, bytes([AttOpcode.MTU_RESP]) + _u16(mtu))

    def _on_mtu_resp(self, connection_handle: int, payload: bytes) -> None:
        if len(payload) != 2:
            return
        peer = self._peer_by_handle(connection_handle)
        if peer is not None:
            peer.mtu = struct.unpack("<H", payload)[0]
        self._store_response(connection_handle, AttOpcode.MTU_RESP, payload)

    def _on_notify_or_ind(self, connection_handle: int, opcode: int, payload: bytes) -> None:
        if len(payload) < 2:
            return
        handle = struct.unpack_from("<H", payload)[0]
        for peer in self._peers:
            if peer.connection_handle != connection_handle:
                continue
            if peer.device is None:
                break
            for service in peer.device.services:
                if service.start_handle < handle <= service.end_handle:
                    for characteristic in service.characteristics:
                        if characteristic.value_handle == handle:
                            characteristic.notify_value(peer.peer_address, payload[2:])
                    break
        if opcode == AttOpcode.HANDLE_IND:
            self._send(connection_handle, bytes([AttOpcode.HANDLE_CNF]))

    def connection_handle(self, address_type: int, address: bytes) -> int:
        """The connection handle of a peer, or 0xFFFF."""
        peer = self._peer_by_address(address_type, address)
        return peer.connection_handle if peer is not None else NO_CONNECTION

    def device(self, address_type: int, address: bytes) -> Optional[RemoteDevice]:
        """The discovered attributes of a peer, if any."""
        peer = self._peer_by_address(address_type, address)
        return peer.device if peer is not None else None

    def ensure_device(self, connection_handle: int) -> Optional[RemoteDevice]:
        """The remote device of a connection, created on first use."""
        peer = self._peer_by_handle(connection_handle)
        if peer is None:
            return None
        if peer.device is None:
            peer.device = RemoteDevice()
        return peer.device

    def any_connected(self) -> bool:
        """Whether any peer is connected."""
        return any(p.connected for p in self._peers)

    def is_connected(self, address_type: int, address: bytes) -> bool:
        """Whether the peer with this address is connected."""
        return self.connection_handle(address_type, address) != NO_CONNECTION

    def handle_connected(self, handle: int) -> bool:
        """Poll the transport, then report whether the connection is up."""
        self._transport.poll()
        return self._peer_by_handle(handle) is not None

    def mtu(self, handle: int) -> int:
        """The MTU of a connection, or the default when unknown."""
        peer = self._peer_by_handle(handle)
        return peer.mtu if peer is not None else DEFAULT_MTU

    def central(self) -> Optional[PeerAddress]:
        """The first connected peer in the central role, if any."""
        for peer in self._peers:
            if peer.connected and peer.role == 0x01:
                return peer.peer_address
        return None

    def handle_notify(self, handle: int, value: bytes) -> bool:
        """Notify every peer of a value; True if any peer was sent one."""
        value = bytes(value)
        length = len(value)
        count = 0
        for peer in self._peers:
            if not peer.connected:
                continue
            length = max(min(peer.mtu - 3, length), 0)
            pdu = bytes([AttOpcode.HANDLE_NOTIFY]) + _u16(handle) + value[:length]
            self._send(peer.connection_handle, pdu)
            count += 1
        return count > 0

    def handle_ind(self, handle: int, value: bytes) -> bool:
        """Indicate a value to every peer, waiting for each confirmation."""
        value = bytes(value)
        length = len(value)
        count = 0
        for peer in self._peers:
            if not peer.connected:
                continue
            length = max(min(peer.mtu - 3, length), 0)
            pdu = bytes([AttOpcode.HANDLE_IND]) + _u16(handle) + value[:length]
            self._cnf = False
            self._send(peer.connection_handle, pdu)
            while not self._cnf:
                self._transport.poll()
                if not self.is_connected(peer.address_type, peer.address):
                    break
            count += 1
        return count > 0

    def set_event_handler(self, event: int, handler: Optional[DeviceHandler]) -> None:
        """Register a handler for connect or disconnect events."""
        try:
            key = DeviceEvent(event)
        except ValueError:
            return
        self._handlers[key] = handler

    def _send_req(self, connection_handle: int, pdu: bytes, wait: bool = True) -> bytes:
        self._pending = _Pending(connection_handle, (pdu[0] + 1) & 0xFF, wait, None)
        self._send(connection_handle, pdu)
        if not wait:
            return b""
        try:
            for _ in self._until_timeout():
                self._transport.poll()
                if not self.handle_connected(connection_handle):
                    break
                if self._pending.response is not None:
                    return self._pending.response
            return b""
        finally:
            self._pending = _Pending()

    def exchange_mtu(self, connection_handle: int) -> bool:
        """Offer the maximum MTU to a peer; True when it answered."""
        pdu = bytes([AttOpcode.MTU_REQ]) + _u16(self._max_mtu)
        return bool(self._send_req(connection_handle, pdu))

    def read_req(self, connection_handle: int, handle: int) -> bytes:
        """Read an attribute; the response PDU, or b"" on timeout."""
        return self._send_req(connection_handle, bytes([AttOpcode.READ_REQ]) + _u16(handle))

    def write_req(self, connection_handle: int, handle: int, data: bytes) -> bytes:
        """Write an attribute with response; the response PDU, or b""."""
        pdu = bytes([AttOpcode.WRITE_REQ]) + _u16(handle) + bytes(data)[:_MAX_WRITE_DATA]
        return self._send_req(connection_handle, pdu)

    def write_cmd(self, connection_handle: int, handle: int, data: bytes) -> None:
        """Write an attribute without waiting for a response."""
        pdu = bytes([AttOpcode.WRITE_CMD]) + _u16(handle) + bytes(data)[:_MAX_WRITE_DATA]
        self._send_req(connection_handle, pdu, wait=False)

    def find_info_req(self, connection_handle: int, start_handle: int, end_handle: int) -> bytes:
        """Ask for handle and type information in a range."""
        pdu = bytes([AttOpcode.FIND_INFO_REQ]) + _u16(start_handle) + _u16(end_handle)
        return self._send_req(connection_handle, pdu)

    def read_by_type_req(
        self, connection_handle: int, start_handle: int, end_handle: int, attr_type: int
    ) -> bytes:
        """Read attributes of a type in a range."""
        pdu = (
            bytes([AttOpcode.READ_BY_TYPE_REQ])
            + _u16(start_handle)
            + _u16(end_handle)
            + _u16(attr_type)
        )
        return self._send_req(connection_handle, pdu)

    def read_by_group_req(
        self, connection_handle: int, start_handle: int, end_handle: int, uuid: int
    ) -> bytes:
        """Read grouping attributes such as services in a range."""
        pdu = (
            bytes([AttOpcode.READ_BY_GROUP_REQ])
            + _u16(start_handle)
            + _u16(end_handle)
            + _u16(uuid)
        )
        return self._send_req(connection_handle, pdu)