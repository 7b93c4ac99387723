# bleatt

`bleatt` implements the Bluetooth Low Energy Attribute Protocol (ATT) in
pure Python, with no dependencies outside the standard library. It speaks
the protocol over a transport that you supply.

## What is in the package

- `bleatt.properties.Property` – an `IntFlag` of characteristic
  properties: `BROADCAST`, `READ`, `WRITE_WITHOUT_RESPONSE`, `WRITE`,
  `NOTIFY`, `INDICATE`.
- `bleatt.uuid` – `Uuid` parses UUID text (dashes allowed) into
  little-endian bytes (`data`), with a `length` of 2 or 16;
  `uuid_to_string` formats little-endian bytes as lower-case hex text,
  inserting dashes for 128-bit UUIDs.
- `bleatt.typed.TypedCodec` – encodes and decodes one fixed-size value
  given as a bare `struct` type code (`"H"`, `"i"`, `"f"`, ...):
  `encode`/`decode` are little-endian, `encode_be`/`decode_be`
  big-endian, `zero()` gives the all-zero value. Short data is
  zero-padded on decode; a format with a byte-order prefix or more than
  one value raises `ValueError`.
- `bleatt.server` – the local attribute table and the server side of
  the protocol:
  - `LocalService`, `LocalCharacteristic` and `LocalDescriptor`; a
    characteristic that notifies or indicates gets a client
    configuration descriptor (`2902`) automatically. Characteristics
    call `on_written(peer, characteristic)` and
    `on_cccd_written(peer, characteristic, value)` when set.
  - `AttributeTable.add_service` assigns handles (a characteristic takes
    a declaration handle and a value handle).
  - `AttServer.handle_request` answers find information, find by type
    value, read by type, read by group type, read and read blob, write
    request and command, prepared write and execute write; anything else
    gets a "request not supported" error. `AttOpcode`, `AttErrorCode` and
    `AttributeType` hold the protocol constants.
- `bleatt.att` – `Att` keeps track of up to `max_peers` connections
  (8 by default): MTU per peer, `connect`/`disconnect`/`disconnect_all`,
  `add_connection`/`remove_connection` with `DeviceEvent.CONNECTED` and
  `DeviceEvent.DISCONNECTED` handlers, `handle_data` for incoming PDUs,
  client requests (`exchange_mtu`, `read_req`, `write_req`, `write_cmd`,
  `find_info_req`, `read_by_type_req`, `read_by_group_req`) that wait for
  a response up to `timeout` seconds, and `handle_notify`/`handle_ind`
  to push values to every connected peer. Peers are identified by
  `PeerAddress`.
- `bleatt.remote` and `bleatt.characteristic` – the client-side model of
  a peer: `RemoteDevice`, `RemoteService`, `RemoteCharacteristic` and
  `RemoteDescriptor`. Characteristics and descriptors can `read()` and
  `write_value(...)`; `RemoteCharacteristic.write_cccd` enables
  notifications or indications, and incoming notifications update the
  value, set `value_updated()` and call the handler given to
  `set_updated_handler`.
- `bleatt.discovery` – `discover_attributes(att, address_type, address,
  service_uuid_filter=None)` exchanges the MTU and fills the peer's
  `RemoteDevice` with services, characteristics and descriptors;
  `discover_services`, `discover_characteristics` and
  `discover_descriptors` do the individual steps.

## Example: encoding values

```python
from bleatt.typed import TypedCodec
from bleatt.uuid import Uuid, uuid_to_string

codec = TypedCodec("H")
codec.encode(0x1234)         # b"\x34\x12"
codec.encode_be(0x1234)      # b"\x12\x34"

Uuid("2a19").data            # b"\x19\x2a"
uuid_to_string(b"\x19\x2a")  # "2a19"
```

## Example: a local attribute server

```python
from bleatt.properties import Property
from bleatt.server import (
    AttOpcode, AttributeTable, AttServer, LocalCharacteristic, LocalService,
)

level = LocalCharacteristic("2a19", Property.READ | Property.NOTIFY, 1, b"\x64")
table = AttributeTable()
table.add_service(LocalService("180f", [level]))
# handles: service 1, declaration 2, value 3, configuration descriptor 4

sent = []
server = AttServer(table, lambda handle, packet: sent.append((handle, packet)))
server.handle_request(0x0040, 23, "peer", AttOpcode.READ_REQ, b"\x03\x00")
# sent == [(0x0040, b"\x0b\x64")]
```

## Connecting it to a transport

`Att` takes any object with the methods of `bleatt.att.HciTransport`:
`poll()`, `send_acl_pkt(connection_handle, cid, data)`,
`disconnect(connection_handle)`, `le_create_conn(...)` and
`le_cancel_conn()`. The transport must report new and closed connections
with `Att.add_connection` and `Att.remove_connection`, and pass every
received ATT packet to `Att.handle_data`. Requests from peers go to the
`AttServer` given to `Att` (an empty table by default).

## What the package does not do

- It contains no host controller interface: no socket, serial or USB
  code. Without a transport you provide, it cannot reach a radio.
- It does not scan or advertise; connections are created through the
  transport.
- There is no command-line tool.
- Waiting for responses, connections and indication confirmations is
  done by polling the transport in a loop; there is no asyncio support.

## Running the tests

```
pip install .[test]
pytest
```