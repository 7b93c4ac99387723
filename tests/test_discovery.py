import struct

import pytest

from bleatt.att import Att
from bleatt.characteristic import RemoteCharacteristic
from bleatt.discovery import (
    discover_attributes,
    discover_characteristics,
    discover_descriptors,
    discover_services,
)
from bleatt.properties import Property
from bleatt.remote import RemoteDevice, RemoteService
from bleatt.server import (
    AttOpcode,
    AttributeTable,
    AttServer,
    LocalCharacteristic,
    LocalService,
)

CONN = 0x0040
ADDR_TYPE = 0
ADDRESS = bytes([0x01, 0x02, 0x03, 0x04, 0x05, 0x06])
SERVICE_128 = "19b10000-e8f2-537e-4f6c-d104768a1214"
CHAR_128 = "19b10001-e8f2-537e-4f6c-d104768a1214"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        self.now += 0.01
        return self.now


class LoopbackTransport:
    """Feeds requests to a peer attribute server and queues its answers."""

    def __init__(self, answer=True):
        self.answer = answer
        self.server = None
        self.att = None
        self.inbox = []
        self.sent = []

    def poll(self):
        while self.inbox:
            conn, pdu = self.inbox.pop(0)
            self.att.handle_data(conn, pdu)

    def send_acl_pkt(self, connection_handle, cid, data):
        self.sent.append(bytes(data))
        if not self.answer:
            return
        opcode = data[0]
        if opcode == AttOpcode.MTU_REQ:
            self.inbox.append(
                (connection_handle, bytes([AttOpcode.MTU_RESP]) + bytes(data[1:3]))
            )
            return
        self.server.handle_request(connection_handle, 23, "central", opcode, bytes(data[1:]))

    def disconnect(self, connection_handle):
        return 0


def make_client(answer=True):
    battery = LocalCharacteristic("2a19", Property.READ | Property.NOTIFY, 1, b"\x64")
    led = LocalCharacteristic(CHAR_128, Property.READ | Property.WRITE, 1, b"\x00")
    table = AttributeTable()
    table.add_service(LocalService("180f", [battery]))
    table.add_service(LocalService(SERVICE_128, [led]))
    transport = LoopbackTransport(answer)
    transport.server = AttServer(
        table, lambda conn, pdu: transport.inbox.append((conn, pdu))
    )
    att = Att(transport, clock=FakeClock())
    transport.att = att
    att.add_connection(CONN, 0x00, ADDR_TYPE, ADDRESS)
    return att, transport, battery, led


class ScriptedAtt:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def _next(self):
        return self.responses.pop(0) if self.responses else b""

    def read_by_group_req(self, conn, start, end, uuid):
        self.calls.append((conn, start, end, uuid))
        return self._next()

    def read_by_type_req(self, conn, start, end, attr_type):
        self.calls.append((conn, start, end, attr_type))
        return self._next()

    def find_info_req(self, conn, start, end):
        self.calls.append((conn, start, end))
        return self._next()


def _error(opcode):
    return bytes([AttOpcode.ERROR, opcode]) + struct.pack("<H", 1) + b"\x0a"


def test_full_discovery_builds_service_tree():
    att, _, _, _ = make_client()
    assert discover_attributes(att, ADDR_TYPE, ADDRESS) is True
    device = att.device(ADDR_TYPE, ADDRESS)
    assert [s.uuid for s in device.services] == ["180f", SERVICE_128]
    battery_service, led_service = device.services
    assert (battery_service.start_handle, battery_service.end_handle) == (1, 4)
    assert (led_service.start_handle, led_service.end_handle) == (5, 7)
    (battery,) = battery_service.characteristics
    assert battery.uuid == "2a19"
    assert battery.value_handle == 3
    assert battery.properties == Property.READ | Property.NOTIFY
    (led,) = led_service.characteristics
    assert led.uuid == CHAR_128
    assert led.value_handle == 7
    assert [d.uuid for d in battery.descriptors] == ["2902"]
    assert battery.descriptors[0].handle == 4
    assert led.descriptors == ()


def test_discovered_characteristics_talk_to_peer():
    att, _, battery_local, _ = make_client()
    assert discover_attributes(att, ADDR_TYPE, ADDRESS)
    battery = att.device(ADDR_TYPE, ADDRESS).services[0].characteristics[0]
    assert battery.read() is True
    assert battery.value == b"\x64"
    assert battery.write_cccd(0x0001) is True
    assert battery_local.cccd_value == 0x0001


def test_notification_reaches_discovered_characteristic():
    att, _, _, _ = make_client()
    assert discover_attributes(att, ADDR_TYPE, ADDRESS)
    battery = att.device(ADDR_TYPE, ADDRESS).services[0].characteristics[0]
    att.handle_data(CONN, bytes([AttOpcode.HANDLE_NOTIFY]) + struct.pack("<H", 3) + b"\x55")
    assert battery.value == b"\x55"
    assert battery.value_updated() is True


def test_rediscovery_without_filter_replaces_services():
    att, _, _, _ = make_client()
    assert discover_attributes(att, ADDR_TYPE, ADDRESS)
    assert discover_attributes(att, ADDR_TYPE, ADDRESS)
    assert len(att.device(ADDR_TYPE, ADDRESS).services) == 2


def test_filter_keeps_only_matching_service_case_insensitively():
    att, _, _, _ = make_client()
    assert discover_attributes(att, ADDR_TYPE, ADDRESS, "180F")
    assert [s.uuid for s in att.device(ADDR_TYPE, ADDRESS).services] == ["180f"]


def test_filter_on_128_bit_uuid():
    att, _, _, _ = make_client()
    assert discover_attributes(att, ADDR_TYPE, ADDRESS, SERVICE_128.upper())
    services = att.device(ADDR_TYPE, ADDRESS).services
    assert [s.uuid for s in services] == [SERVICE_128]
    assert services[0].characteristics[0].uuid == CHAR_128


def test_known_filtered_service_returns_without_searching():
    att, transport, _, _ = make_client()
    assert discover_attributes(att, ADDR_TYPE, ADDRESS, "180f")
    transport.sent.clear()
    assert discover_attributes(att, ADDR_TYPE, ADDRESS, "180f")
    assert [pdu[0] for pdu in transport.sent] == [AttOpcode.MTU_REQ]
    assert len(att.device(ADDR_TYPE, ADDRESS).services) == 1


def test_unknown_peer_is_not_discovered():
    att, transport, _, _ = make_client()
    assert discover_attributes(att, ADDR_TYPE, bytes(6)) is False
    assert transport.sent == []


def test_silent_peer_fails_mtu_exchange():
    att, transport, _, _ = make_client(answer=False)
    assert discover_attributes(att, ADDR_TYPE, ADDRESS) is False
    assert [pdu[0] for pdu in transport.sent] == [AttOpcode.MTU_REQ]
    assert att.device(ADDR_TYPE, ADDRESS) is None


def test_services_fail_without_response():
    att = ScriptedAtt([])
    device = RemoteDevice()
    assert discover_services(att, CONN, device) is False
    assert att.calls == [(CONN, 1, 0xFFFF, 0x2800)]


def test_services_stop_when_handles_wrap():
    response = bytes([AttOpcode.READ_BY_GROUP_RESP, 6]) + struct.pack("<HH", 1, 0xFFFF) + b"\x0f\x18"
    att = ScriptedAtt([response])
    device = RemoteDevice()
    assert discover_services(att, CONN, device) is True
    assert len(att.calls) == 1
    assert [(s.uuid, s.end_handle) for s in device.services] == [("180f", 0xFFFF)]


def test_services_reject_entry_size_that_cannot_advance():
    att = ScriptedAtt([bytes([AttOpcode.READ_BY_GROUP_RESP, 0])])
    device = RemoteDevice()
    assert discover_services(att, CONN, device) is False
    assert device.services == ()


def test_characteristic_requests_follow_value_handles():
    entry = struct.pack("<HBH", 2, 0x12, 3) + b"\x19\x2a"
    att = ScriptedAtt(
        [bytes([AttOpcode.READ_BY_TYPE_RESP, 7]) + entry, _error(AttOpcode.READ_BY_TYPE_REQ)]
    )
    device = RemoteDevice()
    device.add_service(RemoteService(b"\x0f\x18", 1, 4))
    assert discover_characteristics(att, CONN, device) is True
    assert att.calls == [(CONN, 1, 4, 0x2803), (CONN, 4, 4, 0x2803)]
    (characteristic,) = device.services[0].characteristics
    assert (characteristic.start_handle, characteristic.value_handle) == (2, 3)


def test_descriptor_ranges_end_at_next_value_handle():
    att = ScriptedAtt([_error(AttOpcode.FIND_INFO_REQ), _error(AttOpcode.FIND_INFO_REQ)])
    service = RemoteService(b"\x0f\x18", 1, 8)
    service.add_characteristic(RemoteCharacteristic(b"\x19\x2a", att, CONN, 2, 0x12, 3))
    service.add_characteristic(RemoteCharacteristic(b"\x1a\x2a", att, CONN, 5, 0x02, 6))
    device = RemoteDevice()
    device.add_service(service)
    assert discover_descriptors(att, CONN, device) is True
    assert att.calls == [(CONN, 4, 6), (CONN, 7, 8)]


def test_descriptors_skipped_when_range_is_empty():
    att = ScriptedAtt([])
    service = RemoteService(b"\x0f\x18", 1, 3)
    service.add_characteristic(RemoteCharacteristic(b"\x19\x2a", att, CONN, 2, 0x02, 3))
    device = RemoteDevice()
    device.add_service(service)
    assert discover_descriptors(att, CONN, device) is True
    assert att.calls == []


@pytest.mark.parametrize("responses", [[], [bytes([AttOpcode.FIND_INFO_RESP, 0])]])
def test_descriptors_fail_on_missing_or_malformed_response(responses):
    att = ScriptedAtt(responses)
    service = RemoteService(b"\x0f\x18", 1, 4)
    service.add_characteristic(RemoteCharacteristic(b"\x19\x2a", att, CONN, 2, 0x12, 3))
    device = RemoteDevice()
    device.add_service(service)
    assert discover_descriptors(att, CONN, device) is False
    assert service.characteristics[0].descriptors == ()