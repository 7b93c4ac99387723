from bleatt.remote import RemoteAttribute, RemoteDevice, RemoteService
from bleatt.uuid import uuid_to_string


def test_attribute_uuid_text():
    assert RemoteAttribute(b"\x02\x29").uuid == "2902"


def test_attribute_uuid_matches_formatter():
    raw = bytes(range(16))
    assert RemoteAttribute(raw).uuid == uuid_to_string(raw)


def test_attribute_without_uuid_is_empty():
    assert RemoteAttribute(None).uuid == ""


def test_retain_release_counts():
    attr = RemoteAttribute(b"\x00\x18")
    assert attr.retain() == 1
    assert attr.retain() == 2
    assert attr.release() == 1
    assert attr.release() == 0


def test_service_handles_and_characteristics():
    service = RemoteService(b"\x00\x18", 1, 7)
    first = RemoteAttribute(b"\x00\x2a")
    second = RemoteAttribute(b"\x01\x2a")
    service.add_characteristic(first)
    service.add_characteristic(second)
    assert (service.start_handle, service.end_handle) == (1, 7)
    assert service.characteristics == (first, second)
    assert first.release() == 0


def test_device_keeps_service_order():
    device = RemoteDevice()
    a = RemoteService(b"\x00\x18", 1, 5)
    b = RemoteService(b"\x01\x18", 6, 9)
    device.add_service(a)
    device.add_service(b)
    assert device.services == (a, b)


def test_clear_services_disposes_unreferenced_services():
    device = RemoteDevice()
    service = RemoteService(b"\x00\x18", 1, 5)
    characteristic = RemoteAttribute(b"\x00\x2a")
    characteristic.retain()
    service.add_characteristic(characteristic)
    device.add_service(service)

    device.clear_services()

    assert device.services == ()
    assert service.characteristics == ()
    assert characteristic.release() == 0


def test_clear_services_keeps_shared_service_intact():
    device = RemoteDevice()
    service = RemoteService(b"\x00\x18", 1, 5)
    characteristic = RemoteAttribute(b"\x00\x2a")
    service.add_characteristic(characteristic)
    service.retain()
    device.add_service(service)

    device.clear_services()

    assert device.services == ()
    assert service.characteristics == (characteristic,)
    assert service.release() == 0


def test_clear_on_empty_device():
    device = RemoteDevice()
    device.clear_services()
    assert len(device.services) == 0