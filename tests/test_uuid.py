import pytest

from bleatt.uuid import Uuid, uuid_to_string

LONG_UUID = "19b10000-e8f2-537e-4f6c-d104768a1214"


def test_short_uuid_bytes_are_little_endian():
    parsed = Uuid("2902")
    assert parsed.length == 2
    assert parsed.data == b"\x02\x29"


def test_short_uuid_formats_back():
    assert uuid_to_string(bytes([0x02, 0x29])) == "2902"


@pytest.mark.parametrize("text", ["2902", "180a", LONG_UUID])
def test_round_trip(text):
    parsed = Uuid(text)
    assert uuid_to_string(parsed.data) == text


def test_long_uuid_is_sixteen_bytes():
    parsed = Uuid(LONG_UUID)
    assert parsed.length == 16
    assert len(parsed.data) == 16
    assert parsed.text == LONG_UUID


def test_upper_case_input_formats_lower_case():
    parsed = Uuid(LONG_UUID.upper())
    assert uuid_to_string(parsed.data) == LONG_UUID


def test_single_digit_is_short_and_padded():
    parsed = Uuid("1")
    assert parsed.length == 2
    assert len(parsed.data) == 2
    assert parsed.data[1] == 0


def test_empty_text_gives_zero_short_uuid():
    parsed = Uuid("")
    assert parsed.length == 2
    assert parsed.data == b"\x00\x00"


def test_medium_length_is_padded_to_long():
    parsed = Uuid("123456")
    assert parsed.length == 16
    assert parsed.data[3:] == bytes(13)


def test_empty_bytes_format_empty():
    assert uuid_to_string(b"") == ""


def test_long_format_has_four_dashes():
    text = uuid_to_string(bytes(range(16)))
    assert text.count("-") == 4
    assert Uuid(text).data == bytes(range(16))