"""Parsing and formatting of attribute UUIDs."""

from __future__ import annotations

MAX_LENGTH = 16

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def _parse_hex_byte(pair: str) -> int:
    """Parse a hex prefix the lenient way, keeping the low byte."""
    text = pair.lstrip(" \t\n\r\f\v")
    negative = False
    if text.startswith(("+", "-")):
        negative = text[0] == "-"
        text = text[1:]
    digits = []
    for char in text:
        if char not in _HEX_DIGITS:
            break
        digits.append(char)
    value = int("".join(digits), 16) if digits else 0
    if negative:
        value = -value
    return value & 0xFF


class Uuid:
    """A UUID parsed from text into little-endian bytes.

    UUIDs of at most two bytes are 16-bit; anything longer is 128-bit.
    """

    __slots__ = ("_text", "_data", "_length")

    def __init__(self, text: str) -> None:
        self._text = text
        collected: list[int] = []
        i = len(text) - 1
        while i >= 0 and len(collected) < MAX_LENGTH:
            if text[i] == "-":
                i -= 1
                continue
            pair = text[i - 1 : i + 1] if i > 0 else text[i]
            collected.append(_parse_hex_byte(pair))
            i -= 2
        self._length = 2 if len(collected) <= 2 else MAX_LENGTH
        self._data = bytes(collected).ljust(self._length, b"\x00")[: self._length]

    @property
    def text(self) -> str:
        """The text the UUID was parsed from."""
        return self._text

    @property
    def data(self) -> bytes:
        """The UUID bytes, least significant first."""
        return self._data

    @property
    def length(self) -> int:
        """The UUID size in bytes: 2 or 16."""
        return self._length

    def __repr__(self) -> str:
        return f"Uuid({self._text!r})"


def uuid_to_string(data: bytes) -> str:
    """Format little-endian UUID bytes as lower-case hex text."""
    parts: list[str] = []
    for i in reversed(range(len(data))):
        parts.append(f"{data[i]:02x}")
        if i in (6, 8, 10, 12):
            parts.append("-")
    return "".join(parts)