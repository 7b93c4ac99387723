"""Fixed-size value encoding for characteristics."""

from __future__ import annotations

import struct
from typing import Any

_BYTE_ORDER_PREFIXES = "@=<>!"


class TypedCodec:
    """Encode and decode one fixed-size value, little-endian by default."""

    __slots__ = ("_fmt", "_le", "_be")

    def __init__(self, fmt: str) -> None:
        if not fmt or fmt[0] in _BYTE_ORDER_PREFIXES:
            raise ValueError(f"format must be a bare type code: {fmt!r}")
        try:
            le = struct.Struct("<" + fmt)
            be = struct.Struct(">" + fmt)
        except struct.error as exc:
            raise ValueError(f"invalid format {fmt!r}: {exc}") from exc
        if len(le.unpack(bytes(le.size))) != 1:
            raise ValueError(f"format must describe a single value: {fmt!r}")
        self._fmt = fmt
        self._le = le
        self._be = be

    @property
    def fmt(self) -> str:
        """The struct type code."""
        return self._fmt

    @property
    def size(self) -> int:
        """The encoded size in bytes."""
        return self._le.size

    def _fit(self, data: bytes) -> bytes:
        return bytes(data[: self.size]).ljust(self.size, b"\x00")

    def zero(self) -> Any:
        """The value whose bytes are all zero."""
        return self._le.unpack(bytes(self.size))[0]

    def encode(self, value: Any) -> bytes:
        """Encode little-endian."""
        try:
            return self._le.pack(value)
        except struct.error as exc:
            raise ValueError(str(exc)) from exc

    def decode(self, data: bytes) -> Any:
        """Decode little-endian; short data is zero-padded."""
        return self._le.unpack(self._fit(data))[0]

    def encode_be(self, value: Any) -> bytes:
        """Encode big-endian."""
        try:
            return self._be.pack(value)
        except struct.error as exc:
            raise ValueError(str(exc)) from exc

    def decode_be(self, data: bytes) -> Any:
        """Decode big-endian; short data is zero-padded."""
        return self._be.unpack(self._fit(data))[0]

    def __repr__(self) -> str:
        return f"TypedCodec({self._fmt!r})"