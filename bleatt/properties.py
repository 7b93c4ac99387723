"""Characteristic property flags."""

from __future__ import annotations

import enum


class Property(enum.IntFlag):
    """Bit flags describing what a characteristic supports."""

    BROADCAST = 0x01
    READ = 0x02
    WRITE_WITHOUT_RESPONSE = 0x04
    WRITE = 0x08
    NOTIFY = 0x10
    INDICATE = 0x20