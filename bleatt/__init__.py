"""Bluetooth Low Energy Attribute Protocol: attribute server, client requests and discovery."""

__version__ = "0.1.0"