"""Remote attributes, services and devices discovered on a peer."""

from __future__ import annotations

from typing import Any

from bleatt.uuid import uuid_to_string


class RemoteAttribute:
    """An attribute on a peer, identified by its UUID and reference counted."""

    def __init__(self, uuid_bytes: bytes | None) -> None:
        self._uuid = uuid_to_string(bytes(uuid_bytes or b""))
        self._ref_count = 0

    @property
    def uuid(self) -> str:
        """The UUID as lower-case hex text."""
        return self._uuid

    def retain(self) -> int:
        """Take a reference; return the new count."""
        self._ref_count += 1
        return self._ref_count

    def release(self) -> int:
        """Drop a reference; return the new count."""
        self._ref_count -= 1
        return self._ref_count

    def _dispose(self) -> None:
        """Give up owned children once the last reference is gone."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(uuid={self._uuid!r})"


def _release_all(items: list[Any]) -> None:
    for item in items:
        if item.release() <= 0:
            item._dispose()
    items.clear()


class RemoteService(RemoteAttribute):
    """A primary service on a peer and its characteristics."""

    def __init__(self, uuid_bytes: bytes | None, start_handle: int, end_handle: int) -> None:
        super().__init__(uuid_bytes)
        self.start_handle = start_handle
        self.end_handle = end_handle
        self._characteristics: list[Any] = []

    @property
    def characteristics(self) -> tuple[Any, ...]:
        """The characteristics in discovery order."""
        return tuple(self._characteristics)

    def add_characteristic(self, characteristic: Any) -> None:
        """Append a characteristic, taking a reference to it."""
        characteristic.retain()
        self._characteristics.append(characteristic)

    def _dispose(self) -> None:
        _release_all(self._characteristics)


class RemoteDevice:
    """The services discovered on one peer."""

    def __init__(self) -> None:
        self._services: list[RemoteService] = []

    @property
    def services(self) -> tuple[RemoteService, ...]:
        """The services in discovery order."""
        return tuple(self._services)

    def add_service(self, service: RemoteService) -> None:
        """Append a service, taking a reference to it."""
        service.retain()
        self._services.append(service)

    def clear_services(self) -> None:
        """Drop every service, disposing those no longer referenced."""
        _release_all(self._services)

    def __repr__(self) -> str:
        return f"RemoteDevice(services={len(self._services)})"