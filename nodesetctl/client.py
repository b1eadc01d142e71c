"""In-memory object store and event recorder used by the controllers."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .models import KubeObject

T = TypeVar("T", bound=KubeObject)


class ApiError(Exception):
    """A request to the object store failed."""

    status_code = 500


class NotFoundError(ApiError):
    """The requested object does not exist."""

    status_code = 404


class AlreadyExistsError(ApiError):
    """An object with the same kind, namespace and name already exists."""

    status_code = 409


class ConflictError(ApiError):
    """The object was modified concurrently; the request may be retried."""

    status_code = 409


@dataclass(frozen=True)
class Event:
    """A recorded event about an object."""

    kind: str
    namespace: str
    name: str
    event_type: str
    reason: str
    message: str


class EventRecorder:
    """Collects events in the order they are recorded."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def event(self, obj: KubeObject, event_type: str, reason: str, message: str) -> None:
        self.events.append(
            Event(
                kind=type(obj).__name__,
                namespace=obj.namespace,
                name=obj.name,
                event_type=event_type,
                reason=reason,
                message=message,
            )
        )


GetHook = Callable[[type, str, str], None]
ObjectHook = Callable[[KubeObject], None]


class InMemoryClient:
    """A store of objects keyed by type, namespace and name.

    Objects are copied on the way in and out, so callers never share state
    with the store. Each optional hook runs before its operation and may raise
    to simulate a failing server.
    """

    def __init__(
        self,
        *objects: KubeObject,
        on_get: GetHook | None = None,
        on_create: ObjectHook | None = None,
        on_update: ObjectHook | None = None,
        on_delete: GetHook | None = None,
    ) -> None:
        self._store: dict[tuple[type, str, str], KubeObject] = {}
        self._on_get = on_get
        self._on_create = on_create
        self._on_update = on_update
        self._on_delete = on_delete
        for obj in objects:
            self._store[self._key_of(obj)] = obj.copy()

    @staticmethod
    def _key_of(obj: KubeObject) -> tuple[type, str, str]:
        return type(obj), obj.namespace, obj.name

    @staticmethod
    def _not_found(cls: type, name: str) -> NotFoundError:
        return NotFoundError(f'{cls.__name__.lower()} "{name}" not found')

    def get(self, cls: type[T], namespace: str, name: str) -> T:
        """Return a copy of the stored object, or raise NotFoundError."""
        if self._on_get is not None:
            self._on_get(cls, namespace, name)
        try:
            return self._store[(cls, namespace, name)].copy()
        except KeyError:
            raise self._not_found(cls, name) from None

    def create(self, obj: KubeObject) -> None:
        """Store a new object; its name must be set and not yet taken."""
        if self._on_create is not None:
            self._on_create(obj)
        if not obj.name:
            raise ApiError(f"{type(obj).__name__.lower()}: resource name may not be empty")
        key = self._key_of(obj)
        if key in self._store:
            raise AlreadyExistsError(
                f'{type(obj).__name__.lower()} "{obj.name}" already exists'
            )
        self._store[key] = obj.copy()

    def update(self, obj: KubeObject) -> None:
        """Replace an existing object, or raise NotFoundError."""
        if self._on_update is not None:
            self._on_update(obj)
        key = self._key_of(obj)
        if key not in self._store:
            raise self._not_found(type(obj), obj.name)
        self._store[key] = obj.copy()

    def delete(self, cls: type, namespace: str, name: str) -> None:
        """Remove an object, or raise NotFoundError."""
        if self._on_delete is not None:
            self._on_delete(cls, namespace, name)
        try:
            del self._store[(cls, namespace, name)]
        except KeyError:
            raise self._not_found(cls, name) from None