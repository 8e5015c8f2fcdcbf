"""Per-resource collection stores.

A :class:`CollectionStore` caches the collection of one backend resource, the
identifier of the currently selected record, and the state of the requests
made on its behalf::

    IDLE -> LOADING -> READY | FAILED
    READY/FAILED -> LOADING (any fetch or mutation) -> READY | FAILED

Remote calls run outside the store lock, so independent calls may overlap.
Their effects are merged in the order the responses arrive: when two updates
of the same record race, the last response to come back wins. Concurrent
``fetch_all`` calls share one in-flight request.

A failed call never discards data: the previous collection is kept, the error
message is exposed through :attr:`CollectionStore.error`, and the
:class:`~erp_documents.errors.RemoteError` propagates to the caller.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

from . import data_manager, log, records
from .constants import STATUS_RESOURCES, Resource
from .errors import MissingReferenceError, RemoteError


R = TypeVar("R")


class StoreState(str, Enum):
    """Request state of a collection store."""

    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class CollectionStore(Generic[R]):
    """Cache, request state and mutation contract for one resource."""

    def __init__(
        self,
        resource: Resource,
        session: data_manager.ApiSession,
        *,
        deserialize: Optional[Callable[[Mapping[str, Any]], R]] = None,
        validate: Optional[Callable[[Any], None]] = None,
        supports_status: Optional[bool] = None,
    ) -> None:
        self.resource = resource
        self._session = session
        self._deserialize = deserialize or records.DESERIALIZERS[resource]
        self._validate = validate
        self.supports_status = (
            resource in STATUS_RESOURCES if supports_status is None else supports_status
        )

        self._lock = threading.RLock()
        self._items: List[R] = []
        self._selected_id: Optional[int] = None
        self._state = StoreState.IDLE
        self._error: Optional[str] = None
        self._last_failed = False
        self._pending = 0
        self._loaded = False
        self._fetch_future: Optional[Future] = None

    def __repr__(self) -> str:
        return f"CollectionStore({self.resource.value!r}, state={self._state.value}, items={len(self._items)})"

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> StoreState:
        return self._state

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def loaded(self) -> bool:
        return self._loaded

    @property
    def items(self) -> List[R]:
        """Snapshot of the collection in server order."""

        with self._lock:
            return list(self._items)

    def ids(self) -> set:
        with self._lock:
            return {item.id for item in self._items}

    def get(self, record_id: int) -> Optional[R]:
        with self._lock:
            for item in self._items:
                if item.id == record_id:
                    return item
        return None

    def require(self, record_id: int) -> R:
        """Return the cached record or raise :class:`MissingReferenceError`."""

        item = self.get(record_id)
        if item is None:
            log.warning("%s lookup failed for id '%s'", self.resource.value, record_id)
            raise MissingReferenceError(f"Unknown {self.resource.value} id: {record_id}")
        return item

    @property
    def selected(self) -> Optional[R]:
        """The selected record, recomputed from the collection on every read."""

        if self._selected_id is None:
            return None
        return self.get(self._selected_id)

    def select(self, record_id: Optional[int]) -> None:
        self._selected_id = record_id

    # ------------------------------------------------------------------
    # Remote operations
    # ------------------------------------------------------------------

    def ensure_loaded(self) -> List[R]:
        """Load the collection once; later calls return the cache."""

        if self._loaded:
            return self.items
        return self.fetch_all()

    def fetch_all(self) -> List[R]:
        """Replace the collection with the server's current list."""

        with self._lock:
            inflight = self._fetch_future
            owner = inflight is None
            if owner:
                inflight = self._fetch_future = Future()
                self._begin()
        if not owner:
            log.debug("Joining in-flight fetch of %s", self.resource.value)
            return inflight.result()

        try:
            raw_rows = data_manager.list_records(self._session, self.resource)
            fetched = [self._decode(raw) for raw in raw_rows]
        except RemoteError as exc:
            with self._lock:
                self._fetch_future = None
                self._finish_failure(f"Error fetching {self.resource.value}", exc)
            inflight.set_exception(exc)
            raise

        with self._lock:
            self._items = fetched
            self._loaded = True
            self._fetch_future = None
            self._finish_success()
        log.debug("Loaded %d %s", len(fetched), self.resource.value)
        inflight.set_result(list(fetched))
        return list(fetched)

    def fetch_by_id(self, record_id: int) -> R:
        """Fetch one record, merge it into the collection and select it."""

        def apply(record: R) -> None:
            self._upsert(record)
            self._selected_id = record.id

        return self._run(
            f"Error fetching {self.resource.value} #{record_id}",
            lambda: data_manager.get_record(self._session, self.resource, record_id),
            apply,
        )

    def create(self, payload: Any) -> R:
        """Validate and create a record from a write payload; append it."""

        self._check(payload)
        body = records.serialize(payload)
        created = self._run(
            f"Error creating {self.resource.value}",
            lambda: data_manager.create_record(self._session, self.resource, body),
            self._append,
        )
        log.info("Created %s #%s", self.resource.value, created.id)
        return created

    def update(self, record_id: int, payload: Any) -> R:
        """Validate and replace a record with a full write payload."""

        self._check(payload)
        body = records.serialize(payload)
        updated = self._run(
            f"Error updating {self.resource.value} #{record_id}",
            lambda: data_manager.update_record(self._session, self.resource, record_id, body),
            self._upsert,
        )
        log.info("Updated %s #%s", self.resource.value, record_id)
        return updated

    def delete(self, record_id: int) -> None:
        """Delete a record remotely and drop it from the collection."""

        self._begin_locked()
        try:
            data_manager.delete_record(self._session, self.resource, record_id)
        except RemoteError as exc:
            with self._lock:
                self._finish_failure(f"Error deleting {self.resource.value} #{record_id}", exc)
            raise
        with self._lock:
            self._items = [item for item in self._items if item.id != record_id]
            if self._selected_id == record_id:
                self._selected_id = None
            self._finish_success()
        log.info("Deleted %s #%s", self.resource.value, record_id)

    def change_status(self, record_id: int, status: Any, *, extra: Optional[Mapping[str, Any]] = None) -> R:
        """Patch the status of a document-bearing record."""

        if not self.supports_status:
            raise TypeError(f"{self.resource.value} records have no status")
        value = getattr(status, "value", status)
        body_extra = records.serialize_values(extra) if extra else None
        updated = self._run(
            f"Error updating {self.resource.value} #{record_id} status",
            lambda: data_manager.patch_status(
                self._session, self.resource, record_id, value, extra=body_extra
            ),
            self._upsert,
        )
        log.info("Changed %s #%s status to %s", self.resource.value, record_id, value)
        return updated

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check(self, payload: Any) -> None:
        if self._validate is not None:
            self._validate(payload)

    def _decode(self, raw: Mapping[str, Any]) -> R:
        try:
            return self._deserialize(raw)
        except (KeyError, TypeError, ValueError) as exc:
            raise RemoteError(f"Malformed {self.resource.value} record: {exc}") from exc

    def _run(self, action: str, call: Callable[[], Mapping[str, Any]], apply: Callable[[R], None]) -> R:
        self._begin_locked()
        try:
            record = self._decode(call())
        except RemoteError as exc:
            with self._lock:
                self._finish_failure(action, exc)
            raise
        with self._lock:
            apply(record)
            self._finish_success()
        return record

    def _append(self, record: R) -> None:
        self._items.append(record)

    def _upsert(self, record: R) -> None:
        for index, item in enumerate(self._items):
            if item.id == record.id:
                self._items[index] = record
                return
        self._items.append(record)

    def _begin_locked(self) -> None:
        with self._lock:
            self._begin()

    def _begin(self) -> None:
        self._pending += 1
        self._state = StoreState.LOADING

    def _finish_success(self) -> None:
        self._pending -= 1
        self._last_failed = False
        self._error = None
        self._settle()

    def _finish_failure(self, action: str, exc: Exception) -> None:
        self._pending -= 1
        self._last_failed = True
        self._error = f"{action}: {exc}"
        log.error("%s", self._error)
        self._settle()

    def _settle(self) -> None:
        if self._pending == 0:
            self._state = StoreState.FAILED if self._last_failed else StoreState.READY


def build_stores(
    session: data_manager.ApiSession,
    validators: Optional[Dict[Resource, Callable[[Any], None]]] = None,
) -> Dict[Resource, CollectionStore]:
    """Create one store per resource, wiring the given validators."""

    validators = validators or {}
    return {
        resource: CollectionStore(resource, session, validate=validators.get(resource))
        for resource in Resource
    }
