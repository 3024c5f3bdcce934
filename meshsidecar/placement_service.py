"""Placement service that distributes actor placement tables to connected runtimes."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from .hashring import ConsistentHash, PlacementTables, new_from_existing

log = logging.getLogger(__name__)

LOCK = "lock"
UPDATE = "update"
UNLOCK = "unlock"


@dataclass
class PlacementOrder:
    """An instruction sent to a connected runtime."""

    operation: str
    tables: PlacementTables | None = None


@dataclass
class HostReport:
    """A heartbeat from a runtime: its name, port, load and hosted entity types."""

    name: str
    port: int = 0
    load: int = 0
    entities: list[str] = field(default_factory=list)


class _StatusStream(Protocol):
    def send(self, order: PlacementOrder) -> None: ...

    def recv(self) -> HostReport | None: ...


class PlacementService:
    """Keeps consistent hash tables per entity type and pushes them to runtimes."""

    def __init__(self) -> None:
        self._generation = 0
        self._entries_lock = threading.RLock()
        self._entries: dict[str, ConsistentHash] = {}
        self._streams: list[_StatusStream] = []
        self._hosts_entities_lock = threading.Lock()
        self._hosts_entities: dict[str, list[str]] = {}
        self._hosts_lock = threading.RLock()
        self._update_lock = threading.Lock()

    @property
    def generation(self) -> int:
        """The current table generation."""
        return self._generation

    @property
    def streams(self) -> list[_StatusStream]:
        """The connected runtime streams."""
        with self._hosts_lock:
            return list(self._streams)

    @property
    def entries(self) -> dict[str, ConsistentHash]:
        """The hash ring of every known entity type."""
        with self._entries_lock:
            return dict(self._entries)

    def report_status(self, stream, host_id: str, stop_event: threading.Event | None = None) -> None:
        """Serve one runtime connection until the stream ends or ``stop_event`` is set."""
        if not host_id:
            raise ValueError("id header not found in metadata")

        with self._hosts_lock:
            self._streams.append(stream)
        log.info("host added: %s", host_id)

        self.perform_tables_update([stream], increment_generation=False)

        while stop_event is None or not stop_event.is_set():
            try:
                report = stream.recv()
            except Exception as exc:  # a broken stream ends the connection
                log.debug("stream of host %s failed: %s", host_id, exc)
                report = None

            if report is None:
                with self._hosts_lock:
                    self.remove_host(stream)
                    self.process_removed_host(host_id)
                log.info("host removed: %s", host_id)
                return

            self.process_host(report)

    def remove_host(self, stream) -> None:
        """Drop every registration of ``stream``."""
        with self._hosts_lock:
            self._streams = [s for s in self._streams if s is not stream]

    def perform_tables_update(self, streams: Iterable, increment_generation: bool = False) -> None:
        """Send the tables to ``streams`` in three stages: lock, update, unlock."""
        targets = list(streams)
        with self._update_lock:
            if increment_generation:
                self._generation += 1

            self._broadcast(targets, PlacementOrder(LOCK))

            with self._entries_lock:
                snapshot = {
                    name: new_from_existing(*ring.internals()[:3])
                    for name, ring in self._entries.items()
                }
            tables = PlacementTables(version=str(self._generation), entries=snapshot)
            self._broadcast(targets, PlacementOrder(UPDATE, tables))

            self._broadcast(targets, PlacementOrder(UNLOCK))

    @staticmethod
    def _broadcast(streams: list, order: PlacementOrder) -> None:
        for stream in streams:
            try:
                stream.send(order)
            except Exception as exc:
                log.error("error updating host on %s operation: %s", order.operation, exc)

    def process_removed_host(self, host_id: str) -> None:
        """Remove ``host_id`` from the rings of the entity types it hosted."""
        with self._hosts_entities_lock:
            entities = self._hosts_entities.pop(host_id, [])

        update_required = False
        with self._entries_lock:
            for entity in entities:
                ring = self._entries.get(entity)
                if ring is not None:
                    ring.remove(host_id)
                    update_required = True

        if update_required:
            self.perform_tables_update(self.streams, increment_generation=True)

    def process_host(self, host: HostReport) -> None:
        """Add ``host`` to the rings of the entity types it reports."""
        update_required = False
        for entity in host.entities:
            with self._entries_lock:
                ring = self._entries.setdefault(entity, ConsistentHash())
                if not ring.add(host.name, host.port):
                    update_required = True

        if update_required:
            self.perform_tables_update(self.streams, increment_generation=True)

        with self._hosts_entities_lock:
            self._hosts_entities[host.name] = list(host.entities)