"""Consistent hashing, and consistent hashing with bounded loads."""

from __future__ import annotations

import bisect
import hashlib
import math
import threading
from dataclasses import dataclass, field, replace

REPLICATION_FACTOR = 10


class NoHostsError(LookupError):
    """Raised when a lookup is made on a ring without hosts."""

    def __init__(self, message: str = "no hosts added") -> None:
        super().__init__(message)


@dataclass
class Host:
    """A host of stateful entities with its port and current load."""

    name: str
    port: int = 0
    load: int = 0


@dataclass
class PlacementTables:
    """Consistent hash tables per entity type, with a version."""

    version: str
    entries: dict[str, "ConsistentHash"] = field(default_factory=dict)


def _hash(key: str) -> int:
    digest = hashlib.blake2b(key.encode(), digest_size=64).digest()
    return int.from_bytes(digest[:8], "little")


def _trunc_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return quotient if (a >= 0) == (b >= 0) else -quotient


class ConsistentHash:
    """A hash ring mapping keys to hosts, with per-host load tracking."""

    def __init__(self, hosts=None, sorted_set=None, load_map=None) -> None:
        self._hosts: dict[int, str] = hosts if hosts is not None else {}
        self._sorted_set: list[int] = sorted_set if sorted_set is not None else []
        self._load_map: dict[str, Host] = load_map if load_map is not None else {}
        self._total_load = 0
        self._lock = threading.RLock()

    def internals(self):
        """Return copies of the ring map, sorted hashes, host loads and total load."""
        with self._lock:
            return (
                dict(self._hosts),
                list(self._sorted_set),
                {name: replace(host) for name, host in self._load_map.items()},
                self._total_load,
            )

    def add(self, host: str, port: int) -> bool:
        """Add a host; return True if it was already present."""
        with self._lock:
            if host in self._load_map:
                return True
            self._load_map[host] = Host(name=host, port=port, load=0)
            for replica in range(REPLICATION_FACTOR):
                h = _hash(f"{host}{replica}")
                self._hosts[h] = host
                self._sorted_set.append(h)
            self._sorted_set.sort()
            return False

    def get(self, key: str) -> str:
        """Return the name of the host that owns ``key``."""
        with self._lock:
            if not self._hosts:
                raise NoHostsError()
            idx = self._search(_hash(key))
            return self._hosts[self._sorted_set[idx]]

    def get_host(self, key: str) -> Host:
        """Return the host record that owns ``key``."""
        with self._lock:
            return self._load_map[self.get(key)]

    def get_least(self, key: str) -> str:
        """Return the first host clockwise from ``key`` whose load is within bounds."""
        with self._lock:
            if not self._hosts:
                raise NoHostsError()
            i = self._search(_hash(key))
            while True:
                host = self._hosts[self._sorted_set[i]]
                if self._load_ok(host):
                    return host
                i += 1
                if i >= len(self._sorted_set):
                    i = 0

    def _search(self, key: int) -> int:
        idx = bisect.bisect_left(self._sorted_set, key)
        return 0 if idx >= len(self._sorted_set) else idx

    def update_load(self, host: str, load: int) -> None:
        """Set the load of ``host``; unknown hosts are ignored."""
        with self._lock:
            entry = self._load_map.get(host)
            if entry is None:
                return
            self._total_load += load - entry.load
            entry.load = load

    def inc(self, host: str) -> None:
        """Increase the load of ``host`` by one."""
        with self._lock:
            try:
                entry = self._load_map[host]
            except KeyError:
                raise KeyError(f"host {host} not in ring") from None
            entry.load += 1
            self._total_load += 1

    def done(self, host: str) -> None:
        """Decrease the load of ``host`` by one; unknown hosts are ignored."""
        with self._lock:
            entry = self._load_map.get(host)
            if entry is None:
                return
            entry.load -= 1
            self._total_load -= 1

    def remove(self, host: str) -> bool:
        """Remove ``host`` from the ring."""
        with self._lock:
            for replica in range(REPLICATION_FACTOR):
                h = _hash(f"{host}{replica}")
                self._hosts.pop(h, None)
                idx = bisect.bisect_left(self._sorted_set, h)
                if idx < len(self._sorted_set) and self._sorted_set[idx] == h:
                    del self._sorted_set[idx]
            self._load_map.pop(host, None)
            return True

    def host_names(self) -> list[str]:
        """Return the names of the hosts in the ring."""
        with self._lock:
            return list(self._load_map)

    def get_loads(self) -> dict[str, int]:
        """Return the current load of every host."""
        with self._lock:
            return {name: host.load for name, host in self._load_map.items()}

    def max_load(self) -> int:
        """Return the bounded maximum load of a single host."""
        with self._lock:
            if not self._load_map:
                raise NoHostsError()
            if self._total_load == 0:
                self._total_load = 1
            avg = _trunc_div(self._total_load, len(self._load_map)) or 1
            return math.ceil(avg * 1.25)

    def _load_ok(self, host: str) -> bool:
        if self._total_load < 0:
            self._total_load = 0
        if not self._load_map:
            raise NoHostsError()
        avg = _trunc_div(self._total_load + 1, len(self._load_map)) or 1
        bound = math.ceil(avg * 1.25)
        entry = self._load_map.get(host)
        if entry is None:
            raise LookupError(f"given host({host}) not in loads map")
        return entry.load + 1 <= bound


def new_from_existing(hosts, sorted_set, load_map) -> ConsistentHash:
    """Build a ring from previously exported internals."""
    return ConsistentHash(hosts=hosts, sorted_set=sorted_set, load_map=load_map)