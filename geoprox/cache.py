import threading

from contextlib import contextmanager
from typing import Iterator

from geoprox.enum import Decision


class ReadWriteLock:
    """Many concurrent readers or a single writer.

    Writers are preferred: once a writer is waiting, new readers block until
    it has finished, so a steady stream of cache hits cannot starve a store.
    """

    def __init__(self):
        self.__cond = threading.Condition(threading.Lock())
        self.__readers = 0
        self.__writer = False
        self.__writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self.__cond:
            while self.__writer or self.__writers_waiting:
                self.__cond.wait()
            self.__readers += 1
        try:
            yield
        finally:
            with self.__cond:
                self.__readers -= 1
                if not self.__readers:
                    self.__cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self.__cond:
            self.__writers_waiting += 1
            while self.__writer or self.__readers:
                self.__cond.wait()
            self.__writers_waiting -= 1
            self.__writer = True
        try:
            yield
        finally:
            with self.__cond:
                self.__writer = False
                self.__cond.notify_all()


class DecisionCache:
    """Process-lifetime map of hostname to routing decision.

    Keys are stored exactly as received. Entries never expire and are never
    invalidated; only USE_UPSTREAM and BYPASS can be stored.
    """

    def __init__(self):
        self.__entries: dict[str, Decision] = {}
        self.__lock = ReadWriteLock()
        self.__stats_lock = threading.Lock()
        self.__hits = 0
        self.__misses = 0
        self.__writes = 0

    def __len__(self) -> int:
        with self.__lock.read():
            return len(self.__entries)

    def __contains__(self, hostname: str) -> bool:
        with self.__lock.read():
            return hostname in self.__entries

    def get(self, hostname: str) -> Decision | None:
        with self.__lock.read():
            decision = self.__entries.get(hostname)
        with self.__stats_lock:
            if decision is None:
                self.__misses += 1
            else:
                self.__hits += 1
        return decision

    def set(self, hostname: str, decision: Decision) -> None:
        if decision not in (Decision.USE_UPSTREAM, Decision.BYPASS):
            raise ValueError(f'Refusing to cache decision {decision!r} for {hostname}')

        with self.__lock.write():
            self.__entries[hostname] = decision
        with self.__stats_lock:
            self.__writes += 1

    def snapshot(self) -> dict[str, Decision]:
        """Return a copy of all cached decisions."""
        with self.__lock.read():
            return dict(self.__entries)

    def stats(self) -> dict:
        with self.__stats_lock:
            hits, misses, writes = self.__hits, self.__misses, self.__writes
        total = hits + misses
        hit_rate = (hits / total * 100) if total > 0 else 0

        return {
            'size': len(self),
            'hits': hits,
            'misses': misses,
            'hit_rate': f'{hit_rate:.1f}%',
            'writes': writes,
        }
