from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from typing import Optional

from stock_ledger.models import location_key

PairKey = tuple[int, int]


def pair_key(product_id: int, location_id: Optional[int]) -> PairKey:
    return int(product_id), location_key(location_id)


class PairLockRegistry:
    """One lock per (product, location) pair, created on first use.

    Writers on different pairs never wait on each other. Multi-pair holders
    take their locks in sorted key order so two transfers in opposite
    directions cannot deadlock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[PairKey, threading.Lock] = {}

    def lock_for(self, key: PairKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: PairKey) -> Iterator[None]:
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.lock_for(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


pair_locks = PairLockRegistry()
