# -*- coding: utf-8 -*-
# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""
Identifier generation for new decks, notes, cards and review log entries.

Ids follow Anki's convention of millisecond timestamps. The generator never
hands out the same value twice within a process: when several ids are needed
within one millisecond the value is bumped past the last one issued.

For tests a fixed seed switches the generator into a deterministic mode where
ids are ``seed + counter``. The state is process-wide and must be reset
explicitly between tests with ``reset_ids()``.
"""

import threading
import time
from typing import Optional


class IdGenerator:
    """Monotonic, wall-clock based id source with a deterministic test mode."""

    def __init__(self, seed: Optional[int] = None, clock=None):
        self._lock = threading.Lock()
        self._clock = clock or time.time
        self.reset(seed)

    @property
    def seed(self) -> Optional[int]:
        return self._seed

    def reset(self, seed: Optional[int] = None):
        with self._lock:
            self._seed = seed
            self._counter = 0
            self._last = 0

    def next_id(self) -> int:
        with self._lock:
            self._counter += 1
            if self._seed is not None:
                value = self._seed + self._counter
            else:
                value = max(int(self._clock() * 1000), self._last + 1)
            self._last = value
            return value

    def next_unused(self, taken) -> int:
        """Return the next id that is not a member of ``taken``."""
        value = self.next_id()
        while value in taken:
            value = self.next_id()
        return value


id_generator = IdGenerator()


def next_id() -> int:
    return id_generator.next_id()


def reset_ids(seed: Optional[int] = None):
    """Reset the process-wide generator. Pass a seed for reproducible ids."""
    id_generator.reset(seed)
