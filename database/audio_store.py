"""
AudioStore - short-lived storage for synthesized speech.

The telephony provider fetches <Play> URLs over HTTP while the call is
live, so clips only need to outlive the turn that produced them. Entries
expire after `ttl_seconds`; the oldest are dropped past `max_items`.
"""
from __future__ import annotations

import time
import uuid
from collections import OrderedDict
from typing import Optional


class AudioStore:
    def __init__(self, ttl_seconds: float = 900.0, max_items: int = 2000):
        self.ttl = ttl_seconds
        self.max_items = max_items
        self._items: OrderedDict[str, tuple[float, bytes, str]] = OrderedDict()

    def put(self, audio: bytes, fmt: str = "mp3") -> str:
        """Store a clip and return its key."""
        self._prune()
        key = f"{uuid.uuid4().hex}.{fmt}"
        self._items[key] = (time.monotonic(), audio, fmt)
        while len(self._items) > self.max_items:
            self._items.popitem(last=False)
        return key

    def get(self, key: str) -> Optional[tuple[bytes, str]]:
        self._prune()
        entry = self._items.get(key)
        if entry is None:
            return None
        _, audio, fmt = entry
        return audio, fmt

    def _prune(self) -> None:
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, (t, _, _) in self._items.items() if t < cutoff]
        for k in expired:
            del self._items[k]

    def __len__(self) -> int:
        return len(self._items)
