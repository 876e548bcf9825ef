"""
Pending OAuth login states: state -> PKCE verifier, one-shot, with TTL.
"""

import threading
import time
from typing import Dict, Optional, Tuple


class StateStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._m: Dict[str, Tuple[str, float]] = {}

    def put(self, state: str, verifier: str, ttl_seconds: float) -> None:
        now = time.time()
        with self._lock:
            self._m[state] = (verifier, now + float(ttl_seconds))
            # opportunistic cleanup
            for k in [k for k, (_, exp) in self._m.items() if exp < now]:
                del self._m[k]

    def take(self, state: str) -> Optional[str]:
        with self._lock:
            entry = self._m.pop(state, None)
        if entry is None:
            return None
        verifier, expires_at = entry
        if time.time() > expires_at:
            return None
        return verifier

    def cleanup(self) -> int:
        now = time.time()
        with self._lock:
            expired = [k for k, (_, exp) in self._m.items() if exp < now]
            for k in expired:
                del self._m[k]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._m)
