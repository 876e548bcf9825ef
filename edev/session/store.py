"""
In-memory session store (opaque sid -> User) and cookie helpers.
"""

import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Tuple

from starlette.requests import Request
from starlette.responses import Response

# Secure mode uses the __Host- prefix, which browsers only accept with
# Secure=true, Path=/ and no Domain. Plain-http dev mode must drop the prefix.
SECURE_COOKIE_NAME = "__Host-sid"
INSECURE_COOKIE_NAME = "sid"

DEFAULT_MAX_AGE_SECONDS = 3 * 3600


@dataclass(frozen=True)
class User:
    id: str
    login: str
    name: str = ""
    avatar_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SessionStore:
    def __init__(self, max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS, insecure_cookie: bool = False) -> None:
        self.max_age_seconds = int(max_age_seconds)
        self.insecure_cookie = bool(insecure_cookie)
        self._lock = threading.Lock()
        self._m: Dict[str, Tuple[User, float]] = {}

    def put(self, sid: str, user: User) -> None:
        with self._lock:
            self._m[sid] = (user, time.time() + self.max_age_seconds)

    def get(self, sid: str) -> Optional[User]:
        with self._lock:
            entry = self._m.get(sid)
        if entry is None:
            return None
        user, expires_at = entry
        if expires_at < time.time():
            return None
        return user

    def delete(self, sid: str) -> None:
        with self._lock:
            self._m.pop(sid, None)

    def cleanup(self) -> int:
        now = time.time()
        with self._lock:
            expired = [sid for sid, (_, exp) in self._m.items() if exp < now]
            for sid in expired:
                del self._m[sid]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._m)

    # ===== Cookie helpers =====

    @property
    def cookie_name(self) -> str:
        return INSECURE_COOKIE_NAME if self.insecure_cookie else SECURE_COOKIE_NAME

    def set_cookie(self, response: Response, value: str, max_age_seconds: int) -> None:
        response.set_cookie(
            key=self.cookie_name,
            value=value,
            max_age=int(max_age_seconds),
            expires=int(max_age_seconds),
            path="/",
            secure=not self.insecure_cookie,
            httponly=True,
            samesite="lax",
        )

    def clear_cookie(self, response: Response) -> None:
        response.delete_cookie(
            key=self.cookie_name,
            path="/",
            secure=not self.insecure_cookie,
            httponly=True,
            samesite="lax",
        )

    def get_cookie(self, request: Request) -> Optional[str]:
        return request.cookies.get(self.cookie_name) or None

    def user_from_request(self, request: Request) -> Optional[User]:
        sid = self.get_cookie(request)
        if not sid:
            return None
        return self.get(sid)
