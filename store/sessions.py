"""
store/sessions.py -- Server-side sessions in Redis, addressed by a cookie.

The browser only ever holds a random session id. Session data lives in Redis:

    crmctl:session:<id>        -> JSON object, expires after `lifetime` seconds
    crmctl:session-index       -> ZSET of ids scored by expiry timestamp

Redis expires the data keys by itself; gc() trims the index of ids whose
expiry has passed and removes any data key that outlived it. The API
lifespan runs gc() on a background task every `lifetime` seconds.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any

import redis

logger = logging.getLogger("crmctl.store.sessions")

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")
_INDEX_KEY = "crmctl:session-index"


@dataclass
class Session:
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)
    is_new: bool = False

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class SessionStore:
    def __init__(self, client: redis.Redis, cookie_name: str = "crmctlsessionid", lifetime: int = 3600) -> None:
        self.r = client
        self.cookie_name = cookie_name
        self.lifetime = lifetime

    @staticmethod
    def _key(session_id: str) -> str:
        return f"crmctl:session:{session_id}"

    def start(self, session_id: str | None) -> Session:
        """Return the live session for session_id, or a fresh unsaved one."""
        if session_id:
            session = self.load(session_id)
            if session is not None:
                return session
        return Session(session_id=secrets.token_urlsafe(32), is_new=True)

    def load(self, session_id: str) -> Session | None:
        if not _SESSION_ID_RE.match(session_id):
            logger.debug("Ignoring malformed session id")
            return None
        raw = self.r.get(self._key(session_id))
        if not raw:
            return None
        return Session(session_id=session_id, data=json.loads(raw))

    def save(self, session: Session) -> None:
        pipe = self.r.pipeline()
        pipe.set(self._key(session.session_id), json.dumps(session.data), ex=self.lifetime)
        pipe.zadd(_INDEX_KEY, {session.session_id: time.time() + self.lifetime})
        pipe.execute()
        session.is_new = False

    def destroy(self, session_id: str) -> None:
        pipe = self.r.pipeline()
        pipe.delete(self._key(session_id))
        pipe.zrem(_INDEX_KEY, session_id)
        pipe.execute()

    def set_cookie(self, response, session: Session) -> None:
        """Write the session id cookie on a Starlette response."""
        response.set_cookie(
            self.cookie_name,
            value=session.session_id,
            max_age=self.lifetime,
            httponly=True,
            samesite="lax",
        )

    def gc(self) -> int:
        """Remove sessions whose expiry has passed. Returns how many were removed."""
        expired = self.r.zrangebyscore(_INDEX_KEY, "-inf", time.time())
        if not expired:
            return 0
        pipe = self.r.pipeline()
        for session_id in expired:
            pipe.delete(self._key(session_id))
        pipe.zrem(_INDEX_KEY, *expired)
        pipe.execute()
        logger.debug("Session gc removed %d expired sessions", len(expired))
        return len(expired)
