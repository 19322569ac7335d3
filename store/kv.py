"""
store/kv.py -- Redis key-value store for auth tokens.

Each issued token lives under its own key with a Redis expiry equal to the
token lifetime, so expired tokens disappear without a sweeper:

    crmctl:token:<username>:<digest>  -> JSON {user_agent, created_at, expires_at}
    crmctl:tokens:<username>          -> SET of digests (for delete_tokens)

The interface matches the auth-token methods of store.sql.SQLStore, which
the Manager falls back to when the [redis] section is not configured.

The redis client is thread safe; connections are taken from its pool when a
command executes.
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime

import redis

from core.models import AuthToken, now_utc

logger = logging.getLogger("crmctl.store.kv")

KEY_PREFIX = "crmctl"


def connect(host: str, port: int, password: str, timeout: float, max_connections: int | None = None) -> redis.Redis:
    """Open a redis client and verify the server answers.

    Raises redis.exceptions.RedisError when the server is unreachable or
    rejects the password; callers treat that as a fatal startup error.
    """
    logger.debug("New redis connection at %s, port %s", host, port)
    client = redis.Redis(
        host=host,
        port=port,
        password=password,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        max_connections=max_connections,
        decode_responses=True,
    )
    client.ping()
    return client


class RedisTokenStore:
    def __init__(self, client: redis.Redis) -> None:
        self.r = client

    @staticmethod
    def _token_key(username: str, token_hash: str) -> str:
        return f"{KEY_PREFIX}:token:{username}:{token_hash}"

    @staticmethod
    def _index_key(username: str) -> str:
        return f"{KEY_PREFIX}:tokens:{username}"

    def save_token(self, token_hash: str, token: AuthToken) -> None:
        ttl = max(1, math.ceil((token.expires_at - now_utc()).total_seconds()))
        payload = json.dumps(
            {
                "user_agent": token.user_agent,
                "created_at": token.created_at.isoformat(),
                "expires_at": token.expires_at.isoformat(),
            }
        )
        index_key = self._index_key(token.username)
        pipe = self.r.pipeline()
        pipe.set(self._token_key(token.username, token_hash), payload, ex=ttl)
        pipe.sadd(index_key, token_hash)
        pipe.expire(index_key, ttl)
        pipe.execute()

    def get_token(self, username: str, token_hash: str) -> AuthToken | None:
        raw = self.r.get(self._token_key(username, token_hash))
        if not raw:
            return None
        data = json.loads(raw)
        token = AuthToken(
            username=username,
            token="",
            user_agent=data["user_agent"],
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )
        return None if token.expired else token

    def purge_expired_tokens(self) -> int:
        # Redis expires token keys on its own.
        return 0

    def delete_tokens(self, username: str) -> None:
        index_key = self._index_key(username)
        digests = self.r.smembers(index_key)
        keys = [self._token_key(username, d) for d in digests]
        self.r.delete(index_key, *keys)
