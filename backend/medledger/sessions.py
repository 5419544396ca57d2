"""Admin-portal session table.

Constructed once per process and handed to the portal routes. Tokens expire
at an absolute instant ``ttl`` after login; validation never extends them.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import MutableMapping, Optional
from uuid import uuid4

from .clock import Clock, system_clock, to_epoch_ms


SESSION_TTL = timedelta(hours=12)


@dataclass(frozen=True)
class PortalSession:
    token: str
    email: str
    expires_at: int  # epoch milliseconds


class AdminPortalSessions:
    def __init__(
        self,
        clock: Clock = system_clock,
        ttl: timedelta = SESSION_TTL,
        table: Optional[MutableMapping[str, PortalSession]] = None,
        lock: Optional[threading.Lock] = None,
    ) -> None:
        self.clock = clock
        self.ttl_ms = int(ttl.total_seconds() * 1000)
        self._table: MutableMapping[str, PortalSession] = {} if table is None else table
        self._lock = lock or threading.Lock()

    def _now_ms(self) -> int:
        return to_epoch_ms(self.clock())

    def _sweep(self, now_ms: int) -> None:
        expired = [token for token, session in self._table.items() if session.expires_at <= now_ms]
        for token in expired:
            del self._table[token]

    def login(self, email: str) -> PortalSession:
        now_ms = self._now_ms()
        session = PortalSession(
            token=str(uuid4()),
            email=email.strip().lower(),
            expires_at=now_ms + self.ttl_ms,
        )
        with self._lock:
            self._sweep(now_ms)
            self._table[session.token] = session
        return session

    def validate(self, token: str) -> Optional[str]:
        now_ms = self._now_ms()
        with self._lock:
            self._sweep(now_ms)
            session = self._table.get(token)
        return session.email if session else None

    def logout(self, token: str) -> None:
        now_ms = self._now_ms()
        with self._lock:
            self._sweep(now_ms)
            self._table.pop(token, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._table)
