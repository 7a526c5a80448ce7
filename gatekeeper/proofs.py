"""
Proof sessions: short-lived, single-use credentials issued on approval.

A successful /verify call issues a token; a /claim carrying that token gets
the relayer's co-signature and consumes the token once the claim lands.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .errors import ProofError

log = logging.getLogger(__name__)


@dataclass
class ProofSession:
    token: str
    issued_at: float
    expires_at: float
    valid: bool = True
    rule: str = ""
    address: str = ""

    def is_live(self, now: float) -> bool:
        return self.valid and now < self.expires_at


class ProofStore(ABC):
    @abstractmethod
    def put(self, session: ProofSession) -> None: ...

    @abstractmethod
    def get(self, token: str) -> Optional[ProofSession]: ...

    @abstractmethod
    def consume(self, token: str) -> ProofSession:
        """Invalidate a live session and return it. Raises ProofError otherwise."""


class InMemoryProofStore(ProofStore):
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._sessions: Dict[str, ProofSession] = {}
        self._lock = threading.Lock()

    def put(self, session: ProofSession) -> None:
        with self._lock:
            self._purge()
            self._sessions[session.token] = session

    def get(self, token: str) -> Optional[ProofSession]:
        with self._lock:
            session = self._sessions.get(token)
            if session is None or not session.is_live(self.clock()):
                return None
            return session

    def consume(self, token: str) -> ProofSession:
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                raise ProofError("unknown proof token")
            if not session.valid:
                raise ProofError("proof token already used")
            if not session.is_live(self.clock()):
                del self._sessions[token]
                raise ProofError("proof token expired")
            session.valid = False
            return session

    def _purge(self) -> None:
        now = self.clock()
        for token in [t for t, s in self._sessions.items() if not s.is_live(now)]:
            del self._sessions[token]

    def __len__(self) -> int:
        return len(self._sessions)


class ProofIssuer:
    def __init__(self, store: ProofStore, *, ttl_seconds: int = 900, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    def issue(self, *, rule: str = "", address: str = "") -> str:
        now = self.clock()
        token = secrets.token_urlsafe(32)
        self.store.put(ProofSession(token=token, issued_at=now, expires_at=now + self.ttl_seconds, rule=rule, address=address))
        log.info("[PROOF] Issued proof for %s (ttl %ss)", address or "unknown", self.ttl_seconds)
        return token

    def check(self, token: str, *, address: Optional[str] = None) -> ProofSession:
        """Validate without consuming. The receiver must match the verified address when both are known."""
        session = self.store.get(token)
        if session is None:
            raise ProofError("proof token is invalid or expired")
        if address and session.address and session.address.lower() != address.lower():
            raise ProofError("proof token was issued for a different address")
        return session

    def consume(self, token: str) -> ProofSession:
        session = self.store.consume(token)
        log.info("[PROOF] Consumed proof for %s", session.address or "unknown")
        return session
