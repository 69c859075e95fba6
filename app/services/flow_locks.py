"""
Lock por lead para o processamento de triggers.

Como cada lead tem no máximo uma instância viva, a chave do lead cobre o par
(lead, flow) e também serializa o caminho de início de um flow novo.
"""
from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import redis
import structlog

from app.core.config import settings
from app.domain.flows.errors import FlowBusyError

log = structlog.get_logger()


class _TicketLock:
    """Lock FIFO: quem chega primeiro entra primeiro."""

    def __init__(self):
        self.cond = threading.Condition()
        self.next_ticket = 0
        self.serving = 0
        self.waiters = 0
        self.skipped = set()


class LocalLockRegistry:
    def __init__(self, timeout_secs: Optional[float] = None):
        self.timeout_secs = float(timeout_secs if timeout_secs is not None else settings.FLOW_LOCK_TIMEOUT_SECS)
        self._guard = threading.Lock()
        self._locks: Dict[int, _TicketLock] = {}

    def _get(self, lead_id: int) -> _TicketLock:
        with self._guard:
            lock = self._locks.get(lead_id)
            if lock is None:
                lock = _TicketLock()
                self._locks[lead_id] = lock
            lock.waiters += 1
            return lock

    def _release_ref(self, lead_id: int, lock: _TicketLock) -> None:
        with self._guard:
            lock.waiters -= 1
            if lock.waiters <= 0 and self._locks.get(lead_id) is lock:
                del self._locks[lead_id]

    @contextmanager
    def hold(self, lead_id: int) -> Iterator[None]:
        lead_id = int(lead_id)
        lock = self._get(lead_id)
        deadline = time.monotonic() + self.timeout_secs
        with lock.cond:
            ticket = lock.next_ticket
            lock.next_ticket += 1
            while lock.serving != ticket:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    # Abandona a vez sem travar os próximos da fila.
                    self._skip_ticket(lock, ticket)
                    self._release_ref(lead_id, lock)
                    log.warning("flow_lock_timeout", lead_id=lead_id, backend="local")
                    raise FlowBusyError(f"lead {lead_id} is busy")
                lock.cond.wait(timeout=remaining)
        try:
            yield
        finally:
            with lock.cond:
                lock.serving += 1
                self._advance_skipped(lock)
                lock.cond.notify_all()
            self._release_ref(lead_id, lock)

    # tickets abandonados por timeout são pulados quando chega a vez deles
    def _skip_ticket(self, lock: _TicketLock, ticket: int) -> None:
        lock.skipped.add(ticket)

    def _advance_skipped(self, lock: _TicketLock) -> None:
        while lock.serving in lock.skipped:
            lock.skipped.discard(lock.serving)
            lock.serving += 1


class RedisLockRegistry:
    """Lock distribuído (vários workers) usando `redis.lock.Lock`."""

    def __init__(self, client: redis.Redis, timeout_secs: Optional[float] = None, lease_secs: float = 120.0):
        self.client = client
        self.timeout_secs = float(timeout_secs if timeout_secs is not None else settings.FLOW_LOCK_TIMEOUT_SECS)
        self.lease_secs = lease_secs

    def _key(self, lead_id: int) -> str:
        return f"flow_lock:lead:{int(lead_id)}"

    @contextmanager
    def hold(self, lead_id: int) -> Iterator[None]:
        lock = self.client.lock(
            self._key(lead_id),
            timeout=self.lease_secs,
            blocking_timeout=self.timeout_secs,
            thread_local=False,
        )
        token = uuid.uuid4().hex
        acquired = lock.acquire(blocking=True, token=token)
        if not acquired:
            log.warning("flow_lock_timeout", lead_id=int(lead_id), backend="redis")
            raise FlowBusyError(f"lead {lead_id} is busy")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                log.warning("flow_lock_lease_expired", lead_id=int(lead_id))


def build_lock_registry(backend: Optional[str] = None):
    name = (backend or settings.FLOW_LOCK_BACKEND or "local").strip().lower()
    if name == "redis":
        return RedisLockRegistry(redis.from_url(settings.REDIS_URL, decode_responses=True))
    return LocalLockRegistry()
