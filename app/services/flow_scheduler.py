"""
Scheduler de timers das instâncias em `wait`.

Min-heap por `wake_at` com invalidação preguiçosa: rearmar uma instância só
atualiza o índice; entradas antigas do heap são descartadas quando chegam ao
topo. Não conhece o engine; quem dispara é o handler passado em `run_tick`.
"""
from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import structlog

from app.core.config import settings

log = structlog.get_logger()


@dataclass(frozen=True)
class DueTimer:
    instance_id: str
    wake_at: datetime
    epoch: int
    attempts: int = 0


@dataclass
class TickReport:
    fired: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)


class FlowScheduler:
    def __init__(self, *, retry_delay: Optional[timedelta] = None, max_attempts: Optional[int] = None):
        self.retry_delay = retry_delay or timedelta(seconds=settings.FLOW_TIMER_RETRY_SECS)
        self.max_attempts = int(max_attempts if max_attempts is not None else settings.FLOW_TIMER_MAX_ATTEMPTS)
        self._lock = threading.Lock()
        self._heap: List[Tuple[datetime, int, str]] = []
        # instance_id -> (wake_at, epoch, seq, attempts)
        self._armed: Dict[str, Tuple[datetime, int, int, int]] = {}
        self._seq = itertools.count()

    def arm_timer(self, instance_id: str, wake_at: datetime, epoch: int, attempts: int = 0) -> None:
        with self._lock:
            seq = next(self._seq)
            self._armed[instance_id] = (wake_at, int(epoch), seq, int(attempts))
            heapq.heappush(self._heap, (wake_at, seq, instance_id))
        log.info("flow_timer_armed", instance_id=instance_id, wake_at=wake_at.isoformat(), epoch=int(epoch))

    def disarm(self, instance_id: str) -> bool:
        with self._lock:
            removed = self._armed.pop(instance_id, None) is not None
        if removed:
            log.info("flow_timer_disarmed", instance_id=instance_id)
        return removed

    def load(self, entries: Iterable[Tuple[str, datetime, int]]) -> int:
        """Rearma timers persistidos (startup). Retorna quantos foram carregados."""
        n = 0
        for instance_id, wake_at, epoch in entries:
            self.arm_timer(instance_id, wake_at, epoch)
            n += 1
        return n

    def on_tick(self, now: datetime) -> List[DueTimer]:
        """Remove e retorna os timers vencidos (`wake_at <= now`) em ordem de vencimento."""
        due: List[DueTimer] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                wake_at, seq, instance_id = heapq.heappop(self._heap)
                current = self._armed.get(instance_id)
                if current is None or current[2] != seq:
                    continue  # entrada substituída ou desarmada
                del self._armed[instance_id]
                due.append(DueTimer(instance_id=instance_id, wake_at=wake_at, epoch=current[1], attempts=current[3]))
        return due

    def run_tick(self, now: datetime, handler: Callable[[DueTimer], None]) -> TickReport:
        report = TickReport()
        for timer in self.on_tick(now):
            try:
                handler(timer)
                report.fired += 1
            except Exception as e:  # noqa: BLE001 - um timer com falha não bloqueia os demais
                report.failed += 1
                report.errors[timer.instance_id] = str(e) or type(e).__name__
                log.exception("flow_timer_handler_failed", instance_id=timer.instance_id, epoch=timer.epoch)
                self._retry(timer, now)
        if report.fired or report.failed:
            log.info("flow_scheduler_tick", fired=report.fired, failed=report.failed)
        return report

    def _retry(self, timer: DueTimer, now: datetime) -> None:
        """Devolve ao heap um timer cujo handler falhou, salvo se já foi rearmado."""
        with self._lock:
            if timer.instance_id in self._armed:
                return
        attempts = timer.attempts + 1
        if attempts >= self.max_attempts:
            # fica só no banco; `restore_timers` recupera no próximo startup
            log.error("flow_timer_dropped", instance_id=timer.instance_id, epoch=timer.epoch, attempts=attempts)
            return
        self.arm_timer(timer.instance_id, now + self.retry_delay, timer.epoch, attempts=attempts)

    def next_wake_at(self) -> Optional[datetime]:
        with self._lock:
            if not self._armed:
                return None
            return min(entry[0] for entry in self._armed.values())

    def armed(self, instance_id: str) -> Optional[Tuple[datetime, int]]:
        with self._lock:
            current = self._armed.get(instance_id)
        return (current[0], current[1]) if current else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._armed)

    def clear(self) -> None:
        with self._lock:
            self._heap.clear()
            self._armed.clear()


_scheduler: Optional[FlowScheduler] = None
_scheduler_lock = threading.Lock()


def get_scheduler() -> FlowScheduler:
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None:
            _scheduler = FlowScheduler()
        return _scheduler
