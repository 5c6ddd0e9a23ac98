"""Fixed-size thread pools of queue workers."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from jobrelay.config import Settings
from jobrelay.queue.models import KNOWN_QUEUES
from jobrelay.workers.base import QueueWorker, WorkerRunSummary

logger = logging.getLogger(__name__)

WorkerBuilder = Callable[[str, str], QueueWorker]


@dataclass(slots=True)
class _Slot:
    queue: str
    worker: QueueWorker
    thread: threading.Thread | None = None
    summary: WorkerRunSummary = field(default_factory=WorkerRunSummary)
    error: Exception | None = None


class WorkerPool:
    """Runs `concurrency` worker slots per queue, each on its own thread.

    Every slot gets its own worker (and store connection) from `build_worker`
    and processes one job at a time until the pool is stopped.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        build_worker: WorkerBuilder,
        queues: Iterable[str] = KNOWN_QUEUES,
        name: str = "jobrelay",
    ) -> None:
        self.settings = settings
        self.build_worker = build_worker
        self.queues = tuple(queues)
        self.name = name
        self._slots: list[_Slot] = []
        self._stopped = threading.Event()

    @property
    def started(self) -> bool:
        return bool(self._slots)

    def start(self) -> None:
        if self._slots:
            raise RuntimeError("Worker pool already started")
        for queue in self.queues:
            concurrency = self.settings.queue(queue).concurrency
            for index in range(concurrency):
                worker_id = f"{self.name}-{queue}-{index + 1}"
                slot = _Slot(queue=queue, worker=self.build_worker(queue, worker_id))
                slot.thread = threading.Thread(
                    target=self._run_slot,
                    args=(slot,),
                    name=worker_id,
                    daemon=True,
                )
                self._slots.append(slot)
        for slot in self._slots:
            if slot.thread is not None:
                slot.thread.start()
        logger.info(
            "Worker pool started: %s",
            ", ".join(
                f"{queue}={self.settings.queue(queue).concurrency}" for queue in self.queues
            ),
        )

    def stop(self, *, reason: str = "requested") -> None:
        self._stopped.set()
        for slot in self._slots:
            slot.worker.request_stop(reason=reason)

    def join(self, timeout: float | None = None) -> dict[str, WorkerRunSummary]:
        for slot in self._slots:
            if slot.thread is not None:
                slot.thread.join(timeout)
        return self.summaries()

    def summaries(self) -> dict[str, WorkerRunSummary]:
        totals = {queue: WorkerRunSummary() for queue in self.queues}
        for slot in self._slots:
            totals[slot.queue].add(slot.summary)
        return totals

    def run(self) -> dict[str, WorkerRunSummary]:
        """Start all slots and block until SIGINT/SIGTERM, then drain and return totals."""

        previous = {
            signum: signal.getsignal(signum) for signum in (signal.SIGINT, signal.SIGTERM)
        }

        def _handler(signum: int, _: object | None) -> None:
            self.stop(reason=signal.Signals(signum).name)

        for signum in previous:
            signal.signal(signum, _handler)
        try:
            self.start()
            while not self._stopped.wait(0.5):
                if not any(slot.thread and slot.thread.is_alive() for slot in self._slots):
                    break
            self.stop(reason="shutdown")
            return self.join()
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

    def _run_slot(self, slot: _Slot) -> None:
        try:
            slot.summary = slot.worker.run_loop(max_idle_polls=None)
        except Exception as error:  # noqa: BLE001
            slot.error = error
            logger.exception("Worker %s crashed", slot.worker.worker_id)
        finally:
            slot.worker.jobs.close()
