"""
Worker coordination for parallel evaluation.

A fixed pool of worker processes (slots) evaluates jobs in isolation. Each
slot has its own inbox and its own NFP cache; all slots report back through
one shared outbox tagged with the slot id and pool epoch. A slot is busy
exactly while the job it was handed is unanswered.

``stop()`` is the only cancellation primitive: it terminates every slot,
busy or not, and recreates the pool under a new epoch so that late
messages from the old processes are recognised and ignored.
"""

import logging
import multiprocessing as mp
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from nesting_errors import WorkerLifecycleError, configure_logging, error_handler
from nesting_jobs import EvaluationFailure, EvaluationJob, EvaluationResult, ProgressUpdate
from placement_engine import EvaluationContext, evaluate_job

logger = logging.getLogger(__name__)

RESULT = 'result'
FAILURE = 'failure'
PROGRESS = 'progress'

# Minimum progress change a worker reports
PROGRESS_STEP = 0.05


@dataclass(frozen=True)
class WorkerMessage:
    """Envelope for everything a worker sends back"""
    slot_id: int
    epoch: int
    kind: str
    payload: Any


@dataclass
class WorkerSlot:
    slot_id: int
    epoch: int
    process: Any
    inbox: Any
    busy: bool = False
    job_id: Optional[str] = None
    dispatched_at: Optional[float] = None
    completed: int = 0


def _worker_main(slot_id: int, epoch: int, inbox, outbox, log_level: int):
    """Worker process loop: evaluate jobs until a None sentinel arrives."""
    configure_logging(log_level)

    context = EvaluationContext()
    worker_logger = logging.getLogger(f"{__name__}.slot{slot_id}")
    worker_logger.debug(f"Worker slot {slot_id} (epoch {epoch}) started")

    while True:
        job = inbox.get()
        if job is None:
            break

        last = [0.0]

        def report(value: float, job_id: str = job.job_id):
            if value < 0 or value - last[0] >= PROGRESS_STEP:
                last[0] = value
                outbox.put(WorkerMessage(slot_id, epoch, PROGRESS, ProgressUpdate(job_id, value, slot_id)))

        try:
            result = evaluate_job(job, context, report)
            outbox.put(WorkerMessage(slot_id, epoch, RESULT, result))
        except Exception as e:
            worker_logger.exception(f"Evaluation {job.job_id} failed")
            failure = EvaluationFailure(job.job_id, type(e).__name__, str(e))
            outbox.put(WorkerMessage(slot_id, epoch, FAILURE, failure))

    worker_logger.debug(f"Worker slot {slot_id} (epoch {epoch}) exiting")


class WorkerCoordinator:
    """Assigns evaluation jobs to idle worker slots and relays their results"""

    def __init__(self, slots: int = 4, log_level: Optional[int] = None, start_method: str = 'spawn'):
        if slots < 1:
            raise ValueError(f"A worker pool needs at least one slot, got {slots}")
        self.ctx = mp.get_context(start_method)
        self.slot_count = slots
        self.log_level = log_level if log_level is not None else logging.getLogger().getEffectiveLevel()
        self.slots: Dict[int, WorkerSlot] = {}
        self.epoch = 0
        self.outbox = None
        self.started = False
        self.on_progress: Optional[Callable[[ProgressUpdate], None]] = None
        self.lock = threading.RLock()
        self.stats = {'dispatched': 0, 'results': 0, 'failures': 0, 'stale': 0, 'stops': 0, 'deaths': 0}

    def __enter__(self) -> 'WorkerCoordinator':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False

    # -------------------------------------------------------------- pool

    def start(self):
        with self.lock:
            if self.started:
                return
            self._spawn_pool()
            self.started = True
            logger.info(f"Worker pool started with {self.slot_count} slots")

    def _spawn_pool(self):
        self.outbox = self.ctx.Queue()
        self.slots = {}
        for slot_id in range(self.slot_count):
            self.slots[slot_id] = self._spawn_slot(slot_id)

    def _spawn_slot(self, slot_id: int) -> WorkerSlot:
        inbox = self.ctx.Queue()
        process = self.ctx.Process(
            target=_worker_main,
            args=(slot_id, self.epoch, inbox, self.outbox, self.log_level),
            name=f"nest-worker-{slot_id}",
            daemon=True,
        )
        process.start()
        return WorkerSlot(slot_id, self.epoch, process, inbox)

    def _terminate_pool(self):
        for slot in self.slots.values():
            try:
                if slot.process is not None and slot.process.is_alive():
                    slot.process.terminate()
                if slot.process is not None:
                    slot.process.join(timeout=2)
                slot.inbox.close()
                slot.inbox.cancel_join_thread()
            except (OSError, ValueError, AttributeError) as e:
                logger.debug(f"Ignoring teardown error for slot {slot.slot_id}: {e}")
        if self.outbox is not None:
            try:
                self.outbox.close()
                self.outbox.cancel_join_thread()
            except (OSError, ValueError, AttributeError) as e:
                logger.debug(f"Ignoring teardown error for outbox: {e}")
        self.slots = {}

    def stop(self):
        """Cancel everything in flight and recreate the pool under a new epoch."""
        with self.lock:
            busy = self.busy_count
            self._terminate_pool()
            self.epoch += 1
            self.stats['stops'] += 1
            self._spawn_pool()
            self.started = True
            logger.info(f"Worker pool stopped ({busy} jobs cancelled), restarted as epoch {self.epoch}")

    def shutdown(self):
        """Terminate every slot without recreating the pool."""
        with self.lock:
            if not self.started:
                return
            self._terminate_pool()
            self.epoch += 1
            self.started = False
            logger.info("Worker pool shut down")

    # -------------------------------------------------------------- jobs

    @property
    def busy_count(self) -> int:
        with self.lock:
            return sum(1 for slot in self.slots.values() if slot.busy)

    @property
    def idle_count(self) -> int:
        with self.lock:
            if not self.started:
                return self.slot_count
            return sum(1 for slot in self.slots.values() if not slot.busy)

    def dispatch(self, job: EvaluationJob) -> Optional[int]:
        """Hand the job to the first idle slot; None when every slot is busy."""
        self.start()
        with self.lock:
            for slot_id in sorted(self.slots):
                slot = self.slots[slot_id]
                if slot.busy:
                    continue
                slot.busy = True
                slot.job_id = job.job_id
                slot.dispatched_at = time.time()
                slot.inbox.put(job)
                self.stats['dispatched'] += 1
                logger.debug(f"Job {job.job_id} dispatched to slot {slot_id}")
                return slot_id
            return None

    def poll(self, timeout: float = 0.0) -> List[Union[EvaluationResult, EvaluationFailure]]:
        """
        Collect finished evaluations.

        Waits up to ``timeout`` for the first message, then drains whatever
        else is queued. Progress is relayed to ``on_progress`` and never
        returned.
        """
        if not self.started:
            return []

        delivered = []
        wait = timeout
        while True:
            try:
                message = self.outbox.get(timeout=wait) if wait > 0 else self.outbox.get_nowait()
            except queue.Empty:
                break
            except (OSError, ValueError, EOFError) as e:
                logger.debug(f"Outbox read failed: {e}")
                break
            wait = 0
            payload = self.handle_message(message)
            if payload is not None:
                delivered.append(payload)
        delivered.extend(self.reap_dead_slots())
        return delivered

    def reap_dead_slots(self) -> List[EvaluationFailure]:
        """
        Fail the job of every busy slot whose process has exited and respawn it.

        A worker killed from outside, for example by the OOM killer, never
        sends a result or failure of its own.
        """
        failures = []
        with self.lock:
            for slot_id, slot in list(self.slots.items()):
                if not slot.busy or slot.process is None or slot.process.is_alive():
                    continue
                exitcode = slot.process.exitcode
                failure = EvaluationFailure(
                    slot.job_id, 'WorkerDied', f"worker slot {slot_id} exited with code {exitcode}"
                )
                self.stats['failures'] += 1
                self.stats['deaths'] += 1
                error_handler.log_error(
                    'worker_error',
                    WorkerLifecycleError(failure.message),
                    {'slot_id': slot_id, 'job_id': slot.job_id, 'exitcode': exitcode},
                )
                try:
                    slot.inbox.close()
                    slot.inbox.cancel_join_thread()
                except (OSError, ValueError, AttributeError) as e:
                    logger.debug(f"Ignoring teardown error for slot {slot_id}: {e}")
                replacement = self._spawn_slot(slot_id)
                replacement.completed = slot.completed
                self.slots[slot_id] = replacement
                failures.append(failure)
        return failures

    def handle_message(self, message: WorkerMessage) -> Optional[Union[EvaluationResult, EvaluationFailure]]:
        """Match a worker message to its slot; returns a result or failure to forward, else None."""
        with self.lock:
            try:
                slot = self._match(message)
            except WorkerLifecycleError as e:
                self.stats['stale'] += 1
                logger.debug(f"Ignoring worker message: {e}")
                return None

            if message.kind == PROGRESS:
                self._relay_progress(message.payload)
                return None

            slot.busy = False
            slot.job_id = None
            slot.completed += 1
            if message.kind == FAILURE:
                self.stats['failures'] += 1
            else:
                self.stats['results'] += 1
            return message.payload

    def _match(self, message: WorkerMessage) -> WorkerSlot:
        slot = self.slots.get(message.slot_id)
        if slot is None or slot.epoch != message.epoch:
            raise WorkerLifecycleError(f"slot {message.slot_id} epoch {message.epoch} no longer exists")
        if not slot.busy or getattr(message.payload, 'job_id', None) != slot.job_id:
            raise WorkerLifecycleError(
                f"slot {message.slot_id} is not waiting for job {getattr(message.payload, 'job_id', None)}"
            )
        return slot

    def _relay_progress(self, update: ProgressUpdate):
        if self.on_progress is None:
            return
        try:
            self.on_progress(update)
        except Exception as e:
            logger.debug(f"Progress relay failed: {e}")

    def status(self) -> Dict[str, Any]:
        with self.lock:
            return {
                'started': self.started,
                'epoch': self.epoch,
                'slots': self.slot_count,
                'busy': sum(1 for slot in self.slots.values() if slot.busy),
                'jobs': {slot.slot_id: slot.job_id for slot in self.slots.values() if slot.busy},
                'stats': dict(self.stats),
            }
