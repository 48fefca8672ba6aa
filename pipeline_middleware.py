import logging
import queue
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from input_middleware import DomainJob
from output_middleware import SinkError
from progress_middleware import ProgressMiddleware
from range_middleware import UNKNOWN_CDN, RangeTable
from resolver_middleware import ResolutionCancelled, ResolutionError, ResolverPool

log = logging.getLogger(__name__)

DEFAULT_WORKERS = 50
_DONE = object()
_POLL = 0.2


class Outcome(Enum):
    SUCCESS = "success"
    NO_CDN = "no_cdn"
    FAILED = "failure"
    CANCELLED = "cancelled"


@dataclass
class ResolutionResult:
    domain: str
    rank: Optional[int] = None
    outcome: Outcome = Outcome.SUCCESS
    cdn: str = UNKNOWN_CDN
    ip: str = ""
    duration: float = 0.0
    error_kind: str = ""
    error: str = ""

    def row(self):
        return (self.cdn, self.domain, self.ip)


@dataclass
class RunSummary:
    total: int = 0
    processed: int = 0
    success: int = 0
    no_cdn: int = 0
    failure: int = 0
    cancelled: int = 0
    sink_errors: int = 0
    elapsed: float = 0.0

    @property
    def undispatched(self) -> int:
        return max(0, self.total - self.processed)

    def as_line(self) -> str:
        return (f"processed={self.processed} success={self.success} no_cdn={self.no_cdn} "
                f"failure={self.failure} cancelled={self.cancelled} sink_errors={self.sink_errors} "
                f"total={self.total} elapsed={self.elapsed:.1f}s")


def process_job(job: DomainJob, pool: ResolverPool, table: RangeTable) -> ResolutionResult:
    """Resolve + classify one domain. Never raises: every job yields one result."""
    started = time.monotonic()
    res = ResolutionResult(domain=job.domain, rank=job.rank)
    if not job.valid:
        res.outcome = Outcome.FAILED
        res.error_kind = "invalid_row"
        res.error = f"line {job.line_no}: no domain column"
        return res
    try:
        res.ip, _ = pool.resolve(job.domain)
        res.cdn, found = table.classify(res.ip)
        if not found:
            res.outcome = Outcome.NO_CDN
            res.error_kind = "no_cdn"
            res.error = f"no cdn found for IP {res.ip}"
    except ResolutionCancelled as e:
        res.outcome = Outcome.CANCELLED
        res.error_kind = "cancelled"
        res.error = str(e)
    except ResolutionError as e:
        res.outcome = Outcome.FAILED
        res.error_kind = "resolution"
        res.error = str(e)
    except Exception as e:
        res.outcome = Outcome.FAILED
        res.error_kind = "internal"
        res.error = f"{type(e).__name__}: {e}"
    res.duration = time.monotonic() - started
    return res


class PipelineCoordinator:
    """
    One producer -> bounded job queue -> N workers -> bounded result queue ->
    the calling thread as sole aggregator. The aggregator is the only writer
    of the sink and the only mutator of the progress state.
    """

    def __init__(self, table: RangeTable, pool: ResolverPool, sink, workers: int = DEFAULT_WORKERS,
                 progress: Optional[ProgressMiddleware] = None,
                 cancel_event: Optional[threading.Event] = None,
                 max_sink_errors: Optional[int] = None):
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.table = table
        self.pool = pool
        self.sink = sink
        self.workers = int(workers)
        self.progress = progress
        self.cancel_event = cancel_event or pool.cancel_event
        self.max_sink_errors = max_sink_errors
        self._producer_error: Optional[BaseException] = None
        self._sink_error: Optional[SinkError] = None

    def cancel(self):
        self.cancel_event.set()

    def _put(self, q: queue.Queue, item) -> bool:
        while True:
            if self.cancel_event.is_set():
                return False
            try:
                q.put(item, timeout=_POLL)
                return True
            except queue.Full:
                continue

    def _produce(self, jobs: Iterable[DomainJob], job_q: queue.Queue):
        try:
            for job in jobs:
                if not self._put(job_q, job):
                    log.info("Cancellation requested; no further domains will be dispatched")
                    break
        except Exception as e:
            self._producer_error = e
            log.error("Reading domain list failed: %s", e)
            self.cancel_event.set()
        finally:
            # workers keep draining, so blocking puts for the sentinels cannot stall
            for _ in range(self.workers):
                job_q.put(_DONE)

    def _work(self, job_q: queue.Queue, res_q: queue.Queue):
        while True:
            job = job_q.get()
            if job is _DONE:
                res_q.put(_DONE)
                return
            res_q.put(process_job(job, self.pool, self.table))

    def _aggregate(self, res: ResolutionResult, summary: RunSummary, progress: ProgressMiddleware):
        summary.processed += 1
        if res.outcome is Outcome.SUCCESS:
            summary.success += 1
            log.debug("resolved cdn: cdn=%s domain=%s ip=%s", res.cdn, res.domain, res.ip)
            if self._sink_error is None:
                try:
                    self.sink.write(res)
                except SinkError as e:
                    summary.sink_errors += 1
                    log.error("Error writing record to CSV: %s", e)
                    if self.max_sink_errors is not None and summary.sink_errors > self.max_sink_errors:
                        self._sink_error = e
                        log.error("Too many write errors (%d); stopping run", summary.sink_errors)
                        self.cancel_event.set()
        elif res.outcome is Outcome.NO_CDN:
            summary.no_cdn += 1
            log.warning("no cdn: domain=%s ip=%s", res.domain, res.ip)
        elif res.outcome is Outcome.CANCELLED:
            summary.cancelled += 1
        else:
            summary.failure += 1
            log.error("Error processing domain %s [%s]: %s", res.domain or "-", res.error_kind, res.error)
        progress.advance(res.duration)

    def run(self, jobs: Iterable[DomainJob], total: int = 0) -> RunSummary:
        """Process every job exactly once and return the counts."""
        started = time.monotonic()
        summary = RunSummary(total=total)
        progress = self.progress or ProgressMiddleware(total=total, disable=True)

        job_q: queue.Queue = queue.Queue(maxsize=self.workers)
        res_q: queue.Queue = queue.Queue(maxsize=self.workers)

        threads = [threading.Thread(target=self._produce, args=(jobs, job_q), name="producer", daemon=True)]
        threads += [
            threading.Thread(target=self._work, args=(job_q, res_q), name=f"worker-{i}", daemon=True)
            for i in range(self.workers)
        ]
        for t in threads:
            t.start()

        done = 0
        with progress:
            while done < self.workers:
                item = res_q.get()
                if item is _DONE:
                    done += 1
                    continue
                self._aggregate(item, summary, progress)

        for t in threads:
            t.join()
        summary.elapsed = time.monotonic() - started

        if self._producer_error is not None:
            raise self._producer_error
        if self._sink_error is not None:
            raise self._sink_error
        return summary
