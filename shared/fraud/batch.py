"""Batch analysis over historical follower events.

One coordinating loop per job walks the followed users with events in the
job's window (keyset pages) and hands each page to a bounded thread pool.
Per user, a worker:

1. runs the detector for every follower with events on that user
2. persists new signals (idempotent on fingerprint) and dispatches alerts
3. recomputes the user's risk score

Every step opens its own session and retries transient store errors. A user
that still fails is logged, counted and skipped. Counters are flushed with a
heartbeat every ``batch_flush_every`` users, and the flush is where
cancellation is noticed.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from functools import partial
from typing import Callable, Iterable, Mapping, Optional, TypeVar

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from structlog.contextvars import bound_contextvars
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from db_models import BatchAnalysisJob, BotDetectionSignal, JobStatus
from fraud import detector, notifications, scoring
from fraud import events as event_store
from fraud.config import FraudSettings
from fraud.errors import (
    ConflictError,
    FatalJobError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
    translate_db_error,
)
from fraud.locks import UserLocks, user_locks
from fraud.profiles import ProfileReader
from fraud.types import Clock

log = structlog.get_logger(__name__)

T = TypeVar("T")
SessionFactory = Callable[[], Session]


def _naive(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is not None and ts.tzinfo is not None:
        return event_store.as_naive_utc(ts)
    return ts


### Job lifecycle

def trigger_batch_analysis(
    db: Session,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    *,
    clock: Clock,
    config: FraudSettings,
) -> BatchAnalysisJob:
    """Create a ``started`` job row. Execution happens in the worker.

    Without ``date_from`` the window continues from the last completed job,
    else covers the last ``default_analysis_days``.
    """
    now = clock()
    date_from, date_to = _naive(date_from), _naive(date_to)
    if date_to is None:
        date_to = now
    if date_from is None:
        last = (
            db.query(BatchAnalysisJob)
            .filter(BatchAnalysisJob.status == JobStatus.completed)
            .order_by(BatchAnalysisJob.date_to.desc())
            .first()
        )
        date_from = last.date_to if last else date_to - timedelta(days=config.default_analysis_days)
        date_from = min(date_from, date_to)
    elif date_from > date_to:
        raise ValidationError(
            "date_from must not be after date_to",
            date_from=date_from.isoformat(),
            date_to=date_to.isoformat(),
        )

    job = BatchAnalysisJob(
        status=JobStatus.started,
        date_from=date_from,
        date_to=date_to,
        started_at=now,
        heartbeat_at=now,
        cancel_requested=False,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    log.info("batch_job_created", job_id=job.id, date_from=date_from.isoformat(), date_to=date_to.isoformat())
    return job


def get_job(db: Session, job_id: int) -> BatchAnalysisJob:
    job = db.get(BatchAnalysisJob, job_id)
    if job is None:
        raise NotFoundError("batch job not found", job_id=job_id)
    return job


def request_cancel(db: Session, job_id: int) -> BatchAnalysisJob:
    job = get_job(db, job_id)
    if job.status == JobStatus.cancelled:
        return job
    if job.status != JobStatus.started:
        raise ConflictError(f"job already {JobStatus(job.status).value}", job_id=job_id)
    job.cancel_requested = True
    db.add(job)
    db.commit()
    log.info("batch_cancel_requested", job_id=job_id)
    return job


def reap_stalled_jobs(db: Session, *, clock: Clock, config: FraudSettings) -> list[int]:
    """Fail ``started`` jobs whose heartbeat is older than the stall timeout."""
    now = clock()
    cutoff = now - timedelta(seconds=config.job_stall_timeout_seconds)
    stalled = (
        db.query(BatchAnalysisJob)
        .filter(BatchAnalysisJob.status == JobStatus.started)
        .filter(BatchAnalysisJob.heartbeat_at < cutoff)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in stalled:
        job.status = JobStatus.failed
        job.completed_at = now
        job.message = f"stalled: no heartbeat since {job.heartbeat_at.isoformat()}"
        db.add(job)
    db.commit()
    ids = [j.id for j in stalled]
    if ids:
        log.warning("batch_jobs_reaped", job_ids=ids)
    return ids


### Per-follower analysis

def persist_signals(
    db: Session,
    signals: Iterable[detector.DetectedSignal],
    *,
    clock: Clock,
) -> list[BotDetectionSignal]:
    """Insert signals not seen before. Returns only the new rows. Does not commit."""
    now = clock()
    new_rows = []
    for s in signals:
        exists = (
            db.query(BotDetectionSignal.id)
            .filter(BotDetectionSignal.subject_user_id == s.subject_user_id)
            .filter(BotDetectionSignal.signal_type == s.signal_type)
            .filter(BotDetectionSignal.fingerprint == s.fingerprint)
            .first()
        )
        if exists:
            continue
        row = BotDetectionSignal(
            subject_user_id=s.subject_user_id,
            signal_type=s.signal_type,
            confidence_score=s.confidence,
            detected_at=now,
            evidence=s.evidence,
            related_accounts=list(s.related_accounts) or None,
            fingerprint=s.fingerprint,
        )
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
        except IntegrityError:
            continue
        new_rows.append(row)
    return new_rows


def analyze_follower(
    db: Session,
    follower_id: str,
    *,
    profiles: ProfileReader,
    as_of: datetime,
    clock: Clock,
    config: FraudSettings,
    rules: Optional[Mapping[str, detector.Rule]] = None,
) -> tuple[list[detector.DetectedSignal], int]:
    """Detect, persist and notify for one account. Commits.

    Returns the detected signals and how many of them were new.
    """
    ctx = detector.build_context(db, follower_id, profiles=profiles, as_of=as_of, config=config)
    detected = detector.detect(ctx, config, rules)
    new_rows = persist_signals(db, detected, clock=clock)
    for row in new_rows:
        notifications.dispatch_for_signal(db, row, clock=clock, config=config)
    if new_rows:
        # every account this one follows now has a stale score
        for uid in event_store.active_following(db, follower_id):
            event_store.request_recompute(db, uid, clock=clock)
        log.info(
            "signals_detected",
            subject_user_id=follower_id,
            signal_types=sorted({r.signal_type for r in new_rows}),
            count=len(new_rows),
        )
    db.commit()
    return detected, len(new_rows)


### Retrying unit of work

def run_in_session(session_factory: SessionFactory, fn: Callable[[Session], T], *, config: FraudSettings) -> T:
    """Run ``fn`` in a fresh session, retrying transient store errors."""
    for attempt in Retrying(
        stop=stop_after_attempt(config.batch_max_retries),
        wait=wait_exponential_jitter(initial=config.batch_retry_initial_seconds, max=config.batch_retry_max_seconds),
        retry=retry_if_exception_type(TransientStoreError),
        reraise=True,
    ):
        with attempt:
            db = session_factory()
            try:
                return fn(db)
            except Exception as e:
                db.rollback()
                err = translate_db_error(e)
                if err is e:
                    raise
                raise err from e
            finally:
                db.close()
    raise AssertionError("unreachable")


### Coordinator

class BatchRunner:
    def __init__(
        self,
        session_factory: SessionFactory,
        job_id: int,
        *,
        profiles: ProfileReader,
        clock: Clock,
        config: FraudSettings,
        rules: Optional[Mapping[str, detector.Rule]] = None,
        cancel_event: Optional[threading.Event] = None,
        locks: UserLocks = user_locks,
    ):
        self.session_factory = session_factory
        self.job_id = job_id
        self.profiles = profiles
        self.clock = clock
        self.config = config
        self.rules = rules
        self.locks = locks
        self.cancel_event = cancel_event or threading.Event()

        self.counters = {"processed_followers": 0, "new_signals_detected": 0, "users_scored": 0, "users_failed": 0}
        self._counter_lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._since_flush = 0
        self._seen_followers: set[str] = set()
        self._linked_signals: list[detector.DetectedSignal] = []

        self.date_from: Optional[datetime] = None
        self.date_to: Optional[datetime] = None

    def _in_session(self, fn: Callable[[Session], T]) -> T:
        return run_in_session(self.session_factory, fn, config=self.config)

    def _cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _claim_follower(self, follower_id: str) -> bool:
        with self._counter_lock:
            if follower_id in self._seen_followers:
                return False
            self._seen_followers.add(follower_id)
            return True

    def _release_follower(self, follower_id: str) -> None:
        with self._counter_lock:
            self._seen_followers.discard(follower_id)

    def _record(self, users: int = 0, **deltas: int) -> None:
        with self._counter_lock:
            for k, v in deltas.items():
                self.counters[k] += v
            self._since_flush += users
            due = self._since_flush >= self.config.batch_flush_every
            if due:
                self._since_flush = 0
        if due:
            self.flush()

    def flush(self) -> None:
        """Persist counters and heartbeat; pick up a cancel request."""
        with self._counter_lock:
            snapshot = dict(self.counters)

        def _write(db: Session) -> bool:
            job = db.get(BatchAnalysisJob, self.job_id)
            for k, v in snapshot.items():
                setattr(job, k, v)
            job.heartbeat_at = self.clock()
            db.add(job)
            db.commit()
            # a reaped job stops the same way a cancelled one does
            return bool(job.cancel_requested) or job.status != JobStatus.started

        with self._flush_lock:
            if self._in_session(_write) and not self._cancelled():
                log.info("batch_cancel_observed", job_id=self.job_id)
                self.cancel_event.set()

    def _read_page(self, cursor: Optional[str]) -> list[str]:
        try:
            return self._in_session(partial(
                event_store.affected_users_page,
                date_from=self.date_from,
                date_to=self.date_to,
                after=cursor,
                limit=self.config.batch_page_size,
            ))
        except Exception as e:
            raise FatalJobError("cannot read affected users", error=str(e)) from e

    def process_user(self, user_id: str) -> None:
        if self._cancelled():
            return
        with bound_contextvars(job_id=self.job_id, user_id=user_id):
            stage = "collect"
            try:
                followers = self._in_session(partial(
                    event_store.followers_with_events,
                    followed_id=user_id,
                    date_from=self.date_from,
                    date_to=self.date_to,
                ))
                stage = "detect"
                for fid in followers:
                    if not self._claim_follower(fid):
                        continue
                    try:
                        detected, new_count = self._in_session(partial(
                            analyze_follower,
                            follower_id=fid,
                            profiles=self.profiles,
                            as_of=self.date_to,
                            clock=self.clock,
                            config=self.config,
                            rules=self.rules,
                        ))
                    except Exception:
                        # later users sharing this follower retry it
                        self._release_follower(fid)
                        raise
                    linked = [s for s in detected if s.related_accounts]
                    with self._counter_lock:
                        self._linked_signals.extend(linked)
                    self._record(processed_followers=1, new_signals_detected=new_count)

                stage = "score"
                self._in_session(partial(
                    scoring.recompute,
                    user_id=user_id,
                    profiles=self.profiles,
                    clock=self.clock,
                    config=self.config,
                    locks=self.locks,
                ))
                self._record(users=1, users_scored=1)
            except Exception as e:
                log.warning("batch_user_failed", user_id=user_id, stage=stage, error=str(e))
                self._record(users=1, users_failed=1)

    def _finalize(self, status: JobStatus, message: Optional[str]) -> JobStatus:
        with self._counter_lock:
            snapshot = dict(self.counters)

        def _write(db: Session) -> JobStatus:
            job = db.query(BatchAnalysisJob).filter(BatchAnalysisJob.id == self.job_id).with_for_update().one()
            if job.status != JobStatus.started:
                # reaped while running; terminal states are final
                log.warning("batch_job_already_final", job_id=self.job_id, status=JobStatus(job.status).value)
                return JobStatus(job.status)
            now = self.clock()
            for k, v in snapshot.items():
                setattr(job, k, v)
            job.status = status
            job.completed_at = now
            job.heartbeat_at = now
            job.message = message
            db.add(job)
            db.commit()
            return status

        return self._in_session(_write)

    def run(self) -> JobStatus:
        def _load(db: Session):
            job = db.get(BatchAnalysisJob, self.job_id)
            if job is None:
                raise NotFoundError("batch job not found", job_id=self.job_id)
            return JobStatus(job.status), job.date_from, job.date_to, bool(job.cancel_requested)

        status, self.date_from, self.date_to, cancel = self._in_session(_load)
        if status != JobStatus.started:
            log.info("batch_job_skipped", job_id=self.job_id, status=status.value)
            return status
        if cancel:
            self.cancel_event.set()

        log.info("batch_job_running", job_id=self.job_id, workers=self.config.batch_workers)
        cursor: Optional[str] = None
        try:
            with ThreadPoolExecutor(max_workers=self.config.batch_workers, thread_name_prefix="fraud-batch") as pool:
                while not self._cancelled():
                    page = self._read_page(cursor)
                    if not page:
                        break
                    # process_user never raises
                    list(pool.map(self.process_user, page))
                    cursor = page[-1]
                    self.flush()
        except FatalJobError as e:
            log.error("batch_job_failed", job_id=self.job_id, reason=e.message, **e.context)
            return self._finalize(JobStatus.failed, e.message)
        except Exception as e:
            log.exception("batch_job_failed", job_id=self.job_id, error=str(e))
            self._finalize(JobStatus.failed, str(e)[:500])
            raise

        networks = detector.find_coordinated_networks(self._linked_signals)
        message = None
        if networks:
            message = f"{len(networks)} coordinated network(s); largest has {len(networks[0])} accounts"
            log.info("coordinated_networks_detected", job_id=self.job_id, count=len(networks), sizes=[len(n) for n in networks])

        final = JobStatus.cancelled if self._cancelled() else JobStatus.completed
        final = self._finalize(final, message)
        with self._counter_lock:
            counters = dict(self.counters)
        log.info("batch_job_finished", job_id=self.job_id, status=final.value, **counters)
        return final


def run_batch_job(
    session_factory: SessionFactory,
    job_id: int,
    *,
    profiles: ProfileReader,
    clock: Clock,
    config: FraudSettings,
    rules: Optional[Mapping[str, detector.Rule]] = None,
    cancel_event: Optional[threading.Event] = None,
    locks: UserLocks = user_locks,
) -> JobStatus:
    return BatchRunner(
        session_factory,
        job_id,
        profiles=profiles,
        clock=clock,
        config=config,
        rules=rules,
        cancel_event=cancel_event,
        locks=locks,
    ).run()


### Recompute queue

def drain_recompute_queue(
    session_factory: SessionFactory,
    *,
    profiles: ProfileReader,
    clock: Clock,
    config: FraudSettings,
    limit: Optional[int] = None,
    locks: UserLocks = user_locks,
) -> dict:
    """Recompute the users whose requests are queued.

    A request that keeps failing transiently is put back until it has been
    tried ``batch_max_retries`` times, then dropped with a log line.
    """
    limit = limit or config.recompute_drain_limit
    claimed = run_in_session(
        session_factory, partial(event_store.claim_recompute_requests, limit=limit), config=config
    )
    recomputed = failed = requeued = 0
    for req in claimed:
        try:
            run_in_session(
                session_factory,
                partial(scoring.recompute, user_id=req.user_id, profiles=profiles, clock=clock, config=config, locks=locks),
                config=config,
            )
            recomputed += 1
        except TransientStoreError as e:
            if req.attempts + 1 < config.batch_max_retries:
                run_in_session(session_factory, partial(event_store.requeue, request=req, clock=clock), config=config)
                requeued += 1
            else:
                log.error("recompute_dropped", user_id=req.user_id, attempts=req.attempts + 1, error=e.message)
                failed += 1
        except Exception as e:
            log.warning("recompute_failed", user_id=req.user_id, error=str(e))
            failed += 1

    result = {"claimed": len(claimed), "recomputed": recomputed, "requeued": requeued, "failed": failed}
    if claimed:
        log.info("recompute_queue_drained", **result)
    return result
