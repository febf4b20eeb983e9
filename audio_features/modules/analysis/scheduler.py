"""
Analysis Scheduler - runs calculators for audio sources.

Per-source lifecycle:
    IDLE -> PENDING -> READY | FAILED
    READY | FAILED -> STALE (tempo change, calculator upgrade)
    STALE -> PENDING (reschedule)

Jobs for one source run strictly one after another (FIFO). Jobs for
different sources are independent: they run in parallel on a thread pool,
or interleave slice by slice when driven cooperatively with run_pending().

Each job is an AnalysisTask. step() advances the current calculator by one
slice of `yield_every` frames; cancellation is checked before every slice.
The job's results are merged into the store only when every calculator
finished. Cancelled jobs write nothing; failed merge jobs keep the tracks
of calculators that completed before the failure.

Usage:
    scheduler = AnalysisScheduler(registry, store)             # thread pool
    handle = scheduler.schedule("kick", audio, params)
    cache = handle.result()

    scheduler = AnalysisScheduler(registry, store, max_workers=0)  # cooperative
    handle = scheduler.schedule("kick", audio, params)
    scheduler.run_until_idle()
"""

import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Sequence

from audio_features.common.logging import get_logger, job_context
from audio_features.common.monitoring import DiagnosticsChannel, JobMetrics, ProgressEvent
from audio_features.common.primitives import AudioBuffer, TempoMapper, compute_frame_count
from audio_features.core.cache import (
    AnalysisParams,
    AudioFeatureCache,
    AudioFeatureTrack,
    CacheState,
    CacheStatus,
    FeatureCacheStore,
    StaleReason,
    TempoProjection,
)
from audio_features.core.config import get_settings
from audio_features.core.errors import (
    AnalysisCancelled,
    AudioFeatureError,
    CacheError,
    CalculatorError,
)
from audio_features.core.interfaces import CalculatorProtocol
from .calculators.base import CalculatorContext, as_track_list
from .registry import CalculatorRegistry

logger = get_logger(__name__)

JobProgressCallback = Callable[[ProgressEvent], None]


@dataclass
class AnalysisJob:
    """
    One scheduled analysis request.

    Attributes:
        job_id: Unique job id
        source_id: Audio source
        audio: Decoded PCM
        params: Analysis parameters
        calculators: Calculators to run, in registration order
        merge: Targeted job (failure keeps completed tracks)
        tempo_mapper: Tempo map the hop is quantized against
        start_tick: Tick at which the audio starts
        on_progress: Job-scoped progress sink
        cancel_event: Cooperative cancellation token
    """
    job_id: str
    source_id: str
    audio: AudioBuffer
    params: AnalysisParams
    calculators: List[CalculatorProtocol]
    merge: bool = False
    tempo_mapper: TempoMapper = field(default_factory=TempoMapper)
    start_tick: float = 0.0
    on_progress: Optional[JobProgressCallback] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)

    @property
    def calculator_ids(self) -> List[str]:
        return [c.id for c in self.calculators]


class JobHandle:
    """Caller-side handle of a scheduled job."""

    def __init__(self, job: AnalysisJob, scheduler: 'AnalysisScheduler'):
        self._job = job
        self._scheduler = scheduler
        self.future: Future = Future()

    @property
    def id(self) -> str:
        return self._job.job_id

    @property
    def source_id(self) -> str:
        return self._job.source_id

    @property
    def calculator_ids(self) -> List[str]:
        return self._job.calculator_ids

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the job already finished."""
        return self._scheduler.cancel(self.id)

    def result(self, timeout: Optional[float] = None) -> AudioFeatureCache:
        """
        Block until the job finishes.

        Raises:
            AnalysisCancelled: job was cancelled
            CalculatorError: a calculator failed
        """
        return self.future.result(timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self.future.exception(timeout)

    def done(self) -> bool:
        return self.future.done()

    def cancelled(self) -> bool:
        return self.future.done() and isinstance(self.future.exception(), AnalysisCancelled)

    def add_done_callback(self, fn: Callable[['JobHandle'], None]) -> None:
        self.future.add_done_callback(lambda _: fn(self))

    def __repr__(self) -> str:
        return f"JobHandle(id={self.id!r}, source_id={self.source_id!r}, done={self.done()})"


class AnalysisTask:
    """
    Step-driven execution of one job.

    The scheduler calls step() until it returns True. The same task runs
    identically on a worker thread (run()) or a cooperative loop.
    """

    def __init__(
        self,
        job: AnalysisJob,
        handle: JobHandle,
        store: FeatureCacheStore,
        registry: CalculatorRegistry,
        diagnostics: DiagnosticsChannel,
        yield_every: int,
        metrics: JobMetrics,
    ):
        self.job = job
        self.handle = handle
        self.store = store
        self.registry = registry
        self.diagnostics = diagnostics
        self.yield_every = yield_every
        self.metrics = metrics

        self.previous_status: Optional[CacheStatus] = None
        self.finished = False

        self._index = 0
        self._generator = None
        self._completed: Dict[str, List[AudioFeatureTrack]] = {}
        self._mono = None
        self._started_at = 0.0
        self._memory_before_mb = 0.0

        audio = job.audio
        self.hop_seconds = job.params.hop_size / audio.sample_rate
        self.frame_count = compute_frame_count(audio.length, job.params.window_size, job.params.hop_size)
        mapper = job.tempo_mapper
        start_seconds = mapper.ticks_to_seconds(job.start_tick)
        self.hop_ticks = mapper.seconds_to_ticks(start_seconds + self.hop_seconds) - job.start_tick
        self.params = job.params.with_updates(
            sample_rate=audio.sample_rate,
            tempo_map_hash=mapper.hash,
            calculator_versions={c.id: int(c.version) for c in job.calculators},
        )
        self.tempo_projection = TempoProjection(job.start_tick, mapper.hash)

    # ============== Lifecycle ==============

    def activate(self) -> None:
        """Become the source's running job: remember the old status, go PENDING."""
        self.previous_status = self.store.status(self.job.source_id)
        self.store.set_status(self.job.source_id, CacheStatus.pending(self.job.job_id, 0.0))
        self._started_at = time.time()
        self._memory_before_mb = self.metrics.get_memory_mb()
        logger.info(f"Analysis job {self.job.job_id} started for {self.job.source_id}", data={
            "job_id": self.job.job_id,
            "source_id": self.job.source_id,
            "calculators": self.job.calculator_ids,
            "frame_count": self.frame_count,
            "merge": self.job.merge,
        })

    def step(self) -> bool:
        """
        Advance by one slice.

        Returns:
            True when the job has finished (completed, failed or cancelled)
        """
        if self.finished:
            return True
        job = self.job
        with job_context(job.job_id, job.source_id):
            calculator = None
            try:
                if job.cancel_event.is_set():
                    raise AnalysisCancelled(
                        f"Analysis job {job.job_id} cancelled",
                        data={"job_id": job.job_id, "source_id": job.source_id},
                    )
                if self._index >= len(job.calculators):
                    self._complete()
                    return True

                calculator = job.calculators[self._index]
                if self._generator is None:
                    calculator.prepare(self.params)
                    self._generator = calculator.steps(self._context(calculator))

                try:
                    next(self._generator)
                except StopIteration as stop:
                    self._completed[calculator.id] = as_track_list(stop.value)
                    self._generator = None
                    self._index += 1
                    if self._index >= len(job.calculators):
                        self._complete()
                        return True
                return False

            except AnalysisCancelled as e:
                self._cancelled(e)
                return True
            except Exception as e:
                self._failed(calculator, e)
                return True

    def run(self) -> None:
        """Drive to completion on the current thread."""
        while not self.step():
            pass

    def abort(self, error: BaseException) -> None:
        """Resolve the handle with `error` if the job has not resolved it yet."""
        self.finished = True
        if self.handle.future.done():
            return
        self._close_generator()
        job = self.job
        if not isinstance(error, AudioFeatureError):
            error = CacheError(
                f"Analysis job {job.job_id} aborted: {error}",
                data={"job_id": job.job_id, "source_id": job.source_id},
                cause=error,
            )
        if self.store.is_bound(job.source_id):
            current = self.store.status(job.source_id)
            if current.state is CacheState.PENDING and current.job_id == job.job_id:
                self.store.set_status(job.source_id, CacheStatus.failed("unknown", error.message))
        logger.error(f"Analysis job {job.job_id} aborted", data={
            "job_id": job.job_id,
            "source_id": job.source_id,
            "error": error.message,
        })
        self.handle.future.set_exception(error)

    # ============== Internals ==============

    def _context(self, calculator: CalculatorProtocol) -> CalculatorContext:
        context = CalculatorContext(
            source_id=self.job.source_id,
            audio=self.job.audio,
            params=self.params,
            hop_seconds=self.hop_seconds,
            hop_ticks=self.hop_ticks,
            frame_count=self.frame_count,
            tempo_mapper=self.job.tempo_mapper,
            tempo_projection=self.tempo_projection,
            cancel_event=self.job.cancel_event,
            progress_callback=lambda processed, total: self._on_progress(calculator.id, processed, total),
            yield_every=self.yield_every,
            mono=self._mono,
        )
        if self._mono is None:
            self._mono = context.get_mono()
        return context

    def _on_progress(self, calculator_id: str, processed: int, total: int) -> None:
        event = ProgressEvent(self.job.source_id, calculator_id, processed, total, self.job.job_id)
        overall = (self._index + event.ratio) / max(1, len(self.job.calculators))
        self.store.update_progress(self.job.source_id, self.job.job_id, overall)
        if self.job.on_progress is not None:
            self.job.on_progress(event)
        self.diagnostics.emit_progress(event)

    def _build_cache(self, completed: Dict[str, List[AudioFeatureTrack]]) -> AudioFeatureCache:
        tracks = {}
        for calculator_tracks in completed.values():
            for track in calculator_tracks:
                tracks[track.key] = track
        params = self.params.with_updates(
            calculator_versions={cid: self.params.calculator_versions[cid] for cid in completed},
        )
        return AudioFeatureCache(
            source_id=self.job.source_id,
            hop_seconds=self.hop_seconds,
            hop_ticks=self.hop_ticks,
            frame_count=self.frame_count,
            tempo_projection=self.tempo_projection,
            feature_tracks=tracks,
            analysis_params=params,
            channel_aliases=self.job.audio.channel_aliases,
            input_hash=self.job.audio.content_hash(),
        )

    def _complete(self) -> None:
        job = self.job
        cache = self._build_cache(self._completed)
        try:
            merged = self.store.ingest(job.source_id, cache, replaced_calculators=list(self._completed))
        except CacheError as e:
            self._finish("failed")
            self.handle.future.set_exception(e)
            return
        self._flag_outdated(merged)
        self._finish("completed", tracks=len(cache.feature_tracks))
        self.handle.future.set_result(merged)

    def _flag_outdated(self, cache: AudioFeatureCache) -> None:
        """Preserved tracks from an older calculator version keep the cache stale."""
        registered = self.registry.versions()
        for track in cache.feature_tracks.values():
            version = registered.get(track.calculator_id)
            if version is not None and track.version < version:
                self.store.mark_stale(
                    cache.source_id,
                    StaleReason.CALCULATOR_UPGRADED,
                    message=f"{track.key} built by v{track.version}, v{version} registered",
                    calculator_id=track.calculator_id,
                )
                return

    def _cancelled(self, error: AnalysisCancelled) -> None:
        self._close_generator()
        job = self.job
        if self.previous_status is not None and self.store.is_bound(job.source_id):
            current = self.store.status(job.source_id)
            if current.state is CacheState.PENDING and current.job_id == job.job_id:
                self.store.set_status(job.source_id, self.previous_status)
        self._finish("cancelled", calculator_index=self._index)
        self.handle.future.set_exception(error)

    def _failed(self, calculator: Optional[CalculatorProtocol], cause: Exception) -> None:
        self._close_generator()
        job = self.job
        calculator_id = calculator.id if calculator is not None else "unknown"
        if isinstance(cause, CalculatorError):
            error = cause
        else:
            message = cause.message if isinstance(cause, AudioFeatureError) else str(cause) or type(cause).__name__
            error = CalculatorError(
                calculator_id,
                message,
                data={"job_id": job.job_id, "source_id": job.source_id},
                cause=cause,
            )

        kept = 0
        if job.merge and self._completed and self.store.is_bound(job.source_id):
            try:
                cache = self._build_cache(self._completed)
                self.store.ingest(job.source_id, cache, replaced_calculators=list(self._completed))
                kept = len(cache.feature_tracks)
            except AudioFeatureError as e:
                logger.warning(f"Discarding completed tracks of failed job {job.job_id}: {e.message}", data={
                    "job_id": job.job_id,
                    "source_id": job.source_id,
                    "calculators": list(self._completed),
                })

        if self.store.is_bound(job.source_id):
            self.store.set_status(job.source_id, CacheStatus.failed(calculator_id, error.message))
        self._finish("failed", calculator_id=calculator_id, kept_tracks=kept)
        self.handle.future.set_exception(error)

    def _close_generator(self) -> None:
        if self._generator is not None:
            self._generator.close()
            self._generator = None

    def _finish(self, outcome: str, **context) -> None:
        self.finished = True
        self.metrics.record_job(
            self.job.job_id,
            self.job.source_id,
            time.time() - self._started_at if self._started_at else 0.0,
            self._memory_before_mb,
            outcome,
            context={"calculators": self.job.calculator_ids, **context},
        )


class AnalysisScheduler:
    """
    Per-source FIFO job scheduler.

    With max_workers > 0 each source's queue is drained on a thread pool
    worker; with max_workers == 0 nothing runs until the caller drives
    run_pending() / run_until_idle().
    """

    def __init__(
        self,
        registry: CalculatorRegistry,
        store: FeatureCacheStore,
        diagnostics: Optional[DiagnosticsChannel] = None,
        max_workers: Optional[int] = None,
        yield_every: Optional[int] = None,
    ):
        settings = get_settings()
        self.registry = registry
        self.store = store
        self.diagnostics = diagnostics or DiagnosticsChannel()
        self.max_workers = settings.max_workers if max_workers is None else max_workers
        self.yield_every = max(1, yield_every or settings.yield_every)
        self.metrics = JobMetrics()

        self._lock = threading.RLock()
        self._queues: Dict[str, Deque[AnalysisTask]] = {}
        self._active: Dict[str, AnalysisTask] = {}
        self._tasks: Dict[str, AnalysisTask] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.max_workers > 0:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="audio-features",
            )

    @property
    def cooperative(self) -> bool:
        return self._executor is None

    # ============== Scheduling ==============

    def schedule(
        self,
        source_id: str,
        audio: AudioBuffer,
        params: Optional[AnalysisParams] = None,
        calculator_ids: Optional[Sequence[str]] = None,
        merge: bool = False,
        on_progress: Optional[JobProgressCallback] = None,
        tempo_mapper: Optional[TempoMapper] = None,
        start_tick: float = 0.0,
        job_id: Optional[str] = None,
    ) -> JobHandle:
        """
        Queue an analysis job for a source.

        Args:
            source_id: Audio source id
            audio: Decoded PCM
            params: Analysis parameters (defaults from settings)
            calculator_ids: Subset to run (default: every registered calculator)
            merge: Targeted job; a failure keeps tracks already computed
            on_progress: Receives ProgressEvent per slice
            tempo_mapper: Live tempo map (default: constant settings tempo)
            start_tick: Tick position of the first sample

        Raises:
            UnknownCalculator: any id is not registered
        """
        calculators = self.registry.resolve(calculator_ids)
        if params is None:
            settings = get_settings()
            params = AnalysisParams(window_size=settings.window_size, hop_size=settings.hop_size)
        if tempo_mapper is None:
            settings = get_settings()
            tempo_mapper = TempoMapper(
                ticks_per_quarter=settings.ticks_per_quarter,
                default_bpm=settings.default_bpm,
            )

        job = AnalysisJob(
            job_id=job_id or f"job-{uuid.uuid4().hex[:12]}",
            source_id=source_id,
            audio=audio,
            params=params,
            calculators=calculators,
            merge=merge,
            tempo_mapper=tempo_mapper,
            start_tick=start_tick,
            on_progress=on_progress,
        )
        handle = JobHandle(job, self)
        task = AnalysisTask(
            job,
            handle,
            self.store,
            self.registry,
            self.diagnostics,
            self.yield_every,
            self.metrics,
        )

        self.store.bind(source_id, audio, params)
        with self._lock:
            self._tasks[job.job_id] = task
            self._queues.setdefault(source_id, deque()).append(task)
            start_driver = source_id not in self._active
            if start_driver:
                self._advance(source_id)

        logger.debug(f"Scheduled {job.job_id} for {source_id}", data={
            "job_id": job.job_id,
            "source_id": source_id,
            "calculators": job.calculator_ids,
            "merge": merge,
            "queued": not start_driver,
        })
        if start_driver and self._executor is not None:
            self._executor.submit(self._drain, source_id)
        return handle

    def reanalyze(
        self,
        source_id: str,
        calculator_ids: Sequence[str],
        on_progress: Optional[JobProgressCallback] = None,
        tempo_mapper: Optional[TempoMapper] = None,
    ) -> JobHandle:
        """
        Merge job restricted to `calculator_ids` using the source's bound audio.

        Only those calculators' tracks are replaced on completion.

        Raises:
            CacheError: source has no bound audio
            UnknownCalculator: any id is not registered
        """
        binding = self.store.binding(source_id)
        if binding is None or binding.audio is None:
            raise CacheError(
                f"Source {source_id} has no bound audio to reanalyze",
                data={"source_id": source_id},
            )
        cache = self.store.get(source_id)
        params = binding.params
        start_tick = 0.0
        if cache is not None:
            params = params or cache.analysis_params
            start_tick = cache.tempo_projection.start_tick
        return self.schedule(
            source_id,
            binding.audio,
            params,
            calculator_ids=list(calculator_ids),
            merge=True,
            on_progress=on_progress,
            tempo_mapper=tempo_mapper,
            start_tick=start_tick,
        )

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued or running job. Returns False if unknown or finished."""
        with self._lock:
            task = self._tasks.get(job_id)
            if task is None or task.finished:
                return False
            task.job.cancel_event.set()
            queue = self._queues.get(task.job.source_id)
            queued = queue is not None and task in queue
            if queued:
                queue.remove(task)
                self._tasks.pop(job_id, None)
        if queued:
            task.finished = True
            task.handle.future.set_exception(AnalysisCancelled(
                f"Analysis job {job_id} cancelled before start",
                data={"job_id": job_id, "source_id": task.job.source_id},
            ))
        return True

    def cancel_source(self, source_id: str) -> int:
        """Cancel every queued and running job of a source."""
        with self._lock:
            job_ids = [t.job.job_id for t in self._queues.get(source_id, ())]
            active = self._active.get(source_id)
            if active is not None:
                job_ids.append(active.job.job_id)
        return sum(1 for job_id in job_ids if self.cancel(job_id))

    # ============== Execution ==============

    def _advance(self, source_id: str) -> Optional[AnalysisTask]:
        """Activate the next queued job of a source (caller holds the lock)."""
        queue = self._queues.get(source_id)
        if not queue:
            self._queues.pop(source_id, None)
            self._active.pop(source_id, None)
            return None
        task = queue.popleft()
        self._active[source_id] = task
        task.activate()
        return task

    def _retire(self, task: AnalysisTask) -> Optional[AnalysisTask]:
        with self._lock:
            self._tasks.pop(task.job.job_id, None)
            if self._active.get(task.job.source_id) is task:
                self._active.pop(task.job.source_id, None)
            return self._advance(task.job.source_id)

    def _drain(self, source_id: str) -> None:
        """Worker loop: run the source's jobs back to back."""
        with self._lock:
            task = self._active.get(source_id)
        while task is not None:
            try:
                task.run()
            except Exception as e:
                task.abort(e)
            task = self._retire(task)

    def run_pending(self) -> int:
        """
        Advance every active job by one slice (cooperative mode).

        Returns:
            Number of jobs stepped
        """
        with self._lock:
            tasks = list(self._active.values())
        for task in tasks:
            try:
                done = task.step()
            except Exception as e:
                task.abort(e)
                done = True
            if done:
                self._retire(task)
        return len(tasks)

    def run_until_idle(self, max_steps: Optional[int] = None) -> int:
        """Drive cooperative jobs until none remain (or max_steps rounds)."""
        rounds = 0
        while self.has_pending():
            if max_steps is not None and rounds >= max_steps:
                break
            self.run_pending()
            rounds += 1
        return rounds

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._active) or any(self._queues.values())

    def active_job(self, source_id: str) -> Optional[str]:
        task = self._active.get(source_id)
        return task.job.job_id if task is not None else None

    def queued_jobs(self, source_id: str) -> List[str]:
        with self._lock:
            return [t.job.job_id for t in self._queues.get(source_id, ())]

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def __enter__(self) -> 'AnalysisScheduler':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
