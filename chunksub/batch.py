"""Batch queue of subtitle jobs, processed one job at a time."""

import logging
import os
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from .exceptions import AlreadyRunning, ChunkSubError, EmptyQueue, JobNotRemovable, OperationCancelled
from .models import BatchSummary, ClipRange, GenerationOptions, JobStatus, SubtitleJob
from .subtitle_formatter import SRTFormatter
from .subtitle_generator import SubtitleGenerationPipeline, output_path_for
from .transcriber import TranscriptionBackend
from .utils import CancellationToken

module_logger = logging.getLogger(__name__)

BackendFactory = Callable[[str], TranscriptionBackend]
JobListener = Callable[[SubtitleJob, BatchSummary], None]
BatchListener = Callable[[BatchSummary], None]


class BatchCoordinator:
    """
    Drives the generation pipeline over a queue of jobs.

    Job states move ``PENDING -> PROCESSING -> COMPLETED | FAILED | CANCELLED``
    and never leave a terminal state. Jobs run strictly one after another;
    only the chunks inside one job run concurrently. Job state is written by
    the coordinator's own loop only; other threads may enqueue, cancel and
    remove (never the job being processed). Counters are recomputed from the
    job list each time they are read.
    """

    def __init__(
        self,
        pipeline: SubtitleGenerationPipeline,
        backend_factory: BackendFactory,
        options: Optional[GenerationOptions] = None,
        formatter: Optional[SRTFormatter] = None,
        output_dir: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Args:
            pipeline: Generation pipeline used for every job.
            backend_factory: Turns a job's backend name into a backend instance.
                             Instances are created once per batch run and closed afterwards.
            options: Generation options shared by all jobs.
            formatter: Writes the subtitle files.
            output_dir: Write subtitles here instead of next to each source file.
            logger: Logger to report to; defaults to this module's logger.
        """
        self.pipeline = pipeline
        self.backend_factory = backend_factory
        self.options = options or GenerationOptions()
        self.formatter = formatter or SRTFormatter()
        self.output_dir = output_dir
        self.log = logger or module_logger

        self.on_progress: Optional[JobListener] = None
        self.on_job_finished: Optional[JobListener] = None
        self.on_batch_completed: Optional[BatchListener] = None

        self._jobs: List[SubtitleJob] = []
        self._lock = threading.RLock()
        self._running = False
        self._cancel_token: Optional[CancellationToken] = None

    # --- Queue inspection -------------------------------------------------

    @property
    def jobs(self) -> List[SubtitleJob]:
        """Snapshot of the queue in insertion order."""
        with self._lock:
            return list(self._jobs)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def summary(self) -> BatchSummary:
        with self._lock:
            summary = BatchSummary(total=len(self._jobs))
            for job in self._jobs:
                if job.status is JobStatus.PENDING:
                    summary.pending += 1
                elif job.status is JobStatus.PROCESSING:
                    summary.processing += 1
                elif job.status is JobStatus.COMPLETED:
                    summary.completed += 1
                elif job.status is JobStatus.FAILED:
                    summary.failed += 1
                elif job.status is JobStatus.CANCELLED:
                    summary.cancelled += 1
            return summary

    @property
    def overall_progress(self) -> float:
        return self.summary.overall_progress

    def get_job(self, job_id: str) -> Optional[SubtitleJob]:
        with self._lock:
            return next((job for job in self._jobs if job.id == job_id), None)

    # --- Queue mutation ---------------------------------------------------

    def enqueue(self, source_path: str, backend_name: str, clip: Optional[ClipRange] = None) -> Optional[SubtitleJob]:
        """
        Adds a job unless one with the same source, clip range and backend is queued.

        Returns:
            The new job, or None if it was a duplicate.
        """
        return self.enqueue_job(SubtitleJob(source_path=source_path, backend_name=backend_name, clip=clip))

    def enqueue_job(self, job: SubtitleJob) -> Optional[SubtitleJob]:
        job.source_path = os.path.abspath(job.source_path)
        with self._lock:
            if any(existing.dedup_key == job.dedup_key for existing in self._jobs):
                self.log.debug(f"Skipping duplicate job for {job.source_path} ({job.backend_name})")
                return None
            job.status = JobStatus.PENDING
            self._jobs.append(job)
        self.log.info(f"Queued job {job.id[:8]} for {job.source_path} via {job.backend_name}")
        return job

    def enqueue_files(self, paths: Iterable[str], backend_name: str) -> List[SubtitleJob]:
        """Queues whole-file jobs, skipping paths that are not files and duplicates."""
        added = []
        for path in paths:
            if not path or not os.path.isfile(path):
                self.log.warning(f"Skipping missing file: {path}")
                continue
            job = self.enqueue(path, backend_name)
            if job is not None:
                added.append(job)
        return added

    def remove_job(self, job_id: str) -> bool:
        """
        Removes a job that is not being processed.

        Raises:
            JobNotRemovable: If the job is currently processing.
        """
        with self._lock:
            job = self.get_job(job_id)
            if job is None:
                return False
            if job.status is JobStatus.PROCESSING:
                raise JobNotRemovable(f"Job {job_id} is being processed")
            self._jobs.remove(job)
            return True

    def clear(self) -> None:
        """
        Removes every job.

        Raises:
            JobNotRemovable: While a batch is running.
        """
        with self._lock:
            if self._running:
                raise JobNotRemovable("Cannot clear the queue while processing",
                                      user_message="The queue cannot be cleared while processing.")
            self._jobs.clear()

    def remove_by_status(self, status: JobStatus) -> int:
        """Removes every job in ``status``. Processing jobs cannot be removed this way."""
        if status is JobStatus.PROCESSING:
            raise JobNotRemovable("Processing jobs cannot be removed")
        with self._lock:
            before = len(self._jobs)
            self._jobs = [job for job in self._jobs if job.status is not status]
            return before - len(self._jobs)

    # --- Processing -------------------------------------------------------

    def cancel(self) -> None:
        """
        Requests cancellation. The job loop stops before the next job, the
        running pipeline stops at its next checkpoint, and a network call
        already in flight is allowed to finish.
        """
        with self._lock:
            token = self._cancel_token
        if token is not None:
            self.log.warning("Batch cancellation requested")
            token.cancel()

    def start(self) -> BatchSummary:
        """
        Processes every pending job, in queue order, on the calling thread.

        Returns:
            Summary after the run.

        Raises:
            AlreadyRunning: If a run is in progress.
            EmptyQueue: If no job is pending.
        """
        with self._lock:
            if self._running:
                raise AlreadyRunning("Batch processing is already running")
            pending = [job for job in self._jobs if job.status is JobStatus.PENDING]
            if not pending:
                raise EmptyQueue("No pending jobs")
            self._running = True
            token = CancellationToken()
            self._cancel_token = token

        backends: Dict[str, TranscriptionBackend] = {}
        batch_start = time.time()
        self.log.info(f"--- Starting batch of {len(pending)} job(s) ---")
        try:
            for job in pending:
                if token.cancelled:
                    self.log.info("Batch cancelled; remaining jobs stay pending.")
                    break
                with self._lock:
                    if job not in self._jobs or job.status is not JobStatus.PENDING:
                        continue
                self._run_job(job, backends, token)
                if job.status is JobStatus.CANCELLED:
                    break
        finally:
            for backend in backends.values():
                try:
                    backend.close()
                except Exception as e:
                    self.log.warning(f"Closing backend {backend.name} failed: {e}")
            with self._lock:
                self._running = False
                self._cancel_token = None

        summary = self.summary
        self.log.info(f"--- Batch finished in {time.time() - batch_start:.2f}s: "
                      f"{summary.completed} completed, {summary.failed} failed, "
                      f"{summary.cancelled} cancelled, {summary.pending} pending ---")
        if self.on_batch_completed is not None:
            self.on_batch_completed(summary)
        return summary

    def _output_path(self, job: SubtitleJob) -> str:
        path = output_path_for(job.source_path, job.clip, self.formatter.extension)
        if self.output_dir:
            return os.path.join(self.output_dir, os.path.basename(path))
        return path

    def _update(self, job: SubtitleJob, **changes) -> None:
        with self._lock:
            for name, value in changes.items():
                setattr(job, name, value)
        if self.on_progress is not None:
            try:
                self.on_progress(job, self.summary)
            except Exception as e:
                self.log.warning(f"Progress listener raised: {e}", exc_info=True)

    def _run_job(self, job: SubtitleJob, backends: Dict[str, TranscriptionBackend],
                 token: CancellationToken) -> None:
        name = os.path.basename(job.source_path)
        if job.clip and job.clip.label:
            name = f"{name} [{job.clip.label}]"
        self._update(job, status=JobStatus.PROCESSING, progress=0.0, message="Starting",
                     error_message=None, error_detail=None, failed_chunk_index=None)
        self.log.info(f"Processing job {job.id[:8]}: {name}")
        try:
            backend = backends.get(job.backend_name)
            if backend is None:
                backend = self.backend_factory(job.backend_name)
                backends[job.backend_name] = backend
            content = self.pipeline.generate(
                job.source_path,
                backend,
                self.options,
                clip=job.clip,
                progress=lambda percent, message: self._update(job, progress=percent, message=message),
                cancel_token=token,
            )
            output_path = self.formatter.write_text(content, self._output_path(job))
            self._update(job, status=JobStatus.COMPLETED, progress=100.0, message="Completed",
                         output_path=output_path)
            self.log.info(f"Job {job.id[:8]} completed: {output_path}")
        except OperationCancelled as e:
            self._update(job, status=JobStatus.CANCELLED, message="Cancelled",
                         error_message=e.user_message, error_detail=str(e))
            self.log.warning(f"Job {job.id[:8]} cancelled: {name}")
        except Exception as e:
            # Job boundary: a failed job is recorded, the batch carries on.
            if isinstance(e, ChunkSubError):
                user_message = e.user_message
            elif isinstance(e, FileNotFoundError):
                user_message = "The source file could not be found."
            else:
                user_message = "Subtitle generation failed unexpectedly."
            self._update(job, status=JobStatus.FAILED, message="Failed",
                         error_message=user_message, error_detail=str(e),
                         failed_chunk_index=getattr(e, "chunk_index", None))
            self.log.error(f"Job {job.id[:8]} failed ({name}): {e}")
        if self.on_job_finished is not None:
            self.on_job_finished(job, self.summary)
