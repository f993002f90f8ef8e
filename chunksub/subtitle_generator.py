"""Orchestrates the subtitle generation pipeline for a single media file."""

import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Tuple

from .audio_extractor import AudioExtractor
from .cache import ResultCache
from .chunker import AudioChunkPlanner, ChunkPlan
from .exceptions import (
    CacheIOError,
    ChunkSubError,
    ChunkTranscriptionFailed,
    OperationCancelled,
    RetryExhausted,
    TranscriptionError,
)
from .merger import ChunkResultMerger
from .models import AudioChunk, ClipRange, GenerationOptions, SubtitleCue
from .optimizer import CorrectionBackend, SubtitleOptimizer
from .progress import ProgressSink
from .retry import RetryExecutor, is_retryable
from .subtitle_formatter import compose_srt
from .transcriber import TranscriptionBackend
from .utils import CancellationToken, ProgressCallback, remove_file_quietly, safe_filename

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


def output_path_for(source_path: str, clip: Optional[ClipRange] = None, extension: str = "srt") -> str:
    """
    Subtitle path next to the source: ``movie.mp4`` -> ``movie.srt``, or
    ``movie_<clip label>.srt`` for a labelled clip.
    """
    directory = os.path.dirname(os.path.abspath(source_path))
    stem = os.path.splitext(os.path.basename(source_path))[0]
    if clip is not None and clip.label:
        stem = f"{stem}_{safe_filename(clip.label)}"
    return os.path.join(directory, f"{stem}.{extension}")


def _abandon(chunk_token: CancellationToken, futures: Dict[Future, AudioChunk]) -> None:
    chunk_token.cancel()
    for future in futures:
        future.cancel()


class SubtitleGenerationPipeline:
    """
    Manages the end-to-end process of generating subtitles for one media file:
    extract audio, split it into chunks, transcribe the chunks concurrently,
    merge, optionally correct, cache.

    Stage progress ranges: extract 0-15, plan 15-25, transcribe 25-80,
    merge 80-85, optimize 85-95, finish 95-100.
    """

    def __init__(
        self,
        audio_extractor: AudioExtractor,
        cache: Optional[ResultCache] = None,
        optimizer: Optional[SubtitleOptimizer] = None,
        correction_backend: Optional[CorrectionBackend] = None,
        temp_dir: Optional[str] = None,
    ):
        """
        Initializes the SubtitleGenerationPipeline.

        Args:
            audio_extractor: Produces and cuts the WAV audio.
            cache: Result cache; caching is skipped when None.
            optimizer: Subtitle corrector used when optimization is enabled.
            correction_backend: Backend the optimizer talks to.
            temp_dir: Parent directory for per-run chunk directories.
        """
        self.audio_extractor = audio_extractor
        self.planner = AudioChunkPlanner(audio_extractor, temp_root=temp_dir)
        self.cache = cache
        self.optimizer = optimizer
        self.correction_backend = correction_backend

    def _cache_key(self, source_path: str, backend: TranscriptionBackend, clip: Optional[ClipRange]) -> Optional[str]:
        try:
            return ResultCache.make_key(source_path, backend.identity, backend.model, clip)
        except CacheIOError as e:
            logger.warning(f"Caching disabled for this run: {e}")
            return None

    def generate(
        self,
        source_path: str,
        backend: TranscriptionBackend,
        options: Optional[GenerationOptions] = None,
        clip: Optional[ClipRange] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Executes the full subtitle generation pipeline for a single file.

        Args:
            source_path: Path to the input media file.
            backend: Transcription backend to use for every chunk.
            options: Chunking, caching, retry and optimization settings.
            clip: Restricts generation to a time range of the source.
            progress: Receives ``(percent 0-100, message)``.
            cancel_token: Checked at every stage boundary and between retries.

        Returns:
            The subtitles as SRT text.

        Raises:
            FileNotFoundError: If the input file is not found.
            AudioExtractionError: Extraction, probing or chunk cutting failed.
            ChunkTranscriptionFailed: A chunk failed after its retries; the whole job fails.
            TranscriptionError: The transcription produced no subtitles.
            OperationCancelled: Cancellation was requested.
        """
        options = options or GenerationOptions()
        token = cancel_token or CancellationToken()
        sink = ProgressSink(progress)
        start_time = time.time()
        logger.info(f"--- Starting subtitle generation for: {source_path}"
                    f"{f' [{clip.start_ms}ms-{clip.end_ms}ms]' if clip else ''} via {backend.name} ---")
        if not os.path.isfile(source_path):
            raise FileNotFoundError(f"Input media file not found: {source_path}")

        cache_key = None
        if options.enable_cache and self.cache is not None:
            cache_key = self._cache_key(source_path, backend, clip)
            if cache_key is not None:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    logger.info("Using cached subtitles; skipping transcription.")
                    sink.complete("Loaded subtitles from cache")
                    return cached

        extracted_audio_path = None
        plan: Optional[ChunkPlan] = None
        try:
            # 1. Extract Audio
            token.raise_if_cancelled("Subtitle generation")
            sink.report("extract", 0.0, "Extracting audio")
            if clip is not None:
                extracted_audio_path = self.audio_extractor.extract_range(source_path, clip.start_ms, clip.end_ms)
            else:
                extracted_audio_path = self.audio_extractor.extract_whole(source_path)
            sink.report("extract", 1.0, "Audio extracted")

            # 2. Plan chunks
            token.raise_if_cancelled("Subtitle generation")
            plan = self._plan(extracted_audio_path, options, sink, token)

            # 3. Transcribe
            token.raise_if_cancelled("Subtitle generation")
            results = self._transcribe_chunks(plan.chunks, backend, options, sink, token)

            # 4. Merge
            token.raise_if_cancelled("Subtitle generation")
            sink.report("merge", 0.0, "Merging chunk results")
            cues = ChunkResultMerger(plan.overlap_ms).merge(results)
            if not cues:
                raise TranscriptionError("Transcription produced no subtitles.",
                                         user_message="No speech was recognized in the audio.")
            sink.report("merge", 1.0, f"Merged {len(cues)} subtitles")

            # 5. Optimize (optional, never fatal)
            if options.enable_optimization:
                cues = self._optimize(cues, options, sink, token)

            content = compose_srt(cues)

            # 6. Cache
            if cache_key is not None:
                self.cache.put(cache_key, content, ttl=options.cache_ttl_seconds)
            sink.report("finish", 0.0, "Cleaning up")

        except OperationCancelled:
            logger.warning(f"Subtitle generation cancelled for: {source_path}")
            raise
        except (ChunkSubError, FileNotFoundError) as e:
            logger.error(f"Subtitle generation failed: {e}", exc_info=False)
            raise
        except Exception as e:
            logger.critical(f"An unexpected critical error occurred during subtitle generation: {e}", exc_info=True)
            raise ChunkSubError(f"An unexpected critical error occurred: {e}") from e
        finally:
            # 7. Cleanup, on every exit path
            if plan is not None:
                plan.cleanup()
            remove_file_quietly(extracted_audio_path)

        sink.complete("Subtitles generated")
        logger.info(f"--- Subtitle generation completed in {time.time() - start_time:.2f} seconds ---")
        return content

    def _plan(self, audio_path: str, options: GenerationOptions, sink: ProgressSink,
              token: CancellationToken) -> ChunkPlan:
        sink.report("plan", 0.0, "Planning chunks")
        if options.enable_chunking:
            plan = self.planner.plan(
                audio_path,
                options.chunk_length_ms,
                options.overlap_ms,
                progress=lambda fraction, message: sink.report("plan", fraction, message),
                cancel_token=token,
            )
        else:
            # Duration left unknown: the whole audio is the only chunk
            chunk = AudioChunk(file_path=audio_path, start_ms=0, end_ms=None, index=0, is_source=True)
            plan = ChunkPlan(chunks=[chunk], overlap_ms=0, total_ms=None)
        sink.report("plan", 1.0, f"{len(plan.chunks)} chunk(s) to transcribe")
        return plan

    def _transcribe_one(
        self,
        chunk: AudioChunk,
        chunk_count: int,
        backend: TranscriptionBackend,
        options: GenerationOptions,
        retry_executor: RetryExecutor,
        sink: ProgressSink,
        token: CancellationToken,
    ) -> List[SubtitleCue]:
        label = f"Chunk {chunk.index + 1}/{chunk_count}"

        def on_progress(percent: float, message: str) -> None:
            sink.report_part("transcribe", chunk.index, chunk_count, percent / 100.0, f"{label}: {message}")

        def on_retry(attempt: int, message: str) -> None:
            sink.report_part("transcribe", chunk.index, chunk_count, 0.0, f"{label}: {message}")

        on_progress(0.0, "Transcribing")
        try:
            cues = retry_executor.execute_with_retry(
                lambda: backend.transcribe(chunk.file_path, options.transcription, on_progress, token),
                is_retryable,
                on_retry=on_retry,
                cancel_token=token,
                description=f"Transcription of chunk {chunk.index + 1}/{chunk_count}",
            )
        except OperationCancelled:
            raise
        except RetryExhausted as e:
            raise ChunkTranscriptionFailed(chunk.index, e.cause) from e
        except Exception as e:
            raise ChunkTranscriptionFailed(chunk.index, e) from e
        on_progress(100.0, f"{len(cues)} cues")
        return cues

    def _transcribe_chunks(
        self,
        chunks: List[AudioChunk],
        backend: TranscriptionBackend,
        options: GenerationOptions,
        sink: ProgressSink,
        token: CancellationToken,
    ) -> List[Tuple[AudioChunk, List[SubtitleCue]]]:
        retry_executor = RetryExecutor(max_attempts=options.max_attempts, base_delay=options.base_delay_seconds)
        count = len(chunks)
        if count == 1:
            chunk = chunks[0]
            return [(chunk, self._transcribe_one(chunk, 1, backend, options, retry_executor, sink, token))]

        workers = max(1, min(count, options.max_workers or DEFAULT_MAX_WORKERS))
        logger.info(f"Transcribing {count} chunks with {workers} worker(s)")
        # Cancelled on the first chunk failure or an interrupt so that queued chunks never start.
        chunk_token = CancellationToken(parent=token)
        results: Dict[int, List[SubtitleCue]] = {}
        first_error: Optional[BaseException] = None

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chunksub-chunk") as executor:
            futures: Dict[Future, AudioChunk] = {}
            try:
                for chunk in chunks:
                    future = executor.submit(self._transcribe_one, chunk, count, backend, options,
                                             retry_executor, sink, chunk_token)
                    futures[future] = chunk
                for future in as_completed(futures):
                    chunk = futures[future]
                    if future.cancelled():
                        continue
                    try:
                        results[chunk.index] = future.result()
                    except Exception as e:
                        if first_error is None:
                            first_error = e
                            if not isinstance(e, OperationCancelled):
                                logger.error(f"Chunk {chunk.index + 1}/{count} failed; abandoning remaining chunks: {e}")
                            _abandon(chunk_token, futures)
            except BaseException:
                # KeyboardInterrupt: the executor still joins the chunks that already started
                logger.warning("Chunk transcription interrupted; abandoning queued chunks")
                _abandon(chunk_token, futures)
                raise

        if first_error is not None:
            raise first_error
        return [(chunk, results[chunk.index]) for chunk in chunks]

    def _optimize(self, cues: List[SubtitleCue], options: GenerationOptions, sink: ProgressSink,
                  token: CancellationToken) -> List[SubtitleCue]:
        if self.optimizer is None or self.correction_backend is None:
            logger.warning("Optimization requested but no correction backend is configured; skipping.")
            return cues
        token.raise_if_cancelled("Subtitle generation")
        sink.report("optimize", 0.0, "Correcting subtitle text")
        optimized = self.optimizer.optimize(cues, self.correction_backend, options.optimization_prompt, token)
        sink.report("optimize", 1.0, "Subtitle text corrected")
        return optimized
