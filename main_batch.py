#!/usr/bin/env python3
"""
ChunkSub Batch Processing Entry Point

Queues every media file in a directory, ordered by size, and generates
one subtitle file per input with the BatchCoordinator.
"""

import argparse
import logging
import os
import sys
import threading
from typing import List, Tuple

# Progress bar library
from tqdm import tqdm

from chunksub.batch import BatchCoordinator
from chunksub.cli import build_pipeline
from chunksub.config_loader import ConfigLoader, build_backend, build_generation_options, default_backend_name
from chunksub.exceptions import ChunkSubError, ConfigurationError, FileSystemError
from chunksub.log_setup import setup_logging
from chunksub.models import JobStatus
from chunksub.utils import ensure_dir_exists

# Initialize logger for this script
logger = logging.getLogger(__name__)

MEDIA_EXTENSIONS = (".mp4", ".mkv", ".mov", ".avi", ".webm", ".m4v", ".mp3", ".wav", ".m4a", ".flac", ".aac", ".ogg")


def find_and_sort_media(input_dir: str) -> List[Tuple[str, int]]:
    """
    Finds all media files in the input directory and sorts them by size.

    Args:
        input_dir: The directory to search for media files.

    Returns:
        A list of (filepath, filesize) tuples, smallest first.

    Raises:
        FileNotFoundError: If the input directory doesn't exist.
        ValueError: If the input path is not a directory.
    """
    if not os.path.exists(input_dir):
        raise FileNotFoundError(f"Input directory not found: {input_dir}")
    if not os.path.isdir(input_dir):
        raise ValueError(f"Input path is not a directory: {input_dir}")

    media = []
    logger.info(f"Scanning directory for media files: {input_dir}")
    for filename in os.listdir(input_dir):
        if filename.lower().endswith(MEDIA_EXTENSIONS):
            filepath = os.path.join(input_dir, filename)
            try:
                if os.path.isfile(filepath):
                    media.append((filepath, os.path.getsize(filepath)))
            except OSError as e:
                logger.warning(f"Could not access file {filepath}: {e}. Skipping.")

    media.sort(key=lambda item: item[1])
    logger.info(f"Found {len(media)} media files. Sorted by size (smallest first).")
    return media


def run_batch_processing():
    """Parses arguments, sets up, and runs the batch subtitle generation."""
    parser = argparse.ArgumentParser(
        description="ChunkSub Batch: Generate subtitles for all media files in a directory.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument(
        "-i", "--input-dir",
        required=True,
        help="Directory containing the input media files."
    )
    parser.add_argument(
        "-o", "--output-dir",
        default=None,
        help="Directory for the .srt files. Defaults to next to each input file."
    )
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to the configuration YAML file."
    )
    parser.add_argument(
        "-b", "--backend",
        default=None,
        help="Name of the transcription backend defined in the config."
    )
    parser.add_argument(
        "--temp-dir",
        default=None, # Default taken from config file
        help="Override the temporary directory specified in the config file."
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level for console and file output."
    )

    args = parser.parse_args()

    # --- Setup Logging (Initial) ---
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    setup_logging(log_level=log_level, log_dir='logs', log_file='chunksub_batch_init.log')

    # --- Load Configuration ---
    try:
        config = ConfigLoader().load_config(args.config)
    except (ConfigurationError, FileNotFoundError) as e:
        logger.critical(f"Failed to load configuration: {e}", exc_info=True)
        sys.exit(1)

    # --- Re-configure Logging (Final) ---
    # Console logging is off so that it does not break up the progress bar.
    setup_logging(log_level=log_level,
                  log_dir=config.get('log_dir', 'logs'),
                  log_file=config.get('batch_log_file', 'chunksub_batch.log'),
                  console=False)

    if args.temp_dir:
        logger.info(f"Overriding temp_dir from config with CLI argument: {args.temp_dir}")
        config['temp_dir'] = args.temp_dir

    # --- Find and Sort Media ---
    try:
        sorted_media = find_and_sort_media(args.input_dir)
    except (FileNotFoundError, ValueError) as e:
        logger.critical(f"Input directory error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if not sorted_media:
        print(f"No media files found in {args.input_dir}.")
        sys.exit(0)

    if args.output_dir:
        try:
            ensure_dir_exists(args.output_dir)
        except FileSystemError as e:
            logger.critical(f"Could not create output directory: {e}")
            sys.exit(1)

    # --- Initialize Components (ONCE) ---
    try:
        options = build_generation_options(config)
        backend_name = args.backend or default_backend_name(config)
        pipeline = build_pipeline(config, use_cache=options.enable_cache)
        if pipeline.cache is not None:
            swept = pipeline.cache.sweep_expired()
            logger.info(f"Removed {swept} expired cache entr{'y' if swept == 1 else 'ies'}.")
        coordinator = BatchCoordinator(
            pipeline=pipeline,
            backend_factory=lambda name: build_backend(config, name),
            options=options,
            output_dir=args.output_dir,
        )
        coordinator.enqueue_files([path for path, _ in sorted_media], backend_name)
    except ChunkSubError as e:
        logger.critical(f"Failed to initialize ChunkSub components: {e}", exc_info=True)
        print(f"Error: {e.user_message}", file=sys.stderr)
        sys.exit(1)

    total_jobs = len(coordinator.jobs)
    with tqdm(total=100.0, unit="%", desc="Starting batch",
              bar_format="{l_bar}{bar}| {n:.1f}/{total:.0f}% [{elapsed}<{remaining}]") as pbar:

        def on_progress(job, summary):
            done = summary.completed + summary.failed + summary.cancelled
            if job.status is JobStatus.PROCESSING:
                overall = (done + job.progress / 100.0) * 100.0 / max(total_jobs, 1)
            else:
                overall = done * 100.0 / max(total_jobs, 1)
            pbar.set_description(f"[{min(done + 1, total_jobs)}/{total_jobs}] {os.path.basename(job.source_path)[:30]}")
            pbar.n = min(overall, 100.0)
            pbar.refresh()

        def on_job_finished(job, summary):
            if job.status is JobStatus.COMPLETED:
                pbar.write(f"Done: {job.output_path}")
            elif job.status is JobStatus.FAILED:
                where = f" (chunk {job.failed_chunk_index + 1})" if job.failed_chunk_index is not None else ""
                pbar.write(f"Failed: {os.path.basename(job.source_path)}{where}: {job.error_message}")

        coordinator.on_progress = on_progress
        coordinator.on_job_finished = on_job_finished

        outcome = {}

        def run():
            try:
                outcome['summary'] = coordinator.start()
            except Exception as e:
                outcome['error'] = e

        # The batch runs in a worker thread so that Ctrl+C reaches the main thread.
        worker = threading.Thread(target=run, name="chunksub-batch")
        worker.start()
        try:
            while worker.is_alive():
                worker.join(0.5)
        except KeyboardInterrupt:
            pbar.write("Interrupted; cancelling the batch...")
            logger.warning("Batch process interrupted by user (Ctrl+C). Cancelling.")
            coordinator.cancel()
            worker.join()

    if 'error' in outcome:
        error = outcome['error']
        logger.critical(f"Batch processing failed: {error}", exc_info=error)
        sys.exit(2)

    summary = outcome['summary']
    print(f"Completed: {summary.completed}/{summary.total}  Failed: {summary.failed}  "
          f"Cancelled: {summary.cancelled}  Pending: {summary.pending}")
    if summary.failed or summary.cancelled:
        sys.exit(1) # Indicate partial failure with exit code
    sys.exit(0)


if __name__ == "__main__":
    if sys.version_info < (3, 8):
        sys.stderr.write("ChunkSub requires Python 3.8 or later.\n")
        sys.exit(1)

    run_batch_processing()
