"""Command-Line Interface handler for ChunkSub."""

import argparse
import logging
import os
import sys
from typing import Optional

from .audio_extractor import FFmpegAudioExtractor
from .cache import ResultCache
from .config_loader import (
    ConfigLoader,
    build_backend,
    build_correction_backend,
    build_generation_options,
    default_backend_name,
)
from .exceptions import ChunkSubError, ConfigurationError, OperationCancelled
from .log_setup import setup_logging
from .models import ClipRange
from .optimizer import SubtitleOptimizer
from .retry import RetryExecutor
from .subtitle_formatter import SRTFormatter
from .subtitle_generator import SubtitleGenerationPipeline, output_path_for
from .utils import parse_timestamp, seconds_to_ms

logger = logging.getLogger(__name__) # Get logger for this module


def parse_clip_time(value: str) -> int:
    """Accepts seconds (``90.5``) or a timestamp (``00:01:30,500``) and returns milliseconds."""
    value = value.strip()
    if ":" in value:
        return parse_timestamp(value)
    seconds = float(value)
    if seconds < 0:
        raise ValueError(f"Negative time: {value}")
    return seconds_to_ms(seconds)


def build_pipeline(config: dict, use_cache: bool = True) -> SubtitleGenerationPipeline:
    """Wires extractor, cache and optimizer from the loaded configuration."""
    temp_dir = config.get('temp_dir', 'temp_files')
    options = build_generation_options(config)
    audio_extractor = FFmpegAudioExtractor(
        temp_dir=temp_dir,
        ffmpeg_path=config.get('ffmpeg_path'),  # None if not specified
        ffprobe_path=config.get('ffprobe_path'),
    )
    cache = ResultCache(config.get('cache_dir', '.chunksub_cache')) if use_cache else None
    correction_backend = build_correction_backend(config)
    optimizer = SubtitleOptimizer(RetryExecutor(options.max_attempts, options.base_delay_seconds))
    return SubtitleGenerationPipeline(
        audio_extractor=audio_extractor,
        cache=cache,
        optimizer=optimizer,
        correction_backend=correction_backend,
        temp_dir=temp_dir,
    )


class CLIHandler:
    """Parses arguments and generates subtitles for one media file."""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            description="ChunkSub: Generate subtitles for a local video or audio file, "
                        "transcribing long files in overlapping chunks.",
            formatter_class=argparse.ArgumentDefaultsHelpFormatter # Show defaults in help
        )
        parser.add_argument(
            "-v", "--video",
            help="Path to the input video or audio file."
        )
        parser.add_argument(
            "-o", "--output-dir",
            default=None,
            help="Directory to save the generated .srt file. Defaults to the directory of the input file."
        )
        parser.add_argument(
            "-c", "--config",
            default="config.yaml",
            help="Path to the configuration YAML file."
        )
        parser.add_argument(
            "-b", "--backend",
            default=None, # Default taken from config
            help="Name of the transcription backend defined under 'backends' in the config."
        )
        parser.add_argument(
            "--clip-start",
            default=None,
            help="Start of the clip to transcribe, in seconds or HH:MM:SS,mmm."
        )
        parser.add_argument(
            "--clip-end",
            default=None,
            help="End of the clip to transcribe, in seconds or HH:MM:SS,mmm."
        )
        parser.add_argument(
            "--clip-label",
            default=None,
            help="Label appended to the output file name of a clip."
        )
        parser.add_argument(
            "--temp-dir",
            default=None, # Default taken from config file
            help="Override the temporary directory specified in the config file."
        )
        parser.add_argument(
            "--no-cache",
            action="store_true",
            help="Neither read nor write the result cache."
        )
        parser.add_argument(
            "--optimize",
            action="store_true",
            help="Correct the subtitle text with the configured LLM service."
        )
        parser.add_argument(
            "--clear-cache",
            action="store_true",
            help="Delete all cached results and exit (unless --video is also given)."
        )
        parser.add_argument(
            "--log-level",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Set the logging level for console and file output."
        )
        return parser

    def _clip_from_args(self, args) -> Optional[ClipRange]:
        if args.clip_start is None and args.clip_end is None:
            return None
        if args.clip_start is None or args.clip_end is None:
            raise ConfigurationError("--clip-start and --clip-end must be given together")
        try:
            return ClipRange(parse_clip_time(args.clip_start), parse_clip_time(args.clip_end), args.clip_label)
        except ValueError as e:
            raise ConfigurationError(f"Invalid clip range: {e}") from e

    def run(self, argv=None) -> None:
        """Parses arguments, sets up logging, loads config, and runs the pipeline."""
        args = self.parser.parse_args(argv)

        # --- Setup Logging ---
        log_level = getattr(logging, args.log_level.upper(), logging.INFO)
        # Temporary setup to catch config loading errors
        setup_logging(log_level=log_level, log_dir='logs', log_file='chunksub_init.log')

        # --- Load Configuration ---
        try:
            config = ConfigLoader().load_config(args.config)
        except ConfigurationError as e:
            logger.critical(f"Failed to load configuration from {args.config}: {e}", exc_info=True)
            sys.exit(1)
        except FileNotFoundError:
            logger.critical(f"Configuration file not found: {args.config}", exc_info=True)
            sys.exit(1)

        # --- Re-configure Logging with settings from Config ---
        setup_logging(log_level=log_level,
                      log_dir=config.get('log_dir', 'logs'),
                      log_file=config.get('log_file', 'chunksub.log'))

        # --- Apply CLI Overrides ---
        if args.temp_dir:
            logger.info(f"Overriding temp_dir from config with CLI argument: {args.temp_dir}")
            config['temp_dir'] = args.temp_dir
        if args.optimize:
            config.setdefault('optimization', {})['enabled'] = True

        if args.clear_cache:
            removed = ResultCache(config.get('cache_dir', '.chunksub_cache')).clear()
            logger.info(f"Cleared {removed} cached result(s).")
            if not args.video:
                sys.exit(0)

        if not args.video:
            self.parser.error("--video is required")
        if not os.path.isfile(args.video):
            logger.critical(f"Input file not found or is not a file: {args.video}")
            sys.exit(1)

        backend = None
        try:
            clip = self._clip_from_args(args)
            options = build_generation_options(config)
            if args.no_cache:
                options.enable_cache = False
            pipeline = build_pipeline(config, use_cache=not args.no_cache)
            backend_name = args.backend or default_backend_name(config)
            backend = build_backend(config, backend_name)

            content = pipeline.generate(
                args.video,
                backend,
                options,
                clip=clip,
                progress=lambda percent, message: logger.info(f"[{percent:5.1f}%] {message}"),
            )

            output_path = output_path_for(args.video, clip)
            if args.output_dir:
                output_path = os.path.join(args.output_dir, os.path.basename(output_path))
            SRTFormatter().write_text(content, output_path)
            logger.info(f"ChunkSub finished successfully: {output_path}")
            sys.exit(0)

        except OperationCancelled:
            logger.warning("Subtitle generation was cancelled.")
            sys.exit(1)
        except ChunkSubError as e:
            # Errors originating from our application logic
            logger.error(f"A ChunkSub error occurred: {e}")
            print(f"Error: {e.user_message}", file=sys.stderr)
            sys.exit(1)
        except KeyboardInterrupt:
            logger.warning("Process interrupted by user (Ctrl+C). Exiting.")
            sys.exit(1)
        except Exception as e:
            logger.critical(f"An unexpected critical error occurred at the top level: {e}", exc_info=True)
            sys.exit(2) # Different exit code for unexpected crashes
        finally:
            if backend is not None:
                backend.close()
