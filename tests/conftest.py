import os
import threading

import pytest

from chunksub.audio_extractor import AudioExtractor
from chunksub.exceptions import ChunkExtractionFailed
from chunksub.models import SubtitleCue
from chunksub.optimizer import CorrectionBackend
from chunksub.transcriber import TranscriptionBackend


class FakeExtractor(AudioExtractor):
    """Writes placeholder WAV files instead of running ffmpeg."""

    def __init__(self, work_dir, duration_ms=1_200_000, fail_segment=None):
        self.work_dir = str(work_dir)
        self.duration_ms = duration_ms
        self.fail_segment = fail_segment
        self.extracted = []
        self.segments = []
        self.ranges = []
        os.makedirs(self.work_dir, exist_ok=True)

    def _write(self, path):
        with open(path, "wb") as f:
            f.write(b"RIFF")
        return path

    def extract_whole(self, media_path):
        path = os.path.join(self.work_dir, f"whole_{len(self.extracted)}.wav")
        self.extracted.append(path)
        return self._write(path)

    def extract_range(self, media_path, start_ms, end_ms):
        self.ranges.append((start_ms, end_ms))
        path = os.path.join(self.work_dir, f"range_{len(self.extracted)}.wav")
        self.extracted.append(path)
        return self._write(path)

    def extract_segment(self, audio_path, start_ms, end_ms, output_path):
        index = len(self.segments)
        self.segments.append((start_ms, end_ms))
        if self.fail_segment == index:
            raise ChunkExtractionFailed("ffmpeg exploded")
        return self._write(output_path)

    def probe_duration(self, audio_path):
        return self.duration_ms


class FakeBackend(TranscriptionBackend):
    """
    Returns one cue per file, ``[1000, 3000]`` relative to the chunk.

    ``failures`` maps a chunk file name to a list of exceptions raised on
    successive calls for that file.
    """

    def __init__(self, name="fake", model="test-model", failures=None, on_call=None, cues=None):
        self.name = name
        self.model = model
        self.failures = {key: list(value) for key, value in (failures or {}).items()}
        self.on_call = on_call
        self.cues = cues
        self.calls = []
        self.closed = False
        self._lock = threading.Lock()

    def transcribe(self, audio_path, options, progress=None, cancel_token=None):
        name = os.path.basename(audio_path)
        with self._lock:
            self.calls.append(name)
            pending = self.failures.get(name)
            error = pending.pop(0) if pending else None
        if self.on_call is not None:
            self.on_call(name)
        if progress:
            progress(50.0, "halfway")
        if error is not None:
            raise error
        if self.cues is not None:
            return list(self.cues)
        return [SubtitleCue(1, 1000, 3000, f"text from {name}")]

    def close(self):
        self.closed = True


class FakeCorrectionBackend(CorrectionBackend):
    name = "fake-llm"

    def __init__(self, replies):
        self.replies = list(replies)
        self.prompts = []

    def complete(self, system_prompt, user_prompt):
        self.prompts.append(user_prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        return reply


@pytest.fixture
def media_file(tmp_path):
    path = tmp_path / "lecture.mp4"
    path.write_bytes(b"not really a video")
    return str(path)


@pytest.fixture
def extractor(tmp_path):
    return FakeExtractor(tmp_path / "extracted")
