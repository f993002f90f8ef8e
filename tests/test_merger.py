import pytest

from chunksub.merger import ChunkResultMerger, intersects
from chunksub.models import AudioChunk, SubtitleCue


def chunk(index, start_ms, end_ms):
    return AudioChunk(file_path=f"chunk_{index:04d}.wav", start_ms=start_ms, end_ms=end_ms, index=index)


@pytest.fixture
def merger():
    return ChunkResultMerger(overlap_ms=10_000)


def test_empty_input(merger):
    assert merger.merge([]) == []


def test_single_chunk_is_returned_unchanged(merger):
    cues = [SubtitleCue(7, 5_000, 6_000, "b"), SubtitleCue(3, 1_000, 2_000, "a")]
    assert merger.merge([(chunk(0, 0, 30_000), cues)]) == cues


def test_overlapping_speech_is_kept_once():
    # The same utterance at 595.0-601.0s is heard by both chunks.
    first = chunk(0, 0, 600_000)
    last = chunk(1, 590_000, 1_000_000)
    results = [
        (first, [SubtitleCue(1, 10_000, 12_000, "hello"), SubtitleCue(2, 595_000, 601_000, "overlap")]),
        (last, [SubtitleCue(1, 5_000, 11_000, "overlap"), SubtitleCue(2, 20_000, 22_000, "bye")]),
    ]

    merged = ChunkResultMerger(10_000).merge(results)

    assert [(c.start_ms, c.end_ms, c.text) for c in merged] == [
        (10_000, 12_000, "hello"),
        (595_000, 601_000, "overlap"),
        (610_000, 612_000, "bye"),
    ]
    assert [c.index for c in merged] == [1, 2, 3]


def test_middle_chunk_also_drops_its_trailing_window(merger):
    results = [
        (chunk(0, 0, 600_000), [SubtitleCue(1, 100_000, 101_000, "a")]),
        (chunk(1, 590_000, 1_190_000), [SubtitleCue(1, 592_000, 596_000, "b")]),  # -> 1182.0-1186.0s
        (chunk(2, 1_180_000, 1_200_000), [SubtitleCue(1, 2_000, 6_000, "b again")]),
    ]

    merged = merger.merge(results)

    assert [c.text for c in merged] == ["a", "b again"]
    assert merged[1].start_ms == 1_182_000


def test_cue_ending_exactly_at_window_start_survives(merger):
    results = [
        (chunk(0, 0, 600_000), [SubtitleCue(1, 585_000, 590_000, "edge")]),
        (chunk(1, 590_000, 700_000), []),
    ]
    assert [c.text for c in merger.merge(results)] == ["edge"]


def test_long_cue_touching_window_is_dropped_whole(merger):
    results = [
        (chunk(0, 0, 600_000), [SubtitleCue(1, 300_000, 595_000, "very long")]),
        (chunk(1, 590_000, 700_000), [SubtitleCue(1, 6_000, 8_000, "next")]),
    ]
    assert [c.text for c in merger.merge(results)] == ["next"]


def test_output_is_sorted_regardless_of_backend_order(merger):
    results = [
        (chunk(0, 0, 600_000), [SubtitleCue(1, 50_000, 51_000, "second"), SubtitleCue(2, 1_000, 2_000, "first")]),
        (chunk(1, 590_000, 700_000), [SubtitleCue(1, 30_000, 31_000, "third")]),
    ]

    merged = merger.merge(results)

    assert [c.text for c in merged] == ["first", "second", "third"]
    assert all(a.start_ms <= b.start_ms for a, b in zip(merged, merged[1:]))


def test_inputs_are_not_modified(merger):
    original = [SubtitleCue(1, 1_000, 2_000, "x")]
    results = [(chunk(0, 0, 600_000), original), (chunk(1, 590_000, 700_000), list(original))]

    merger.merge(results)

    assert original == [SubtitleCue(1, 1_000, 2_000, "x")]


def test_intersects_is_open_at_both_ends():
    cue = SubtitleCue(1, 100, 200, "x")
    assert intersects(cue, 150, 250)
    assert not intersects(cue, 200, 300)
    assert not intersects(cue, 0, 100)
