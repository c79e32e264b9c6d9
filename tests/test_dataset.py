"""
Tests for dataset manifest generation.
"""

import json

import numpy as np
import pytest
import soundfile as sf

from wakelab import dataset
from wakelab.dataset import build_manifest, collect_files, distribute_diverse, parse_sources


@pytest.fixture
def sources(tmp_path):
    """Two positive sources of different sizes and one negative source."""
    big = tmp_path / "pos_big"
    small = tmp_path / "pos_small"
    neg = tmp_path / "neg"
    for directory, count in ((big, 8), (small, 2), (neg, 3)):
        directory.mkdir()
        for i in range(count):
            (directory / f"clip_{i}.wav").write_bytes(b"")
    (big / "readme.txt").write_text("not audio")
    return big, small, neg


class TestCollect:
    """Tests for finding audio files."""

    def test_parse_sources(self):
        """Test comma splitting with blanks removed."""
        assert parse_sources(" a, ,b ,") == ["a", "b"]
        assert parse_sources("") == []

    def test_collect_filters_extensions(self, sources):
        """Test that only audio files are collected, per source."""
        big, small, _ = sources
        collected = collect_files([str(big), str(small), "/does/not/exist"])
        assert len(collected[str(big)]) == 8
        assert len(collected[str(small)]) == 2
        assert collected["/does/not/exist"] == []

    def test_single_file_source(self, sources):
        """Test that a file path is its own source."""
        clip = sources[0] / "clip_0.wav"
        assert collect_files([str(clip)]) == {str(clip): [str(clip)]}


class TestDistribute:
    """Tests for the source-balanced draw."""

    def test_round_robin_balances_sources(self):
        """Test that a capped draw alternates between sources."""
        collected = {"a": [f"a{i}" for i in range(10)], "b": ["b0", "b1"]}
        picked = distribute_diverse(collected, 4, 0, np.random.default_rng(0))
        assert len(picked) == 4
        assert sum(p.startswith("b") for p in picked) == 2

    def test_min_per_source_first(self):
        """Test that each source gets its guaranteed share."""
        collected = {"a": [f"a{i}" for i in range(10)], "b": [f"b{i}" for i in range(10)]}
        picked = distribute_diverse(collected, 6, 3, np.random.default_rng(0))
        assert sum(p.startswith("a") for p in picked) == 3
        assert sum(p.startswith("b") for p in picked) == 3

    def test_uncapped_takes_everything(self):
        """Test that no cap selects every file once."""
        collected = {"a": ["a0", "a1"], "b": ["b0"]}
        picked = distribute_diverse(collected, None, 0, np.random.default_rng(0))
        assert sorted(picked) == ["a0", "a1", "b0"]

    def test_seed_is_deterministic(self):
        """Test that the same seed gives the same selection."""
        collected = {"a": [f"a{i}" for i in range(20)]}
        first = distribute_diverse(collected, 5, 0, np.random.default_rng(42))
        second = distribute_diverse(collected, 5, 0, np.random.default_rng(42))
        assert first == second


class TestManifest:
    """Tests for the written manifest."""

    def test_build_manifest_summary(self, sources):
        """Test selection counts in the summary."""
        big, small, neg = sources
        manifest = build_manifest(
            "hey jarvis", [str(big), str(small)], [str(neg)], max_positives=4, seed=1
        )
        assert manifest["wake_phrase"] == "hey jarvis"
        assert manifest["summary"]["selected_positives"] == 4
        assert manifest["summary"]["selected_negatives"] == 3
        assert manifest["summary"]["positive_sources"] == {str(big): 8, str(small): 2}

    def test_durations_from_readable_clips(self, tmp_path):
        """Test that durations are summed for real audio files."""
        src = tmp_path / "pos"
        src.mkdir()
        sf.write(str(src / "one.wav"), np.zeros(16000, dtype=np.float32), 16000)
        (src / "broken.wav").write_bytes(b"not a wav")

        manifest = build_manifest("hey", [str(src)], [str(src)])

        assert manifest["summary"]["positive_seconds"] == pytest.approx(1.0)

    def test_main_writes_files(self, sources, tmp_path, capsys):
        """Test the command line entry point."""
        big, small, neg = sources
        out = tmp_path / "run" / "dataset"

        code = dataset.main([
            "--output-dir", str(out),
            "--wake-phrase", "hey jarvis",
            "--positive-sources", f"{big},{small}",
            "--negative-sources", str(neg),
            "--max-negatives", "2",
            "--min-per-source", "1",
        ])

        assert code == 0
        manifest = json.loads((out / "dataset.json").read_text())
        assert len(manifest["negatives"]) == 2
        assert (out / "positives.txt").read_text().count("\n") == len(manifest["positives"])
        assert (out / "negatives.txt").exists()
        assert '"selected_negatives": 2' in capsys.readouterr().out

    def test_main_requires_sources(self, tmp_path):
        """Test that empty sources exit non-zero."""
        with pytest.raises(SystemExit) as exc_info:
            dataset.main([
                "--output-dir", str(tmp_path),
                "--wake-phrase", "hey",
                "--positive-sources", " , ",
                "--negative-sources", "x",
            ])
        assert exc_info.value.code != 0
