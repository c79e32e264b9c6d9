#!/usr/bin/env python3
"""
Dataset manifest generation for wake word training.

Collects positive and negative audio clips from several sources and picks a
seeded, source-balanced subset so that no single recording session or
speaker dominates the training data.

Usage:
    python -m wakelab.dataset --output-dir run/dataset --wake-phrase "hey jarvis" \
        --positive-sources data/positives --negative-sources data/negatives,noise/
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Optional

import numpy as np
import soundfile as sf

from wakelab.config import Config


def parse_sources(raw_sources: str) -> list[str]:
    """Split a comma-separated source list, dropping blanks."""
    if not raw_sources:
        return []
    return [s.strip() for s in raw_sources.split(",") if s.strip()]


def collect_files(
    sources: list[str],
    extensions: tuple[str, ...] = Config.AUDIO_EXTENSIONS,
) -> dict[str, list[str]]:
    """
    Find audio files per source.

    A source may be a single file or a directory searched recursively.
    Missing sources map to an empty list.
    """
    collected: dict[str, list[str]] = {}
    for source in sources:
        path = Path(source).expanduser()
        if path.is_file():
            collected[source] = [str(path)]
            continue
        if not path.exists():
            collected[source] = []
            continue
        collected[source] = sorted(
            str(p)
            for p in path.rglob("*")
            if p.is_file() and p.suffix.lower() in extensions
        )
    return collected


def distribute_diverse(
    collected: dict[str, list[str]],
    max_total: Optional[int],
    min_per_source: int,
    rng: np.random.Generator,
) -> list[str]:
    """
    Pick files so every source is represented.

    Each source's files are shuffled, then up to min_per_source are taken
    from each source, then the rest is filled round-robin across sources
    until max_total is reached or all files are used.

    Args:
        collected: Source -> files
        max_total: Cap on the selection (None for no cap)
        min_per_source: Guaranteed picks per source before round-robin
        rng: Seeded random generator

    Returns:
        Selected file paths
    """
    sources = [s for s, files in collected.items() if files]
    if not sources:
        return []

    per_source: dict[str, list[str]] = {}
    for source in sources:
        files = list(collected[source])
        rng.shuffle(files)
        per_source[source] = files

    selection: list[str] = []
    if min_per_source > 0:
        for source in sources:
            files = per_source[source]
            take = min(min_per_source, len(files))
            selection.extend(files[:take])
            per_source[source] = files[take:]

    remaining = None if max_total is None else max(0, max_total - len(selection))

    while remaining is None or remaining > 0:
        made_progress = False
        for source in sources:
            if remaining is not None and remaining <= 0:
                break
            files = per_source[source]
            if not files:
                continue
            selection.append(files.pop(0))
            made_progress = True
            if remaining is not None:
                remaining -= 1
        if not made_progress:
            break

    return selection


def total_duration(files: list[str]) -> float:
    """Sum of clip durations in seconds; unreadable files count as zero."""
    total = 0.0
    for path in files:
        try:
            total += sf.info(path).duration
        except (RuntimeError, OSError):
            continue
    return round(total, 3)


def write_list(path: Path, entries: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        for item in entries:
            handle.write(f"{item}\n")


def parse_count(value: str, label: str) -> Optional[int]:
    """Parse an optional non-negative integer flag ("" means unset)."""
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{label} must be an integer") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError(f"{label} must be >= 0")
    return parsed


def build_manifest(
    wake_phrase: str,
    positive_sources: list[str],
    negative_sources: list[str],
    max_positives: Optional[int] = None,
    max_negatives: Optional[int] = None,
    min_per_source: int = 0,
    seed: int = Config.DATASET_SEED,
) -> dict:
    """Select clips and describe the selection as a JSON-serializable manifest."""
    rng = np.random.default_rng(seed)

    positive_collected = collect_files(positive_sources)
    negative_collected = collect_files(negative_sources)

    positives = distribute_diverse(positive_collected, max_positives, min_per_source, rng)
    negatives = distribute_diverse(negative_collected, max_negatives, min_per_source, rng)

    return {
        "wake_phrase": wake_phrase,
        "positives": positives,
        "negatives": negatives,
        "summary": {
            "positive_sources": {s: len(f) for s, f in positive_collected.items()},
            "negative_sources": {s: len(f) for s, f in negative_collected.items()},
            "selected_positives": len(positives),
            "selected_negatives": len(negatives),
            "positive_seconds": total_duration(positives),
            "negative_seconds": total_duration(negatives),
            "min_per_source": min_per_source,
            "max_positives": max_positives,
            "max_negatives": max_negatives,
            "seed": seed,
        },
    }


def write_manifest(manifest: dict, output_dir: Path) -> Path:
    """Write dataset.json plus plain positive/negative lists."""
    output_dir.mkdir(parents=True, exist_ok=True)
    manifest_path = output_dir / Config.DATASET_MANIFEST_NAME
    with manifest_path.open("w", encoding="utf-8") as handle:
        json.dump(manifest, handle, indent=2)
        handle.write("\n")

    write_list(output_dir / "positives.txt", manifest["positives"])
    write_list(output_dir / "negatives.txt", manifest["negatives"])
    return manifest_path


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate a diversified dataset manifest for wakeword training."
    )
    parser.add_argument("--output-dir", required=True)
    parser.add_argument("--wake-phrase", required=True)
    parser.add_argument("--positive-sources", required=True)
    parser.add_argument("--negative-sources", required=True)
    parser.add_argument("--max-positives", default="")
    parser.add_argument("--max-negatives", default="")
    parser.add_argument("--min-per-source", default="")
    parser.add_argument("--seed", type=int, default=Config.DATASET_SEED)
    args = parser.parse_args(argv)

    positive_sources = parse_sources(args.positive_sources)
    negative_sources = parse_sources(args.negative_sources)
    if not positive_sources:
        parser.error("No positive sources provided.")
    if not negative_sources:
        parser.error("No negative sources provided.")

    try:
        max_positives = parse_count(args.max_positives, "max-positives")
        max_negatives = parse_count(args.max_negatives, "max-negatives")
        min_per_source = parse_count(args.min_per_source, "min-per-source") or 0
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    manifest = build_manifest(
        args.wake_phrase,
        positive_sources,
        negative_sources,
        max_positives=max_positives,
        max_negatives=max_negatives,
        min_per_source=min_per_source,
        seed=args.seed,
    )
    write_manifest(manifest, Path(args.output_dir))

    print(json.dumps(manifest["summary"], indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
