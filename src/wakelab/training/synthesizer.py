"""
Training config synthesis for openWakeWord runs.

The upstream example config is loaded as a plain tree of mappings, sequences
and scalars. Known keys (several historical spellings per setting) are
rewritten wherever they occur, at any depth; every other key is kept as is.
The rewrite itself is pure and format-agnostic; YAML/JSON handling only
happens at the edges.

Templates that use none of the known keys still produce a valid copy. Rewrite
counts are reported per category so a category that matched nothing is
visible in the log.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from ..errors import TemplateNotFoundError

logger = logging.getLogger(__name__)

# Category -> keys that carry that setting in various trainer versions
ALIAS_GROUPS: Dict[str, Tuple[str, ...]] = {
    "wake_phrase": ("target_phrase", "target_phrases", "wake_phrase", "wake_phrases"),
    "model_name": ("model_name", "wakeword_name", "wake_word_name"),
    "output_dir": ("output_dir", "model_output_dir", "export_dir"),
    "dataset_path": ("dataset_path", "dataset_json", "custom_dataset_path", "custom_dataset"),
    "epochs": ("epochs", "n_epochs", "num_epochs", "max_epochs"),
}

# Phrase keys the trainer expects as a list of phrases
LIST_PHRASE_KEYS = frozenset({"target_phrase", "target_phrases", "wake_phrases"})

# key -> (category, replacement value)
Rewrites = Mapping[Any, Tuple[str, Any]]


@dataclass(frozen=True)
class SynthesisParams:
    """Run parameters injected into the template."""

    wake_phrase: str
    model_slug: str
    epochs: int
    output_dir: Optional[str] = None
    dataset_path: Optional[str] = None


@dataclass
class SynthesisResult:
    """Where the config was written and how many keys were rewritten."""

    config_path: Path
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def updated_categories(self) -> list[str]:
        return sorted(c for c, n in self.counts.items() if n > 0)

    @property
    def unmatched_categories(self) -> list[str]:
        return sorted(c for c, n in self.counts.items() if n == 0)


def build_rewrites(params: SynthesisParams) -> Dict[str, Tuple[str, Any]]:
    """Expand the run parameters into a per-key rewrite table."""
    values: Dict[str, Any] = {
        "model_name": params.model_slug,
        "epochs": params.epochs,
    }
    if params.output_dir:
        values["output_dir"] = params.output_dir
    if params.dataset_path:
        values["dataset_path"] = params.dataset_path

    rewrites: Dict[str, Tuple[str, Any]] = {}
    for key in ALIAS_GROUPS["wake_phrase"]:
        phrase = [params.wake_phrase] if key in LIST_PHRASE_KEYS else params.wake_phrase
        rewrites[key] = ("wake_phrase", phrase)
    for category, value in values.items():
        for key in ALIAS_GROUPS[category]:
            rewrites[key] = (category, value)
    return rewrites


def rewrite_tree(tree: Any, rewrites: Rewrites) -> Tuple[Any, Dict[str, int]]:
    """
    Rewrite every occurrence of the known keys in a nested tree.

    The input is not modified. Mappings are searched at every depth,
    including mappings inside sequences; a rewritten value is replaced
    whole and not searched further.

    Args:
        tree: Nested dicts/lists/scalars
        rewrites: Key -> (category, replacement)

    Returns:
        Tuple of (new tree, rewrite count per category)
    """
    counts: Dict[str, int] = {category: 0 for category, _ in rewrites.values()}

    def walk(node: Any) -> Any:
        if isinstance(node, dict):
            out = {}
            for key, value in node.items():
                if key in rewrites:
                    category, replacement = rewrites[key]
                    out[key] = copy.deepcopy(replacement)
                    counts[category] += 1
                else:
                    out[key] = walk(value)
            return out
        if isinstance(node, list):
            return [walk(item) for item in node]
        return node

    return walk(tree), counts


def load_tree(path: Path) -> Any:
    """Parse a JSON or YAML file into a plain tree."""
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() == ".json":
            return json.load(f)
        return yaml.safe_load(f)


def dump_tree(tree: Any, path: Path, fmt: str) -> None:
    """Serialize a tree as ``json`` or ``yaml``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        if fmt == "json":
            json.dump(tree, f, indent=2, ensure_ascii=False)
            f.write("\n")
        else:
            yaml.safe_dump(tree, f, sort_keys=False, allow_unicode=True)


def synthesize(
    template_path: Path,
    params: SynthesisParams,
    output_path: Path,
) -> SynthesisResult:
    """
    Write a run-specific config derived from a template.

    Args:
        template_path: Upstream example config (YAML or JSON)
        params: Values to inject
        output_path: Destination, written in the template's format

    Returns:
        SynthesisResult with per-category rewrite counts

    Raises:
        TemplateNotFoundError: If the template does not exist
    """
    if not template_path.is_file():
        raise TemplateNotFoundError(f"Expected example config not found: {template_path}")

    logger.info(f"Patching training config (best-effort) -> {output_path}")
    tree = load_tree(template_path)
    new_tree, counts = rewrite_tree(tree, build_rewrites(params))

    fmt = "json" if template_path.suffix.lower() == ".json" else "yaml"
    dump_tree(new_tree, output_path, fmt)

    result = SynthesisResult(config_path=output_path, counts=counts)
    logger.info(f"Updated config keys: {result.updated_categories}")
    for category in result.unmatched_categories:
        logger.warning(
            f"No '{category}' key found in {template_path.name}; "
            f"known spellings: {', '.join(ALIAS_GROUPS[category])}"
        )
    return result
