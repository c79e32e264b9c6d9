"""
Tests for training config synthesis.
"""

import json

import pytest
import yaml

from wakelab.errors import TemplateNotFoundError
from wakelab.schemas import TrainProfile
from wakelab.training.synthesizer import (
    ALIAS_GROUPS,
    SynthesisParams,
    build_rewrites,
    rewrite_tree,
    synthesize,
)

PARAMS = SynthesisParams(
    wake_phrase="hey jarvis",
    model_slug="hey_jarvis",
    epochs=25,
    output_dir="/runs/hey_jarvis_1",
    dataset_path="/runs/hey_jarvis_1/dataset/dataset.json",
)

TEMPLATE = {
    "target_phrase": ["old phrase"],
    "model_name": "old_model",
    "n_samples": 1000,
    "augmentation_rounds": 1,
    "training": {
        "steps": 50000,
        "epochs": 3,
        "layers": [{"max_epochs": 7, "size": 32}, {"size": 64}],
    },
    "custom_verifier": {"wake_phrase": "old", "threshold": 0.5},
}


class TestRewriteTree:
    """Tests for the pure tree rewrite."""

    def test_untargeted_keys_preserved(self):
        """Test that keys outside the alias table are untouched."""
        tree, _ = rewrite_tree(TEMPLATE, build_rewrites(PARAMS))
        assert tree["n_samples"] == 1000
        assert tree["augmentation_rounds"] == 1
        assert tree["training"]["steps"] == 50000
        assert tree["training"]["layers"][0]["size"] == 32
        assert tree["training"]["layers"][1] == {"size": 64}
        assert tree["custom_verifier"]["threshold"] == 0.5

    def test_every_nested_occurrence_rewritten(self):
        """Test rewrites at every depth, including inside sequences."""
        tree, counts = rewrite_tree(TEMPLATE, build_rewrites(PARAMS))
        assert tree["target_phrase"] == ["hey jarvis"]
        assert tree["custom_verifier"]["wake_phrase"] == "hey jarvis"
        assert tree["model_name"] == "hey_jarvis"
        assert tree["training"]["epochs"] == 25
        assert tree["training"]["layers"][0]["max_epochs"] == 25
        assert counts["wake_phrase"] == 2
        assert counts["epochs"] == 2
        assert counts["output_dir"] == 0

    def test_input_not_modified(self):
        """Test that the rewrite is pure."""
        original = json.loads(json.dumps(TEMPLATE))
        rewrite_tree(TEMPLATE, build_rewrites(PARAMS))
        assert TEMPLATE == original

    def test_replaced_values_are_independent(self):
        """Test that list replacements are not shared between keys."""
        tree, _ = rewrite_tree(
            {"target_phrase": [], "target_phrases": []}, build_rewrites(PARAMS)
        )
        tree["target_phrase"].append("x")
        assert tree["target_phrases"] == ["hey jarvis"]

    def test_unset_categories_omitted(self):
        """Test that empty output/dataset parameters are not injected."""
        params = SynthesisParams(wake_phrase="hey", model_slug="hey", epochs=10)
        rewrites = build_rewrites(params)
        categories = {category for category, _ in rewrites.values()}
        assert categories == {"wake_phrase", "model_name", "epochs"}
        tree, _ = rewrite_tree({"output_dir": "keep"}, rewrites)
        assert tree == {"output_dir": "keep"}

    def test_all_aliases_recognized(self):
        """Test that every spelling of every category is rewritten."""
        rewrites = build_rewrites(PARAMS)
        for category, keys in ALIAS_GROUPS.items():
            for key in keys:
                assert rewrites[key][0] == category

    @pytest.mark.parametrize("profile,epochs", [("tiny", 10), ("medium", 25), ("large", 50)])
    def test_profile_epochs_injected(self, profile, epochs):
        """Test that the profile's epoch count reaches every epoch alias."""
        params = SynthesisParams("hey", "hey", TrainProfile(profile).epochs)
        tree, _ = rewrite_tree({k: 1 for k in ALIAS_GROUPS["epochs"]}, build_rewrites(params))
        assert set(tree.values()) == {epochs}


class TestSynthesize:
    """Tests for template loading and writing."""

    def test_yaml_round_trip(self, tmp_path):
        """Test YAML in, YAML out with key order preserved."""
        template = tmp_path / "custom_model.yml"
        template.write_text(yaml.safe_dump(TEMPLATE, sort_keys=False))
        output = tmp_path / "run" / "training_config.yml"

        result = synthesize(template, PARAMS, output)

        written = yaml.safe_load(output.read_text())
        assert list(written) == list(TEMPLATE)
        assert written["model_name"] == "hey_jarvis"
        assert result.config_path == output
        assert "epochs" in result.updated_categories

    def test_template_without_aliases_copied(self, tmp_path, caplog):
        """Test that an alias-free template is copied unchanged with warnings."""
        tree = {"steps": 10, "nested": {"a": [1, 2]}}
        template = tmp_path / "plain.yml"
        template.write_text(yaml.safe_dump(tree))
        output = tmp_path / "out.yml"

        with caplog.at_level("WARNING", logger="wakelab"):
            result = synthesize(template, PARAMS, output)

        assert yaml.safe_load(output.read_text()) == tree
        assert result.updated_categories == []
        assert "No 'epochs' key found" in caplog.text

    def test_json_template(self, tmp_path):
        """Test that JSON templates are written back as JSON."""
        template = tmp_path / "config.json"
        template.write_text(json.dumps({"epochs": 1, "other": True}))
        output = tmp_path / "out.json"

        synthesize(template, PARAMS, output)

        assert json.loads(output.read_text()) == {"epochs": 25, "other": True}

    def test_missing_template(self, tmp_path):
        """Test that a missing template is fatal."""
        with pytest.raises(TemplateNotFoundError):
            synthesize(tmp_path / "nope.yml", PARAMS, tmp_path / "out.yml")
