import io
import json

import numpy as np
import pytest

from binary_stream import BinaryReader, BinaryWriter, ForestFormatError
from forest_options import HoughForestOptions


def test_min_class_uncertainty_is_complement_of_max_dominant_fraction():
    options = HoughForestOptions(max_dominant_fraction=0.8)
    assert np.isclose(options.min_class_uncertainty, 0.2)

    converted = options.with_min_class_uncertainty(0.35)
    assert np.isclose(converted.max_dominant_fraction, 0.65)
    assert np.isclose(converted.min_class_uncertainty, 0.35)

    back = converted.with_max_dominant_fraction(0.8)
    assert back == options


def test_negative_sensitivity_means_auto_on_both_views():
    options = HoughForestOptions()
    assert options.max_dominant_fraction < 0.0
    assert options.min_class_uncertainty < 0.0

    options = HoughForestOptions(max_dominant_fraction=0.7).with_min_class_uncertainty(-1.0)
    assert options.max_dominant_fraction < 0.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_depth": 0},
        {"max_leaf_elements": 0},
        {"max_candidate_features": 0},
        {"max_candidate_thresholds": 0},
        {"max_dominant_fraction": 1.5},
        {"max_dominant_fraction": 0.0},
        {"verbose": -1},
        {"empty_leaf_policy": "nearest"},
    ],
)
def test_invalid_values_rejected(kwargs):
    with pytest.raises(ValueError):
        HoughForestOptions(**kwargs)


def test_min_class_uncertainty_of_one_rejected():
    with pytest.raises(ValueError):
        HoughForestOptions().with_min_class_uncertainty(1.0)


def test_resolved_fills_auto_fields_deterministically():
    options = HoughForestOptions()
    assert not options.is_resolved()

    resolved = options.resolved(num_examples=40, num_classes=2, num_features=4, class_counts=[20, 20])
    assert resolved.is_resolved()
    assert resolved.max_leaf_elements == 5
    assert resolved.max_depth == 6
    assert resolved.max_candidate_features == 2
    assert resolved.num_feature_expansions == 3
    assert resolved.max_candidate_thresholds == 10
    assert np.isclose(resolved.max_dominant_fraction, 0.75)

    again = options.resolved(num_examples=40, num_classes=2, num_features=4, class_counts=[20, 20])
    assert again == resolved


def test_resolved_keeps_explicit_values():
    options = HoughForestOptions(
        max_depth=3,
        max_leaf_elements=2,
        max_candidate_features=1,
        num_feature_expansions=0,
        max_candidate_thresholds=4,
        max_dominant_fraction=0.6,
    )
    resolved = options.resolved(num_examples=1000, num_classes=3, num_features=9, class_counts=[500, 250, 250])
    assert resolved == options


def test_resolved_dominant_fraction_follows_class_distribution():
    options = HoughForestOptions()
    skewed = options.resolved(num_examples=100, num_classes=2, num_features=4, class_counts=[90, 10])
    balanced = options.resolved(num_examples=100, num_classes=2, num_features=4, class_counts=[50, 50])
    assert skewed.max_dominant_fraction > balanced.max_dominant_fraction
    assert skewed.max_dominant_fraction <= 0.95


def test_resolved_requires_examples():
    with pytest.raises(ValueError):
        HoughForestOptions().resolved(num_examples=0, num_classes=2, num_features=4, class_counts=[0, 0])


def test_json_round_trip(tmp_path):
    options = HoughForestOptions(
        max_depth=12,
        max_dominant_fraction=0.85,
        probabilistic_sampling=True,
        verbose=2,
        random_state=123,
        empty_leaf_policy="skip",
    )
    path = tmp_path / "options.json"
    assert options.save(str(path))

    with open(path, "r", encoding="utf-8") as f:
        assert json.load(f)["empty_leaf_policy"] == "skip"
    assert HoughForestOptions.load(str(path)) == options
    assert HoughForestOptions.from_file(str(path)) == options


def test_save_to_missing_directory_returns_false(tmp_path):
    assert not HoughForestOptions().save(str(tmp_path / "missing" / "options.json"))


@pytest.mark.parametrize(
    "content",
    [None, "{ not json", "[1, 2, 3]", '{"verbose": "loud"}', '{"n_estimators": 10}'],
)
def test_load_bad_options_file_returns_none(tmp_path, caplog, content):
    path = tmp_path / "options.json"
    if content is not None:
        path.write_text(content, encoding="utf-8")

    assert HoughForestOptions.load(str(path)) is None
    assert "Could not load options" in caplog.text
    with pytest.raises((OSError, ValueError)):
        HoughForestOptions.from_file(str(path))


def test_from_dict_rejects_unknown_fields():
    with pytest.raises(ValueError):
        HoughForestOptions.from_dict({"max_depth": 3, "n_estimators": 10})


def test_binary_round_trip():
    options = HoughForestOptions(
        max_depth=7,
        max_leaf_elements=3,
        max_candidate_features=2,
        num_feature_expansions=1,
        max_candidate_thresholds=5,
        max_dominant_fraction=0.9,
        probabilistic_sampling=True,
        verbose=0,
        random_state=99,
        empty_leaf_policy="skip",
    )
    buffer = io.BytesIO()
    options.write(BinaryWriter(buffer))
    buffer.seek(0)
    assert HoughForestOptions.read(BinaryReader(buffer)) == options


def test_binary_read_truncated_stream_fails():
    buffer = io.BytesIO()
    HoughForestOptions().write(BinaryWriter(buffer))
    truncated = io.BytesIO(buffer.getvalue()[:-3])
    with pytest.raises(ForestFormatError):
        HoughForestOptions.read(BinaryReader(truncated))


class _UnseekableStream(io.BytesIO):
    def seekable(self):
        return False


@pytest.mark.parametrize("stream_type", [io.BytesIO, _UnseekableStream])
def test_oversized_read_fails_without_allocating(stream_type):
    reader = BinaryReader(stream_type(b"\x01\x02\x03"))
    with pytest.raises(ForestFormatError):
        reader.read_bytes(2**61)
    with pytest.raises(ForestFormatError):
        reader.read_array(2**40, "<f8")
