from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import json
import logging
from typing import Sequence

import numpy as np

from binary_stream import BinaryReader, BinaryWriter, ForestFormatError

logger = logging.getLogger(__name__)

EMPTY_LEAF_POLICIES = ("global", "skip")


@dataclass(frozen=True)
class HoughForestOptions:
    """Options controlling tree growth and voting.

    A negative value for a normally non-negative field means "auto-select" it
    from the training data when the forest is trained (see ``resolved``).

    Node splitting sensitivity is stored as ``max_dominant_fraction``: a node
    whose most frequent class covers at most this fraction of its examples is
    class-uncertain and may be split purely to reduce class uncertainty. The
    class uncertainty of a node is ``1 - dominant fraction``, so the same
    quantity is available as ``min_class_uncertainty = 1 - max_dominant_fraction``.
    """

    max_depth: int = -1
    max_leaf_elements: int = -1
    max_candidate_features: int = -1
    num_feature_expansions: int = -1
    max_candidate_thresholds: int = -1
    max_dominant_fraction: float = -1.0
    probabilistic_sampling: bool = False
    verbose: int = 1
    random_state: int = 0
    empty_leaf_policy: str = "global"  # one of: global, skip

    def __post_init__(self) -> None:
        if self.max_depth == 0:
            raise ValueError("max_depth must be positive, or negative to auto-select")
        if self.max_leaf_elements == 0:
            raise ValueError("max_leaf_elements must be positive, or negative to auto-select")
        if self.max_candidate_features == 0:
            raise ValueError("max_candidate_features must be positive, or negative to auto-select")
        if self.max_candidate_thresholds == 0:
            raise ValueError("max_candidate_thresholds must be positive, or negative to auto-select")
        if self.max_dominant_fraction >= 0.0 and not (0.0 < self.max_dominant_fraction <= 1.0):
            raise ValueError("max_dominant_fraction must be in (0, 1], or negative to auto-select")
        if self.verbose < 0:
            raise ValueError("verbose must be >= 0")
        if self.empty_leaf_policy not in EMPTY_LEAF_POLICIES:
            raise ValueError("empty_leaf_policy must be one of: global, skip")

    @property
    def min_class_uncertainty(self) -> float:
        if self.max_dominant_fraction < 0.0:
            return -1.0
        return 1.0 - self.max_dominant_fraction

    def with_min_class_uncertainty(self, value: float) -> HoughForestOptions:
        if value < 0.0:
            return replace(self, max_dominant_fraction=-1.0)
        if value >= 1.0:
            raise ValueError("min_class_uncertainty must be in [0, 1), or negative to auto-select")
        return replace(self, max_dominant_fraction=1.0 - value)

    def with_max_dominant_fraction(self, value: float) -> HoughForestOptions:
        return replace(self, max_dominant_fraction=-1.0 if value < 0.0 else value)

    def is_resolved(self) -> bool:
        return (
            self.max_depth > 0
            and self.max_leaf_elements > 0
            and self.max_candidate_features > 0
            and self.num_feature_expansions >= 0
            and self.max_candidate_thresholds > 0
            and self.max_dominant_fraction > 0.0
        )

    def resolved(
        self,
        num_examples: int,
        num_classes: int,
        num_features: int,
        class_counts: Sequence[int],
    ) -> HoughForestOptions:
        """Return a copy with every auto-selected field replaced by a concrete value.

        Depends only on the training set size, class distribution and feature
        count, so the same data always resolves to the same options.
        """
        if num_examples <= 0:
            raise ValueError("Cannot auto-select options without training examples")

        max_leaf_elements = self.max_leaf_elements
        if max_leaf_elements < 0:
            max_leaf_elements = int(np.clip(num_examples // (4 * num_classes), 1, 32))

        max_depth = self.max_depth
        if max_depth < 0:
            ratio = max(num_examples / float(max_leaf_elements), 2.0)
            max_depth = max(2, 2 * int(np.ceil(np.log2(ratio))))

        max_candidate_features = self.max_candidate_features
        if max_candidate_features < 0:
            max_candidate_features = max(1, int(np.ceil(np.sqrt(num_features))))

        num_feature_expansions = self.num_feature_expansions
        if num_feature_expansions < 0:
            num_feature_expansions = 3

        max_candidate_thresholds = self.max_candidate_thresholds
        if max_candidate_thresholds < 0:
            max_candidate_thresholds = 10

        max_dominant_fraction = self.max_dominant_fraction
        if max_dominant_fraction < 0.0:
            counts = np.asarray(class_counts, dtype=np.float64)
            f_max = float(counts.max() / counts.sum()) if counts.sum() > 0 else 1.0
            max_dominant_fraction = float(np.clip(0.5 * (1.0 + f_max), 0.5, 0.95))

        return replace(
            self,
            max_depth=max_depth,
            max_leaf_elements=max_leaf_elements,
            max_candidate_features=max_candidate_features,
            num_feature_expansions=num_feature_expansions,
            max_candidate_thresholds=max_candidate_thresholds,
            max_dominant_fraction=max_dominant_fraction,
        )

    # Persistence

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> HoughForestOptions:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown option(s): {', '.join(sorted(unknown))}")
        return cls(**data)

    def save(self, path: str) -> bool:
        """Save options as JSON text. Returns False and logs on failure."""
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2)
        except OSError as e:
            logger.error("Could not save options to '%s': %s", path, e)
            return False
        return True

    @classmethod
    def from_file(cls, path: str) -> HoughForestOptions:
        """Read options saved by save(). Raises on failure."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Options file '{path}' does not contain a JSON object")
        try:
            return cls.from_dict(data)
        except TypeError as e:
            raise ValueError(f"Options file '{path}' has invalid values: {e}") from e

    @classmethod
    def load(cls, path: str) -> HoughForestOptions | None:
        """Read options saved by save(). Returns None and logs on failure."""
        try:
            return cls.from_file(path)
        except (OSError, ValueError) as e:
            logger.error("Could not load options from '%s': %s", path, e)
            return None

    def write(self, writer: BinaryWriter) -> None:
        writer.write_int(self.max_depth)
        writer.write_int(self.max_leaf_elements)
        writer.write_int(self.max_candidate_features)
        writer.write_int(self.num_feature_expansions)
        writer.write_int(self.max_candidate_thresholds)
        writer.write_float(self.max_dominant_fraction)
        writer.write_bool(self.probabilistic_sampling)
        writer.write_int(self.verbose)
        writer.write_int(self.random_state)
        writer.write_byte(EMPTY_LEAF_POLICIES.index(self.empty_leaf_policy))

    @classmethod
    def read(cls, reader: BinaryReader) -> HoughForestOptions:
        max_depth = reader.read_int()
        max_leaf_elements = reader.read_int()
        max_candidate_features = reader.read_int()
        num_feature_expansions = reader.read_int()
        max_candidate_thresholds = reader.read_int()
        max_dominant_fraction = reader.read_float()
        probabilistic_sampling = reader.read_bool()
        verbose = reader.read_int()
        random_state = reader.read_int()
        policy_code = reader.read_byte()
        if policy_code >= len(EMPTY_LEAF_POLICIES):
            raise ForestFormatError(f"Unknown empty leaf policy code: {policy_code}")

        try:
            return cls(
                max_depth=max_depth,
                max_leaf_elements=max_leaf_elements,
                max_candidate_features=max_candidate_features,
                num_feature_expansions=num_feature_expansions,
                max_candidate_thresholds=max_candidate_thresholds,
                max_dominant_fraction=max_dominant_fraction,
                probabilistic_sampling=probabilistic_sampling,
                verbose=verbose,
                random_state=random_state,
                empty_leaf_policy=EMPTY_LEAF_POLICIES[policy_code],
            )
        except ValueError as e:
            raise ForestFormatError(f"Invalid options block: {e}") from e
