from __future__ import annotations

from dataclasses import dataclass, replace
import io
import logging
import time
from typing import BinaryIO, Protocol, Sequence

import numpy as np
from joblib import Parallel, delayed

from binary_stream import BinaryReader, BinaryWriter, ForestFormatError
from forest_options import HoughForestOptions
from training_data import TrainingData
from tree_builder import HoughTree, TreeBuilder, TreeBuildMetrics

logger = logging.getLogger(__name__)

FOREST_MAGIC = b"HGHF"
FOREST_FORMAT_VERSION = 1


@dataclass(frozen=True)
class Vote:
    """One Hough vote.

    ``params`` and ``features`` are read-only views into the forest's cached
    training data and are only guaranteed valid while the callback runs.
    """

    target_class: int
    params: np.ndarray
    weight: float
    index: int = -1  # training example that cast the vote, -1 if unknown
    features: np.ndarray | None = None

    @property
    def num_params(self) -> int:
        return int(self.params.shape[0])

    @property
    def num_features(self) -> int:
        return -1 if self.features is None else int(self.features.shape[0])


class VoteCallback(Protocol):
    def __call__(self, vote: Vote) -> None:
        ...


def _build_tree(
    X: np.ndarray,
    classes: np.ndarray,
    self_votes: np.ndarray,
    num_vote_params: Sequence[int],
    options: HoughForestOptions,
    seed: int,
) -> tuple[HoughTree, TreeBuildMetrics]:
    builder = TreeBuilder(
        X=X,
        classes=classes,
        self_votes=self_votes,
        num_vote_params=num_vote_params,
        options=options,
        rng=np.random.default_rng(seed),
    )
    tree = builder.build_tree()
    return tree, builder.metrics


class HoughForest:
    """An ensemble of Hough trees plus a cached copy of the training data used for voting.

    Based on J. Gall and V. Lempitsky, "Class-Specific Hough Forests for Object
    Detection", Proc. CVPR, 2009, extended to several object classes plus a
    background class. The background class always has index 0: it is never a
    voting target, and its examples are ignored when measuring how compact the
    self-votes of a node are.

    Typical use: implement TrainingData (or wrap arrays in ArrayTrainingData),
    call train(), then vote_self().
    """

    def __init__(
        self,
        num_classes: int,
        num_features: int,
        num_vote_params: Sequence[int],
        options: HoughForestOptions | None = None,
    ) -> None:
        if num_classes < 2:
            raise ValueError("num_classes must be at least 2 (background plus one object class)")
        if num_features < 1:
            raise ValueError("num_features must be positive")
        num_vote_params = [int(v) for v in num_vote_params]
        if len(num_vote_params) != num_classes:
            raise ValueError("num_vote_params must have one entry per class")
        if any(v < 0 for v in num_vote_params):
            raise ValueError("num_vote_params entries must be non-negative")

        self.num_classes = int(num_classes)
        self.num_features = int(num_features)
        self.num_vote_params = num_vote_params
        self.max_vote_params = max(num_vote_params)
        self.options = options or HoughForestOptions()

        # Set by train() or read(): the options with every auto value resolved.
        self.training_options: HoughForestOptions | None = None
        self.trees: list[HoughTree] = []
        self.all_features: np.ndarray | None = None
        self.all_classes: np.ndarray | None = None
        self.all_self_votes: np.ndarray | None = None
        self._class_examples: list[np.ndarray] = []
        self.metrics: dict = {}

    @classmethod
    def from_file(cls, path: str) -> HoughForest:
        """Construct a forest from a file written by save(). Raises on failure."""
        with open(path, "rb") as f:
            return cls.read(f)

    # PROPERTIES

    @property
    def num_trees(self) -> int:
        return len(self.trees)

    @property
    def num_examples(self) -> int:
        return 0 if self.all_classes is None else int(self.all_classes.shape[0])

    @property
    def is_trained(self) -> bool:
        return len(self.trees) > 0

    def num_vote_parameters(self, class_index: int) -> int:
        return self.num_vote_params[class_index]

    def clear(self) -> None:
        """Discard all trees and cached training data. Options are kept."""
        self.training_options = None
        self.trees = []
        self.all_features = None
        self.all_classes = None
        self.all_self_votes = None
        self._class_examples = []
        self.metrics = {}

    def set_verbose(self, level: int) -> None:
        self.options = replace(self.options, verbose=level)
        if self.training_options is not None:
            self.training_options = replace(self.training_options, verbose=level)

    # TRAINING

    def _check_training_data(self, training_data: TrainingData) -> None:
        if training_data.num_examples() <= 0:
            raise ValueError("Training data has no examples")
        if training_data.num_classes() != self.num_classes:
            raise ValueError(
                f"Training data has {training_data.num_classes()} classes, forest expects {self.num_classes}"
            )
        if training_data.num_features() != self.num_features:
            raise ValueError(
                f"Training data has {training_data.num_features()} features, forest expects {self.num_features}"
            )
        for c in range(self.num_classes):
            if training_data.num_vote_parameters(c) != self.num_vote_params[c]:
                raise ValueError(
                    f"Training data has {training_data.num_vote_parameters(c)} vote parameters for class {c}, "
                    f"forest expects {self.num_vote_params[c]}"
                )

    def _cache_training_data(self, training_data: TrainingData) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        n = training_data.num_examples()

        X = np.empty((n, self.num_features), dtype=np.float64)
        column = np.empty(n, dtype=np.float64)
        for feature_index in range(self.num_features):
            training_data.get_features(feature_index, column)
            X[:, feature_index] = column

        classes = np.empty(n, dtype=np.int64)
        training_data.get_classes(classes)
        if classes.min() < 0 or classes.max() >= self.num_classes:
            raise ValueError(f"Training data has class labels outside [0, {self.num_classes})")

        self_votes = np.zeros((n, self.max_vote_params), dtype=np.float64)
        for i in range(n):
            n_params = self.num_vote_params[classes[i]]
            if n_params > 0:
                training_data.get_self_vote(i, self_votes[i, :n_params])

        return X, classes, self_votes

    def _set_cache(self, X: np.ndarray, classes: np.ndarray, self_votes: np.ndarray) -> None:
        for array in (X, classes, self_votes):
            array.setflags(write=False)
        self.all_features = X
        self.all_classes = classes
        self.all_self_votes = self_votes
        self._class_examples = [np.flatnonzero(classes == c) for c in range(self.num_classes)]

    def train(self, num_trees: int, training_data: TrainingData, n_jobs: int = 1) -> HoughForest:
        """Train ``num_trees`` trees, replacing any existing ensemble.

        Every tree sees the full training set; trees differ only through the
        random candidate features and thresholds drawn while splitting. Each
        tree gets its own generator seeded from ``options.random_state``, so the
        result does not depend on ``n_jobs``.
        """
        if num_trees < 1:
            raise ValueError("num_trees must be positive")
        self._check_training_data(training_data)

        X, classes, self_votes = self._cache_training_data(training_data)
        class_counts = np.bincount(classes, minlength=self.num_classes)
        options = self.options.resolved(
            num_examples=X.shape[0],
            num_classes=self.num_classes,
            num_features=self.num_features,
            class_counts=class_counts,
        )
        seeds = np.random.default_rng(options.random_state).integers(1, 2**31 - 1, size=num_trees)

        if options.verbose >= 1:
            logger.info(
                "Training Hough forest: %d tree(s), %d example(s), %d feature(s), class counts %s",
                num_trees,
                X.shape[0],
                self.num_features,
                class_counts.tolist(),
            )
            logger.info("Resolved options: %s", options.to_dict())

        start = time.perf_counter()
        if n_jobs == 1:
            results = [
                _build_tree(X, classes, self_votes, self.num_vote_params, options, int(seed))
                for seed in seeds
            ]
        else:
            results = Parallel(n_jobs=n_jobs, prefer="threads")(
                delayed(_build_tree)(X, classes, self_votes, self.num_vote_params, options, int(seed))
                for seed in seeds
            )
        train_time = time.perf_counter() - start

        self.training_options = options
        self.trees = [tree for tree, _ in results]
        self._set_cache(X, classes, self_votes)
        self.metrics = {
            "num_examples": int(X.shape[0]),
            "train_time_sec": train_time,
            "split_search_time_sec": 0.0,
            "tree_metrics": [],
        }
        for tree_idx, (tree, tree_metrics) in enumerate(results):
            self.metrics["split_search_time_sec"] += tree_metrics.split_search_time_sec
            self.metrics["tree_metrics"].append(
                {
                    "tree_idx": tree_idx,
                    "num_nodes": tree.num_nodes,
                    "num_leaves": tree.num_leaves,
                    "depth": tree.depth,
                    "nodes_split": tree_metrics.nodes_split,
                    "leaves_at_max_depth": tree_metrics.leaves_at_max_depth,
                    "leaves_without_split": tree_metrics.leaves_without_split,
                    "splits_accepted_early": tree_metrics.splits_accepted_early,
                    "node_metrics": tree_metrics.node_metrics,
                }
            )
            if options.verbose >= 1:
                logger.info(
                    "Tree %d: %d node(s), %d leaves, depth %d",
                    tree_idx,
                    tree.num_nodes,
                    tree.num_leaves,
                    tree.depth,
                )

        if options.verbose >= 1:
            logger.info("Trained %d tree(s) in %.3fs", num_trees, train_time)
        return self

    # VOTING

    def vote_self(
        self,
        query_class: int,
        features: np.ndarray,
        num_votes: int,
        callback: VoteCallback,
        rng: np.random.Generator | None = None,
    ) -> int:
        """Cast votes for the parent object of a point of class ``query_class``.

        Trees are used round-robin: vote ``i`` comes from tree ``i % num_trees``.
        Each vote looks up one training example of ``query_class`` in the leaf
        the point reaches and casts that example's self-vote. Examples are taken
        from the leaf in order, cycling as needed, or drawn uniformly from
        ``rng`` when probabilistic sampling is on (``rng`` defaults to a
        generator seeded from ``random_state``). When a leaf holds no example of
        the class, the "global" empty-leaf policy draws from all training
        examples of the class instead, and "skip" casts nothing for that vote.

        Returns the number of votes cast, which equals ``num_votes`` unless
        votes were skipped or the class has no training examples at all.
        """
        if not self.is_trained:
            raise RuntimeError("Forest must be trained or loaded before voting")
        if not 0 < query_class < self.num_classes:
            raise ValueError(f"query_class must be in [1, {self.num_classes}), got {query_class}")
        features = np.asarray(features, dtype=np.float64)
        if features.shape != (self.num_features,):
            raise ValueError(
                f"features must have shape ({self.num_features},), got {features.shape}"
            )
        if num_votes < 0:
            raise ValueError("num_votes must be non-negative")
        if num_votes == 0:
            return 0

        assert self.training_options is not None
        assert self.all_classes is not None
        options = self.training_options
        if options.probabilistic_sampling and rng is None:
            rng = np.random.default_rng(options.random_state)

        num_used_trees = min(num_votes, self.num_trees)
        pools: list[np.ndarray] = []
        densities: list[float] = []
        for tree in self.trees[:num_used_trees]:
            leaf = tree.find_leaf(features)
            assert leaf.examples is not None
            pool = leaf.examples[self.all_classes[leaf.examples] == query_class]
            pools.append(pool)
            densities.append(pool.size / float(leaf.examples.size))

        class_pool = self._class_examples[query_class]
        class_density = class_pool.size / float(self.num_examples)

        base_weight = 1.0 / num_votes
        visits = [0] * num_used_trees
        num_cast = 0
        for i in range(num_votes):
            t = i % self.num_trees
            pool = pools[t]
            density = densities[t]
            if pool.size == 0:
                if options.empty_leaf_policy == "skip" or class_pool.size == 0:
                    continue
                pool = class_pool
                density = class_density

            if options.probabilistic_sampling:
                assert rng is not None
                index = int(pool[rng.integers(pool.size)])
                weight = base_weight * density
            else:
                index = int(pool[visits[t] % pool.size])
                weight = base_weight
            visits[t] += 1

            self._single_self_vote_by_lookup(query_class, index, weight, callback)
            num_cast += 1

        if num_cast < num_votes and options.verbose >= 2:
            logger.debug("Cast %d of %d requested vote(s) for class %d", num_cast, num_votes, query_class)
        return num_cast

    def _single_self_vote_by_lookup(
        self,
        query_class: int,
        index: int,
        weight: float,
        callback: VoteCallback,
    ) -> None:
        assert self.all_self_votes is not None and self.all_features is not None
        vote = Vote(
            target_class=query_class,
            params=self.all_self_votes[index, : self.num_vote_params[query_class]],
            weight=weight,
            index=index,
            features=self.all_features[index],
        )
        callback(vote)

    # PERSISTENCE

    def write(self, stream: BinaryIO) -> None:
        """Write the forest to a binary stream."""
        writer = BinaryWriter(stream)
        writer.write_bytes(FOREST_MAGIC)
        writer.write_int(FOREST_FORMAT_VERSION)
        writer.write_int(self.num_classes)
        writer.write_int(self.num_features)
        writer.write_array(np.asarray(self.num_vote_params), "<i8")

        options = self.training_options if self.training_options is not None else self.options
        options.write(writer)

        writer.write_int(self.num_trees)
        for tree in self.trees:
            tree.write(writer)

        writer.write_int(self.num_examples)
        if self.num_examples > 0:
            writer.write_array(self.all_features, "<f8")
            writer.write_array(self.all_classes, "<i8")
            writer.write_array(self.all_self_votes, "<f8")

    @classmethod
    def read(cls, stream: BinaryIO) -> HoughForest:
        """Read a forest written by write(). Raises ForestFormatError on malformed input."""
        reader = BinaryReader(stream)
        magic = reader.read_bytes(len(FOREST_MAGIC))
        if magic != FOREST_MAGIC:
            raise ForestFormatError("Not a Hough forest stream")
        version = reader.read_int()
        if version != FOREST_FORMAT_VERSION:
            raise ForestFormatError(f"Unsupported Hough forest format version {version}")

        num_classes = reader.read_count("class count")
        num_features = reader.read_count("feature count")
        num_vote_params = reader.read_array(num_classes, "<i8").tolist()
        options = HoughForestOptions.read(reader)
        try:
            forest = cls(num_classes, num_features, num_vote_params, options)
        except ValueError as e:
            raise ForestFormatError(f"Invalid forest header: {e}") from e

        num_trees = reader.read_count("tree count")
        trees = [HoughTree.read(reader, num_features) for _ in range(num_trees)]

        n = reader.read_count("example count")
        X = reader.read_array(n * num_features, "<f8").reshape(n, num_features)
        classes = reader.read_array(n, "<i8").astype(np.int64)
        self_votes = reader.read_array(n * forest.max_vote_params, "<f8").reshape(n, forest.max_vote_params)

        if n > 0 and (classes.min() < 0 or classes.max() >= num_classes):
            raise ForestFormatError("Cached class labels out of range")
        if trees:
            if n == 0:
                raise ForestFormatError("Trained forest has no cached training data")
            if not options.is_resolved():
                raise ForestFormatError("Trained forest has unresolved options")
            for tree in trees:
                tree.check_examples(n)
            forest.training_options = options
            forest.trees = trees
        if n > 0:
            forest._set_cache(X, classes, self_votes)
        return forest

    def save(self, path: str) -> bool:
        """Save the forest to a file. Returns False and logs the reason on failure."""
        buffer = io.BytesIO()
        self.write(buffer)
        try:
            with open(path, "wb") as f:
                f.write(buffer.getvalue())
        except OSError as e:
            logger.error("Could not save Hough forest to '%s': %s", path, e)
            return False
        return True

    def load(self, path: str) -> bool:
        """Replace this forest with one saved to a file.

        Returns False and logs the reason on failure, leaving the forest unchanged.
        """
        try:
            with open(path, "rb") as f:
                loaded = HoughForest.read(f)
        except (OSError, ForestFormatError) as e:
            logger.error("Could not load Hough forest from '%s': %s", path, e)
            return False

        self.__dict__.update(loaded.__dict__)
        return True

    # DEBUGGING

    def describe(self, include_trees: bool = True) -> str:
        options = self.training_options if self.training_options is not None else self.options
        lines = [
            f"HoughForest: {self.num_classes} classes, {self.num_features} features, "
            f"vote parameters {self.num_vote_params}",
            f"  {self.num_trees} tree(s), {self.num_examples} cached example(s)",
            f"  options: {options.to_dict()}",
        ]
        for tree_idx, tree in enumerate(self.trees):
            lines.append(
                f"Tree {tree_idx}: {tree.num_nodes} node(s), {tree.num_leaves} leaves, depth {tree.depth}"
            )
            if include_trees:
                lines.extend("  " + line for line in tree.describe())
        return "\n".join(lines)

    def dump_to_console(self) -> None:
        print(self.describe())
