from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Sequence

import numpy as np

from binary_stream import BinaryReader, BinaryWriter, ForestFormatError
from forest_options import HoughForestOptions
from hough_split_search import HoughSplitSearch, SplitCandidate

logger = logging.getLogger(__name__)

SPLIT_TAG = 0
LEAF_TAG = 1


@dataclass
class TreeNode:
    depth: int
    is_leaf: bool = True
    split_feature: int = -1
    split_threshold: float = 0.0
    left: int = -1
    right: int = -1
    # Indices into the forest's cached training arrays. Only leaves keep them.
    examples: np.ndarray | None = None


@dataclass
class TreeBuildMetrics:
    nodes_visited: int = 0
    nodes_split: int = 0
    leaves_at_max_depth: int = 0
    leaves_without_split: int = 0
    splits_accepted_early: int = 0
    split_search_time_sec: float = 0.0
    node_metrics: list[dict] = field(default_factory=list)


class HoughTree:
    """A trained tree: a node arena addressed by integer index, plus the root index."""

    def __init__(self, nodes: list[TreeNode], root: int = 0) -> None:
        self.nodes = nodes
        self.root = root

    @property
    def num_nodes(self) -> int:
        return len(self.nodes)

    @property
    def num_leaves(self) -> int:
        return sum(1 for node in self.nodes if node.is_leaf)

    @property
    def depth(self) -> int:
        return max(node.depth for node in self.nodes)

    def leaves(self) -> list[TreeNode]:
        return [node for node in self.nodes if node.is_leaf]

    def find_leaf(self, features: np.ndarray) -> TreeNode:
        node = self.nodes[self.root]
        while not node.is_leaf:
            if features[node.split_feature] <= node.split_threshold:
                node = self.nodes[node.left]
            else:
                node = self.nodes[node.right]
        return node

    def describe(self) -> list[str]:
        lines = []
        stack = [self.root]
        while stack:
            node = self.nodes[stack.pop()]
            indent = "  " * node.depth
            if node.is_leaf:
                assert node.examples is not None
                lines.append(f"{indent}leaf: {node.examples.size} example(s)")
            else:
                lines.append(
                    f"{indent}split: feature {node.split_feature} <= {node.split_threshold:.6g}"
                )
                stack.append(node.right)
                stack.append(node.left)
        return lines

    def write(self, writer: BinaryWriter) -> None:
        writer.write_int(len(self.nodes))
        writer.write_int(self.root)
        for node in self.nodes:
            if node.is_leaf:
                assert node.examples is not None
                writer.write_byte(LEAF_TAG)
                writer.write_int(node.examples.size)
                writer.write_array(node.examples, "<i8")
            else:
                writer.write_byte(SPLIT_TAG)
                writer.write_int(node.split_feature)
                writer.write_float(node.split_threshold)
                writer.write_int(node.left)
                writer.write_int(node.right)

    def check_examples(self, num_examples: int) -> None:
        """Raise ForestFormatError if a leaf refers to an example outside [0, num_examples)."""
        for node in self.leaves():
            assert node.examples is not None
            if node.examples.size == 0:
                raise ForestFormatError("Tree has an empty leaf")
            if node.examples.min() < 0 or node.examples.max() >= num_examples:
                raise ForestFormatError("Leaf refers to an example outside the training set")

    @classmethod
    def read(cls, reader: BinaryReader, num_features: int) -> HoughTree:
        num_nodes = reader.read_count("node count")
        if num_nodes == 0:
            raise ForestFormatError("Tree has no nodes")
        root = reader.read_int()
        if not 0 <= root < num_nodes:
            raise ForestFormatError(f"Root index {root} out of range")

        nodes: list[TreeNode] = []
        for _ in range(num_nodes):
            tag = reader.read_byte()
            if tag == LEAF_TAG:
                count = reader.read_count("leaf size")
                examples = reader.read_array(count, "<i8").astype(np.int64)
                nodes.append(TreeNode(depth=0, examples=examples))
            elif tag == SPLIT_TAG:
                feature = reader.read_int()
                threshold = reader.read_float()
                left = reader.read_int()
                right = reader.read_int()
                if not 0 <= feature < num_features:
                    raise ForestFormatError(f"Split feature {feature} out of range")
                if not (0 <= left < num_nodes and 0 <= right < num_nodes):
                    raise ForestFormatError("Split child index out of range")
                nodes.append(
                    TreeNode(
                        depth=0,
                        is_leaf=False,
                        split_feature=feature,
                        split_threshold=threshold,
                        left=left,
                        right=right,
                    )
                )
            else:
                raise ForestFormatError(f"Unknown node tag {tag}")

        # Depths are not stored; recover them and reject shared or cyclic children.
        seen = np.zeros(num_nodes, dtype=bool)
        stack = [(root, 0)]
        while stack:
            index, depth = stack.pop()
            if seen[index]:
                raise ForestFormatError("Tree nodes do not form a tree")
            seen[index] = True
            node = nodes[index]
            node.depth = depth
            if not node.is_leaf:
                stack.append((node.right, depth + 1))
                stack.append((node.left, depth + 1))
        if not seen.all():
            raise ForestFormatError("Tree has nodes unreachable from the root")

        return cls(nodes, root)


class TreeBuilder:
    """Grows one Hough tree top-down over the forest's cached training arrays."""

    def __init__(
        self,
        X: np.ndarray,
        classes: np.ndarray,
        self_votes: np.ndarray,
        num_vote_params: Sequence[int],
        options: HoughForestOptions,
        rng: np.random.Generator | None = None,
    ) -> None:
        if not options.is_resolved():
            raise ValueError("TreeBuilder requires resolved options")

        self.X = X
        self.classes = classes
        self.self_votes = self_votes
        self.num_vote_params = list(num_vote_params)
        self.options = options
        self.rng = rng if rng is not None else np.random.default_rng(options.random_state)

        self.n_samples = int(X.shape[0])
        self.metrics = TreeBuildMetrics()

    def _is_splittable(self, node: TreeNode) -> bool:
        assert node.examples is not None
        if node.examples.size <= self.options.max_leaf_elements:
            return False
        if node.depth >= self.options.max_depth:
            self.metrics.leaves_at_max_depth += 1
            return False
        return True

    def _partition_rows(self, rows: np.ndarray, candidate: SplitCandidate) -> tuple[np.ndarray, np.ndarray]:
        left_mask = self.X[rows, candidate.feature] <= candidate.threshold
        return rows[left_mask], rows[~left_mask]

    def build_tree(self, rows: np.ndarray | None = None) -> HoughTree:
        if rows is None:
            rows = np.arange(self.n_samples, dtype=np.int64)
        else:
            rows = np.asarray(rows, dtype=np.int64)
        if rows.size == 0:
            raise ValueError("Cannot build a tree from an empty example set")

        nodes = [TreeNode(depth=0, examples=rows)]
        stack = [0]

        while stack:
            index = stack.pop()
            node = nodes[index]
            self.metrics.nodes_visited += 1

            if not self._is_splittable(node):
                continue

            assert node.examples is not None
            search = HoughSplitSearch(
                node_rows=node.examples,
                X=self.X,
                classes=self.classes,
                self_votes=self.self_votes,
                num_vote_params=self.num_vote_params,
                options=self.options,
                rng=self.rng,
            )
            result = search.search()
            self.metrics.split_search_time_sec += result.metrics.time_spent_sec
            self.metrics.node_metrics.append(
                {
                    "depth": node.depth,
                    "node_size": int(node.examples.size),
                    "class_uncertainty": result.class_uncertainty,
                    "rounds": result.metrics.rounds,
                    "candidates_evaluated": result.metrics.candidates_evaluated,
                    "accepted_early": result.metrics.accepted_early,
                    "score": result.score,
                }
            )

            if result.candidate is None:
                self.metrics.leaves_without_split += 1
                continue

            left_rows, right_rows = self._partition_rows(node.examples, result.candidate)
            if left_rows.size == 0 or right_rows.size == 0:
                self.metrics.leaves_without_split += 1
                continue

            if self.options.verbose >= 2:
                logger.debug(
                    "Split node at depth %d (%d examples) on feature %d <= %.6g: %d | %d",
                    node.depth,
                    node.examples.size,
                    result.candidate.feature,
                    result.candidate.threshold,
                    left_rows.size,
                    right_rows.size,
                )

            node.is_leaf = False
            node.split_feature = result.candidate.feature
            node.split_threshold = result.candidate.threshold
            node.examples = None
            node.left = len(nodes)
            node.right = len(nodes) + 1
            nodes.append(TreeNode(depth=node.depth + 1, examples=left_rows))
            nodes.append(TreeNode(depth=node.depth + 1, examples=right_rows))

            self.metrics.nodes_split += 1
            if result.metrics.accepted_early:
                self.metrics.splits_accepted_early += 1

            stack.append(node.right)
            stack.append(node.left)

        return HoughTree(nodes, root=0)
