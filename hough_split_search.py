from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Sequence

import numpy as np

from forest_options import HoughForestOptions


@dataclass(frozen=True)
class SplitCandidate:
    feature: int
    threshold: float


@dataclass
class SplitSearchMetrics:
    rounds: int = 0
    features_evaluated: int = 0
    candidates_evaluated: int = 0
    accepted_early: bool = False
    time_spent_sec: float = 0.0


@dataclass
class SplitSearchResult:
    candidate: SplitCandidate | None
    score: float
    class_uncertainty: float
    metrics: SplitSearchMetrics


def _entropy(counts: np.ndarray) -> np.ndarray:
    """Shannon entropy (bits) of each row of a (k, num_classes) count matrix."""
    totals = counts.sum(axis=1, keepdims=True)
    p = counts / np.maximum(totals, 1.0)
    safe = np.where(p > 0.0, p, 1.0)
    return -np.sum(np.where(p > 0.0, p * np.log2(safe), 0.0), axis=1)


def _class_uncertainty(counts: np.ndarray) -> np.ndarray:
    """One minus the dominant class fraction, per row. Empty rows are certain."""
    totals = counts.sum(axis=1)
    dominant = counts.max(axis=1)
    return np.where(totals > 0.0, 1.0 - dominant / np.maximum(totals, 1.0), 0.0)


def _sum_squared_deviation(count: np.ndarray, sums: np.ndarray, sq_sums: np.ndarray) -> np.ndarray:
    return sq_sums - np.sum(sums * sums, axis=1) / np.maximum(count, 1.0)


class HoughSplitSearch:
    """Randomized split search for one node of a Hough tree.

    Candidates are scored by the sum of two normalized gains, each in [0, 1]:
    the reduction of class entropy over all classes (background included), and
    the relative reduction of the spread of self-votes of non-background
    examples, measured around per-class means. In a class-uncertain node the
    first candidate that cuts class uncertainty by at least
    ``min_class_uncertainty`` is taken without looking further.
    """

    def __init__(
        self,
        node_rows: np.ndarray,
        X: np.ndarray,
        classes: np.ndarray,
        self_votes: np.ndarray,
        num_vote_params: Sequence[int],
        options: HoughForestOptions,
        rng: np.random.Generator,
    ) -> None:
        if not options.is_resolved():
            raise ValueError("Split search requires resolved options")

        self.node_rows = np.asarray(node_rows, dtype=np.int64)
        self.X = X
        self.options = options
        self.rng = rng

        self.n_node = int(self.node_rows.size)
        self.n_features = int(X.shape[1])
        num_classes = len(num_vote_params)

        node_classes = classes[self.node_rows]
        self.one_hot = (node_classes[:, None] == np.arange(num_classes)[None, :]).astype(np.float64)
        self.class_counts = self.one_hot.sum(axis=0)
        self.parent_entropy = float(_entropy(self.class_counts[None, :])[0])
        self.class_uncertainty = float(_class_uncertainty(self.class_counts[None, :])[0])

        # Background (class 0) never contributes to the regression term.
        self.vote_groups: list[tuple[np.ndarray, np.ndarray, np.ndarray]] = []
        self.parent_vote_ssd = 0.0
        for c in range(1, num_classes):
            n_params = int(num_vote_params[c])
            if n_params == 0:
                continue
            positions = np.flatnonzero(node_classes == c)
            if positions.size < 2:
                continue
            votes = self_votes[self.node_rows[positions], :n_params]
            sq_norms = np.sum(votes * votes, axis=1)
            self.vote_groups.append((positions, votes, sq_norms))
            self.parent_vote_ssd += float(
                _sum_squared_deviation(
                    np.array([positions.size], dtype=np.float64),
                    votes.sum(axis=0)[None, :],
                    np.array([sq_norms.sum()]),
                )[0]
            )

    def _candidate_thresholds(self, values: np.ndarray) -> np.ndarray:
        lo = float(values.min())
        hi = float(values.max())
        if not hi > lo:
            return np.empty(0, dtype=np.float64)

        num_thresholds = self.options.max_candidate_thresholds
        if self.options.probabilistic_sampling:
            # uniform can round up to hi, which would send every example left
            return np.minimum(self.rng.uniform(lo, hi, size=num_thresholds), np.nextafter(hi, lo))

        steps = np.arange(1, num_thresholds + 1, dtype=np.float64) / (num_thresholds + 1)
        return lo + (hi - lo) * steps

    def _evaluate_feature(
        self,
        values: np.ndarray,
        thresholds: np.ndarray,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Score every threshold on one feature.

        Returns (valid, score, class uncertainty reduction), one entry per threshold.
        """
        left_mask = (values[None, :] <= thresholds[:, None]).astype(np.float64)
        n_left = left_mask.sum(axis=1)
        n_right = self.n_node - n_left
        valid = (n_left > 0) & (n_right > 0)

        frac_left = n_left / self.n_node
        frac_right = n_right / self.n_node

        left_counts = left_mask @ self.one_hot
        right_counts = self.class_counts[None, :] - left_counts

        if self.parent_entropy > 0.0:
            child_entropy = frac_left * _entropy(left_counts) + frac_right * _entropy(right_counts)
            class_gain = (self.parent_entropy - child_entropy) / self.parent_entropy
        else:
            class_gain = np.zeros(thresholds.size, dtype=np.float64)

        child_uncertainty = (
            frac_left * _class_uncertainty(left_counts)
            + frac_right * _class_uncertainty(right_counts)
        )
        uncertainty_reduction = self.class_uncertainty - child_uncertainty

        vote_gain = np.zeros(thresholds.size, dtype=np.float64)
        if self.parent_vote_ssd > 1e-12:
            child_ssd = np.zeros(thresholds.size, dtype=np.float64)
            for positions, votes, sq_norms in self.vote_groups:
                mask = left_mask[:, positions]
                count_left = mask.sum(axis=1)
                sums_left = mask @ votes
                sq_left = mask @ sq_norms

                count_right = positions.size - count_left
                sums_right = votes.sum(axis=0)[None, :] - sums_left
                sq_right = sq_norms.sum() - sq_left

                child_ssd += _sum_squared_deviation(count_left, sums_left, sq_left)
                child_ssd += _sum_squared_deviation(count_right, sums_right, sq_right)

            vote_gain = np.clip((self.parent_vote_ssd - child_ssd) / self.parent_vote_ssd, 0.0, 1.0)

        score = np.where(valid, class_gain + vote_gain, -np.inf)
        return valid, score, uncertainty_reduction

    def search(self) -> SplitSearchResult:
        start = time.perf_counter()
        metrics = SplitSearchMetrics()
        opts = self.options

        min_uncertainty = opts.min_class_uncertainty
        class_uncertain = self.class_uncertainty > 0.0 and self.class_uncertainty >= min_uncertainty

        best: SplitCandidate | None = None
        best_score = -np.inf

        for round_idx in range(1 + opts.num_feature_expansions):
            num_candidates = min(self.n_features, opts.max_candidate_features * (round_idx + 1))
            candidate_features = self.rng.choice(self.n_features, size=num_candidates, replace=False)
            metrics.rounds += 1

            for feature in candidate_features:
                feature = int(feature)
                values = self.X[self.node_rows, feature]
                thresholds = self._candidate_thresholds(values)
                if thresholds.size == 0:
                    continue

                metrics.features_evaluated += 1
                metrics.candidates_evaluated += int(thresholds.size)
                valid, score, reduction = self._evaluate_feature(values, thresholds)

                if class_uncertain:
                    accept = valid & (reduction > 0.0) & (reduction >= min_uncertainty)
                    if np.any(accept):
                        j = int(np.argmax(accept))
                        metrics.accepted_early = True
                        metrics.time_spent_sec = time.perf_counter() - start
                        return SplitSearchResult(
                            SplitCandidate(feature, float(thresholds[j])),
                            float(score[j]),
                            self.class_uncertainty,
                            metrics,
                        )

                if not np.any(valid):
                    continue

                # argmax picks the first maximum, so ties go to the earliest threshold
                j = int(np.argmax(score))
                if score[j] > best_score:
                    best_score = float(score[j])
                    best = SplitCandidate(feature, float(thresholds[j]))

            if best is not None:
                break
            if num_candidates == self.n_features and not opts.probabilistic_sampling:
                # Every feature was already tried on a fixed grid; more rounds repeat the same search.
                break

        metrics.time_spent_sec = time.perf_counter() - start
        return SplitSearchResult(best, float(best_score), self.class_uncertainty, metrics)
