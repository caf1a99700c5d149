import argparse
import logging
import time
import sys
from pathlib import Path

import numpy as np

# Allow running as: python experiments/quick_hough_forest_eval.py
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from forest_options import HoughForestOptions
from hough_forest import HoughForest
from training_data import ArrayTrainingData


def make_scene_patches(n_objects, patches_per_object, n_background, n_noise_features, rng):
    """Patches around 2D object centers, plus background clutter.

    The first two features of an object patch encode its offset from the
    object center (noisily); the self-vote is the displacement back to the center.
    """
    centers = rng.uniform(0.0, 100.0, size=(n_objects, 2))

    positions = []
    features = []
    classes = []
    self_votes = []
    for center in centers:
        offsets = rng.normal(scale=5.0, size=(patches_per_object, 2))
        pos = center + offsets
        feat = np.hstack(
            [
                offsets + rng.normal(scale=0.5, size=offsets.shape),
                rng.normal(size=(patches_per_object, n_noise_features)),
            ]
        )
        positions.append(pos)
        features.append(feat)
        classes.append(np.ones(patches_per_object, dtype=np.int64))
        self_votes.append(center - pos)

    positions.append(rng.uniform(0.0, 100.0, size=(n_background, 2)))
    features.append(rng.uniform(-20.0, 20.0, size=(n_background, 2 + n_noise_features)))
    classes.append(np.zeros(n_background, dtype=np.int64))
    self_votes.append(np.zeros((n_background, 2)))

    return (
        np.vstack(positions),
        np.vstack(features),
        np.concatenate(classes),
        np.vstack(self_votes),
        centers,
    )


def evaluate_one(n_trees, votes_per_patch, probabilistic, n_jobs, random_state):
    rng = np.random.default_rng(random_state)
    _, X, classes, self_votes, _ = make_scene_patches(
        n_objects=30,
        patches_per_object=40,
        n_background=1200,
        n_noise_features=4,
        rng=rng,
    )
    data = ArrayTrainingData(X, classes, self_votes, num_vote_params=[0, 2])

    options = HoughForestOptions(probabilistic_sampling=probabilistic, random_state=random_state)
    forest = HoughForest(num_classes=2, num_features=X.shape[1], num_vote_params=[0, 2], options=options)

    t0 = time.perf_counter()
    forest.train(n_trees, data, n_jobs=n_jobs)
    fit_time = time.perf_counter() - t0

    # Detect held-out objects: accumulate votes, estimate each center as the weighted vote mean.
    test_positions, test_X, test_classes, _, test_centers = make_scene_patches(
        n_objects=10,
        patches_per_object=40,
        n_background=0,
        n_noise_features=4,
        rng=rng,
    )
    errors = []
    t0 = time.perf_counter()
    for obj in range(test_centers.shape[0]):
        rows = np.arange(obj * 40, (obj + 1) * 40)
        votes = []
        weights = []

        for row in rows:
            def collect(vote, origin=test_positions[row]):
                votes.append(origin + vote.params)
                weights.append(vote.weight)

            forest.vote_self(1, test_X[row], votes_per_patch, collect)

        estimate = np.average(np.asarray(votes), axis=0, weights=np.asarray(weights))
        errors.append(float(np.linalg.norm(estimate - test_centers[obj])))
    vote_time = time.perf_counter() - t0

    return {
        "fit_time_sec": fit_time,
        "vote_time_sec": vote_time,
        "mean_center_error": float(np.mean(errors)),
        "max_center_error": float(np.max(errors)),
        "tree_metrics": forest.metrics["tree_metrics"],
        "num_examples": forest.num_examples,
        "num_test_patches": int(test_classes.size),
    }


def summarize_tree_metrics(tree_metrics):
    if not tree_metrics:
        return {"avg_nodes": 0.0, "avg_depth": 0.0, "early_accept_rate": float("nan")}

    splits = sum(t["nodes_split"] for t in tree_metrics)
    early = sum(t["splits_accepted_early"] for t in tree_metrics)
    return {
        "avg_nodes": float(np.mean([t["num_nodes"] for t in tree_metrics])),
        "avg_depth": float(np.mean([t["depth"] for t in tree_metrics])),
        "early_accept_rate": early / splits if splits else float("nan"),
    }


def main():
    parser = argparse.ArgumentParser(description="Quick Hough forest detection check on synthetic scenes")
    parser.add_argument("--n-trees", type=int, default=10)
    parser.add_argument("--votes-per-patch", type=int, default=10)
    parser.add_argument(
        "--probabilistic",
        action="store_true",
        help="Sample thresholds and voting examples randomly instead of on fixed grids.",
    )
    parser.add_argument("--n-jobs", type=int, default=1)
    parser.add_argument("--random-state", type=int, default=42)
    parser.add_argument("--verbose", action="store_true")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    out = evaluate_one(
        n_trees=args.n_trees,
        votes_per_patch=args.votes_per_patch,
        probabilistic=args.probabilistic,
        n_jobs=args.n_jobs,
        random_state=args.random_state,
    )
    print(
        "HoughForest"
        f" examples={out['num_examples']}"
        f" fit_time={out['fit_time_sec']:.3f}s"
        f" vote_time={out['vote_time_sec']:.3f}s"
        f" mean_center_error={out['mean_center_error']:.3f}"
        f" max_center_error={out['max_center_error']:.3f}"
    )
    diag = summarize_tree_metrics(out["tree_metrics"])
    print(
        "  diagnostics"
        f" avg_nodes={diag['avg_nodes']:.1f}"
        f" avg_depth={diag['avg_depth']:.1f}"
        f" early_accept_rate={diag['early_accept_rate']:.2f}"
    )


if __name__ == "__main__":
    main()
