import numpy as np
import pytest

from forest_options import HoughForestOptions
from hough_split_search import HoughSplitSearch


def _options(**overrides):
    params = dict(
        max_depth=10,
        max_leaf_elements=2,
        max_candidate_features=4,
        num_feature_expansions=3,
        max_candidate_thresholds=10,
        max_dominant_fraction=0.9,
        verbose=0,
    )
    params.update(overrides)
    return HoughForestOptions(**params)


def _search(X, classes, self_votes, num_vote_params, options, seed=0):
    return HoughSplitSearch(
        node_rows=np.arange(X.shape[0]),
        X=X,
        classes=classes,
        self_votes=self_votes,
        num_vote_params=num_vote_params,
        options=options,
        rng=np.random.default_rng(seed),
    ).search()


def test_class_separating_feature_is_accepted_early():
    rng = np.random.default_rng(1)
    classes = np.repeat([0, 1], 50)
    X = rng.normal(size=(100, 4))
    X[:, 2] = classes * 10.0 + rng.uniform(0.0, 1.0, size=100)
    self_votes = np.zeros((100, 2))

    result = _search(X, classes, self_votes, [0, 2], _options(max_dominant_fraction=0.6))

    assert result.candidate is not None
    assert result.candidate.feature == 2
    assert 0.5 < result.candidate.threshold < 10.0
    assert result.metrics.accepted_early
    assert np.isclose(result.class_uncertainty, 0.5)


def test_regression_term_splits_pure_node_by_votes():
    rng = np.random.default_rng(2)
    X = rng.uniform(-1.0, 1.0, size=(80, 3))
    classes = np.ones(80, dtype=np.int64)
    self_votes = np.where(X[:, [0]] > 0.0, 10.0, -10.0) * np.ones((80, 2))

    result = _search(X, classes, self_votes, [0, 2], _options())

    assert result.class_uncertainty == 0.0
    assert not result.metrics.accepted_early
    assert result.candidate is not None
    assert result.candidate.feature == 0
    assert result.score > 0.5


def test_background_votes_do_not_count_towards_regression():
    rng = np.random.default_rng(3)
    X = rng.normal(size=(30, 2))
    classes = np.zeros(30, dtype=np.int64)
    self_votes = rng.normal(scale=100.0, size=(30, 2))

    search = HoughSplitSearch(
        node_rows=np.arange(30),
        X=X,
        classes=classes,
        self_votes=self_votes,
        num_vote_params=[2, 2],
        options=_options(),
        rng=np.random.default_rng(3),
    )
    assert search.parent_vote_ssd == 0.0


def test_constant_features_give_no_split_after_all_expansions():
    X = np.ones((20, 3))
    classes = np.repeat([0, 1], 10)
    self_votes = np.zeros((20, 1))

    result = _search(X, classes, self_votes, [0, 1], _options(max_candidate_features=1))

    assert result.candidate is None
    # Feature sets of size 1, 2 and 3; the fourth round would repeat the third.
    assert result.metrics.rounds == 3
    assert result.metrics.features_evaluated == 0


def test_probabilistic_thresholds_stay_in_observed_range():
    rng = np.random.default_rng(4)
    X = rng.uniform(3.0, 4.0, size=(40, 2))
    classes = np.ones(40, dtype=np.int64)
    self_votes = rng.normal(size=(40, 2))

    result = _search(X, classes, self_votes, [0, 2], _options(probabilistic_sampling=True), seed=4)

    assert result.candidate is not None
    column = X[:, result.candidate.feature]
    left = column <= result.candidate.threshold
    assert 0 < left.sum() < 40


def test_same_seed_same_split():
    rng = np.random.default_rng(5)
    X = rng.normal(size=(60, 6))
    classes = rng.integers(0, 3, size=60)
    self_votes = rng.normal(size=(60, 3))
    options = _options(max_candidate_features=2, probabilistic_sampling=True)

    first = _search(X, classes, self_votes, [0, 3, 2], options, seed=11)
    second = _search(X, classes, self_votes, [0, 3, 2], options, seed=11)

    assert first.candidate == second.candidate
    assert first.score == second.score


def test_unresolved_options_rejected():
    X = np.zeros((4, 2))
    with pytest.raises(ValueError):
        HoughSplitSearch(
            node_rows=np.arange(4),
            X=X,
            classes=np.zeros(4, dtype=np.int64),
            self_votes=np.zeros((4, 1)),
            num_vote_params=[0, 1],
            options=HoughForestOptions(),
            rng=np.random.default_rng(0),
        )


def test_probabilistic_thresholds_never_reach_the_maximum():
    hi = np.nextafter(1.0, 2.0)
    X = np.array([[1.0], [hi]])
    search = HoughSplitSearch(
        node_rows=np.arange(2),
        X=X,
        classes=np.array([0, 1]),
        self_votes=np.zeros((2, 1)),
        num_vote_params=[0, 1],
        options=_options(max_candidate_features=1, max_candidate_thresholds=200, probabilistic_sampling=True),
        rng=np.random.default_rng(6),
    )

    thresholds = search._candidate_thresholds(X[:, 0])

    assert thresholds.size == 200
    assert np.all(thresholds >= 1.0)
    assert np.all(thresholds < hi)
    result = search.search()
    assert result.candidate is not None
    assert result.candidate.threshold < hi
