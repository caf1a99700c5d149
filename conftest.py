import numpy as np
import pytest

from forest_options import HoughForestOptions
from training_data import ArrayTrainingData


@pytest.fixture
def clustered_data():
    """Two classes, four features: 20 object examples clustered in feature
    space voting near (5, 5), and 20 background examples scattered at random.

    Returns (training data, centroid of the object examples).
    """
    rng = np.random.default_rng(0)
    center = np.array([2.0, -1.0, 0.5, 3.0])
    object_X = center + rng.normal(scale=0.3, size=(20, 4))
    object_votes = np.array([5.0, 5.0]) + rng.normal(scale=0.2, size=(20, 2))
    background_X = rng.uniform(-10.0, 10.0, size=(20, 4))

    X = np.vstack([object_X, background_X])
    classes = np.concatenate([np.ones(20, dtype=np.int64), np.zeros(20, dtype=np.int64)])
    self_votes = np.vstack([object_votes, np.zeros((20, 2))])

    data = ArrayTrainingData(X, classes, self_votes, num_vote_params=[0, 2])
    return data, object_X.mean(axis=0)


@pytest.fixture
def quiet_options():
    return HoughForestOptions(verbose=0, random_state=7)
