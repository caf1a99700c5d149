import numpy as np
import pytest

from training_data import ArrayTrainingData, TrainingData


def _data():
    X = np.arange(12, dtype=np.float64).reshape(4, 3)
    classes = np.array([0, 1, 2, 1])
    self_votes = np.array(
        [
            [9.0, 9.0, 9.0],
            [1.0, 2.0, 9.0],
            [3.0, 4.0, 5.0],
            [6.0, 7.0, 9.0],
        ]
    )
    return ArrayTrainingData(X, classes, self_votes, num_vote_params=[0, 2, 3])


def test_counts():
    data = _data()
    assert isinstance(data, TrainingData)
    assert data.num_examples() == 4
    assert data.num_classes() == 3
    assert data.num_features() == 3
    assert [data.num_vote_parameters(c) for c in range(3)] == [0, 2, 3]


def test_getters_fill_preallocated_arrays():
    data = _data()

    values = np.empty(4)
    data.get_features(1, values)
    assert np.array_equal(values, [1.0, 4.0, 7.0, 10.0])

    subset = np.empty(2)
    data.get_features(2, subset, selected_examples=np.array([3, 0]))
    assert np.array_equal(subset, [11.0, 2.0])

    classes = np.empty(4, dtype=np.int64)
    data.get_classes(classes)
    assert np.array_equal(classes, [0, 1, 2, 1])

    some = np.empty(2, dtype=np.int64)
    data.get_classes(some, selected_examples=np.array([2, 1]))
    assert np.array_equal(some, [2, 1])


def test_self_vote_uses_class_dimension():
    data = _data()
    params = np.empty(2)
    data.get_self_vote(3, params)
    assert np.array_equal(params, [6.0, 7.0])

    params = np.empty(3)
    data.get_self_vote(2, params)
    assert np.array_equal(params, [3.0, 4.0, 5.0])


def test_shape_mismatches_rejected():
    with pytest.raises(ValueError):
        ArrayTrainingData(np.zeros(4), np.zeros(4, dtype=np.int64), np.zeros((4, 2)), [0, 2])
    with pytest.raises(ValueError):
        ArrayTrainingData(np.zeros((4, 2)), np.zeros(3, dtype=np.int64), np.zeros((4, 2)), [0, 2])
    with pytest.raises(ValueError):
        ArrayTrainingData(np.zeros((4, 2)), np.zeros(4, dtype=np.int64), np.zeros((4, 1)), [0, 2])


def test_abstract_interface_cannot_be_instantiated():
    with pytest.raises(TypeError):
        TrainingData()
