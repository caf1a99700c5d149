from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

import numpy as np


class TrainingData(ABC):
    """Read access to labelled examples for training a Hough forest.

    Class 0 is the background class. Output arrays passed to the getters are
    pre-allocated by the caller and filled in place.
    """

    @abstractmethod
    def num_examples(self) -> int:
        ...

    @abstractmethod
    def num_classes(self) -> int:
        """Number of possible labels, some of which may be absent from the data."""

    @abstractmethod
    def num_features(self) -> int:
        ...

    @abstractmethod
    def num_vote_parameters(self, class_index: int) -> int:
        """Dimension of the Hough space for a class."""

    @abstractmethod
    def get_features(
        self,
        feature_index: int,
        values: np.ndarray,
        selected_examples: np.ndarray | None = None,
    ) -> None:
        """Fill ``values`` with one feature for all examples, or for ``selected_examples``."""

    @abstractmethod
    def get_classes(
        self,
        classes: np.ndarray,
        selected_examples: np.ndarray | None = None,
    ) -> None:
        """Fill ``classes`` with labels for all examples, or for ``selected_examples``."""

    @abstractmethod
    def get_self_vote(self, example_index: int, params: np.ndarray) -> None:
        """Fill ``params`` with the vote an example casts for its own parent object.

        ``params`` has ``num_vote_parameters(class_of_example)`` elements.
        """


class ArrayTrainingData(TrainingData):
    """TrainingData over in-memory numpy arrays.

    ``self_votes`` is an (n_examples, width) matrix; row ``i`` holds the self-vote
    of example ``i`` in its first ``num_vote_params[classes[i]]`` columns, the
    rest is ignored.
    """

    def __init__(
        self,
        features: np.ndarray,
        classes: np.ndarray,
        self_votes: np.ndarray,
        num_vote_params: Sequence[int],
    ) -> None:
        self.features = np.asarray(features, dtype=np.float64)
        self.classes = np.asarray(classes, dtype=np.int64)
        self.num_vote_params = [int(v) for v in num_vote_params]

        if self.features.ndim != 2:
            raise ValueError("features must be a 2D array")
        if self.classes.ndim != 1 or self.classes.shape[0] != self.features.shape[0]:
            raise ValueError("classes must be a 1D array with the same number of rows as features")

        max_params = max(self.num_vote_params) if self.num_vote_params else 0
        self_votes = np.asarray(self_votes, dtype=np.float64)
        if self_votes.size == 0:
            self_votes = np.zeros((self.features.shape[0], max_params), dtype=np.float64)
        if self_votes.ndim != 2 or self_votes.shape[0] != self.features.shape[0]:
            raise ValueError("self_votes must be a 2D array with the same number of rows as features")
        if self_votes.shape[1] < max_params:
            raise ValueError(
                f"self_votes has {self_votes.shape[1]} columns, need at least {max_params}"
            )
        self.self_votes = self_votes

    def num_examples(self) -> int:
        return int(self.features.shape[0])

    def num_classes(self) -> int:
        return len(self.num_vote_params)

    def num_features(self) -> int:
        return int(self.features.shape[1])

    def num_vote_parameters(self, class_index: int) -> int:
        return self.num_vote_params[class_index]

    def get_features(
        self,
        feature_index: int,
        values: np.ndarray,
        selected_examples: np.ndarray | None = None,
    ) -> None:
        if selected_examples is None:
            values[:] = self.features[:, feature_index]
        else:
            values[:] = self.features[selected_examples, feature_index]

    def get_classes(
        self,
        classes: np.ndarray,
        selected_examples: np.ndarray | None = None,
    ) -> None:
        if selected_examples is None:
            classes[:] = self.classes
        else:
            classes[:] = self.classes[selected_examples]

    def get_self_vote(self, example_index: int, params: np.ndarray) -> None:
        n = params.shape[0]
        params[:] = self.self_votes[example_index, :n]
