"""Consensus-and-threshold label assignment"""

import numpy as np
import pytest

from conftest import angle_view
from pqcell import (
    UNASSIGNED, Classifier, ConfigurationError, DimensionMismatch, SearchResult,
    annotate, build_index, classify, search
)


def make_result(neighbors, datasets, similarities) -> SearchResult:
    neighbors = np.array(neighbors, dtype=np.int64)
    return SearchResult(
        neighbors=neighbors,
        datasets=np.array(datasets, dtype=np.int64),
        similarities=np.array(similarities, dtype=np.float64),
        query_names=tuple(str(i) for i in range(neighbors.shape[1])),
    )


class TestClassify:

    def test_threshold_is_strict(self):
        labels = ("A", "B")
        at = make_result([[0]], [[0]], [[0.5]])
        above = make_result([[0]], [[0]], [[np.nextafter(0.5, 1.0)]])

        assert classify(labels, at, thres=0.5) == [UNASSIGNED]
        assert classify(labels, above, thres=0.5) == ["A"]

    def test_requires_unanimous_neighbours(self):
        labels = ("A", "A", "B")
        result = make_result([[0, 0], [1, 2]], [[0, 0], [0, 0]], [[0.9, 0.9], [0.8, 0.8]])
        assert classify(labels, result) == ["A", UNASSIGNED]

    def test_labels_looked_up_per_dataset(self):
        first = ("A", "B")
        second = ("B", "C", "A")
        # query 0: dataset 0 sample 1 (B) and dataset 1 sample 0 (B)
        # query 1: dataset 1 sample 2 (A) and dataset 0 sample 1 (B)
        result = make_result([[1, 2], [0, 1]], [[0, 1], [1, 0]], [[0.9, 0.95], [0.85, 0.9]])
        assert classify([first, second], result) == ["B", UNASSIGNED]

    def test_threshold_uses_best_similarity(self):
        result = make_result([[0], [1]], [[0], [0]], [[0.61], [0.2]])
        assert classify(("A", "A"), result, thres=0.6) == ["A"]
        assert classify(("A", "A"), result, thres=0.7) == [UNASSIGNED]

    def test_dataset_without_labels(self):
        result = make_result([[0]], [[1]], [[0.9]])
        with pytest.raises(ConfigurationError):
            classify([("A",)], result)

    def test_neighbour_outside_label_sequence(self):
        result = make_result([[3]], [[0]], [[0.9]])
        with pytest.raises(DimensionMismatch):
            classify(("A", "B"), result)

    def test_threshold_from_config(self, config):
        config["classify"]["threshold"] = 0.95
        result = make_result([[0]], [[0]], [[0.9]])
        assert Classifier(config=config).classify(("A",), result) == [UNASSIGNED]
        assert Classifier(0.8, config).classify(("A",), result) == ["A"]


class TestEndToEnd:

    def test_grouped_reference_recovers_labels(self, grouped_reference, config):
        index = build_index(grouped_reference, n_chunks=2, n_clusters=2, config=config)

        for w in (1, 3):
            result = search([index], grouped_reference, w=w, config=config)
            labels = classify(grouped_reference.sample_labels, result, thres=0.1)
            assert labels == list(grouped_reference.sample_labels)

    def test_far_query_stays_unassigned(self, grouped_reference, config):
        index = build_index(grouped_reference, n_chunks=2, n_clusters=2, config=config)
        # halfway between both groups: neighbours split across labels
        query = angle_view([45], [45])
        result = search([index], query, w=6, config=config)
        assert classify(grouped_reference.sample_labels, result) == [UNASSIGNED]

    def test_multi_reference_labels(self, grouped_reference, second_reference, config):
        indexes = [build_index(view, n_chunks=2, n_clusters=2, config=config)
                   for view in (grouped_reference, second_reference)]
        query = angle_view([9, 81], [10, 80])
        result = search(indexes, query, w=1, config=config)

        labels = classify([index.sample_labels for index in indexes], result, thres=0.5)
        assert labels == ["A", "B"]

    def test_annotate(self, grouped_reference, config):
        config["index"]["n_chunks"] = 2
        config["index"]["n_clusters"] = 2
        query = angle_view([11, 79, 9], [12, 80, 10])

        assert annotate(grouped_reference, query, w=3, config=config) == ["A", "B", "A"]

    def test_annotate_requires_labels(self, grouped_reference, config):
        unlabelled = angle_view([10, 80], [10, 80])
        with pytest.raises(ConfigurationError):
            annotate(unlabelled, grouped_reference, config=config)
