"""Feature alignment, scoring and multi-reference top-w search"""

import numpy as np
import pytest

from conftest import angle_view
from pqcell import (
    ConfigurationError, DimensionMismatch, ExpressionView, FeatureAligner,
    PQBuilder, PQSearcher, ReferenceIndex, build_index, search
)
from pqcell.pq_searcher import empty_top, merge_top, select_top


@pytest.fixture
def exact_index(distinct_reference, config):
    # k == N: every sample is its own centroid
    return build_index(distinct_reference, n_chunks=2, n_clusters=6, config=config)


@pytest.fixture
def grouped_index(grouped_reference, config):
    return build_index(grouped_reference, n_chunks=2, n_clusters=2, config=config)


class TestFeatureAligner:

    def test_alignment_follows_sorted_feature_ids(self):
        index = ReferenceIndex(
            subcentroids=(np.eye(3, 2),),
            chunk_features=(("g3", "g1", "g2"),),
            subclusters=np.array([[0, 1]]),
            n_clusters=2,
        )
        query = ExpressionView(feature_ids=("g2", "g9", "g3"), values=np.ones((3, 1)))
        aligned = FeatureAligner(query).align(index, 0)

        # sorted order g1, g2, g3; g1 absent from the query
        np.testing.assert_array_equal(aligned.centroid_rows, [2, 0])
        np.testing.assert_array_equal(aligned.query_rows, [0, 2])

    def test_no_shared_features(self, exact_index):
        query = ExpressionView(feature_ids=("x1", "x2"), values=np.ones((2, 3)))
        aligned = FeatureAligner(query).align_index(exact_index)
        assert all(chunk.is_empty for chunk in aligned)


class TestSelection:

    def test_select_top_ties_go_to_lower_index(self):
        scores = np.array([[0.2, 0.9, 0.9, 0.1]], dtype=np.float32)
        top_scores, top = select_top(scores, 2)
        np.testing.assert_array_equal(top, [[1, 2]])
        np.testing.assert_allclose(top_scores, [[0.9, 0.9]])

    def test_select_top_caps_at_sample_count(self):
        scores = np.array([[0.1, 0.5]], dtype=np.float32)
        top_scores, top = select_top(scores, 5)
        np.testing.assert_array_equal(top, [[1, 0]])

    def test_merge_keeps_earlier_dataset_on_ties(self):
        best = empty_top(1, 2)
        best = merge_top(best, np.array([[0.7, 0.3]], dtype=np.float32), np.array([[4, 1]]), 0, 2)
        best = merge_top(best, np.array([[0.7, 0.6]], dtype=np.float32), np.array([[2, 0]]), 1, 2)
        scores, neighbors, datasets = best
        np.testing.assert_array_equal(neighbors, [[4, 2]])
        np.testing.assert_array_equal(datasets, [[0, 1]])


class TestSearch:

    def test_self_projection_without_quantization_error(self, exact_index, distinct_reference, config):
        result = search([exact_index], distinct_reference, w=1, config=config)

        np.testing.assert_array_equal(result.neighbors[0], np.arange(6))
        np.testing.assert_array_equal(result.datasets[0], np.zeros(6))
        np.testing.assert_allclose(result.similarities[0], 1.0, atol=1e-5)

    def test_grouped_neighbours_share_group(self, grouped_index, grouped_reference, config):
        result = search([grouped_index], grouped_reference, w=3, config=config)

        assert result.similarities.shape == (3, 6)
        assert np.all(result.similarities > 0.99)
        for q in range(6):
            expected = {0, 1, 2} if q < 3 else {3, 4, 5}
            assert set(result.neighbors[:, q]) == expected

    def test_similarities_sorted_and_bounded(self, grouped_index, distinct_reference, config):
        result = search([grouped_index], distinct_reference, w=4, config=config)

        assert np.all(np.diff(result.similarities, axis=0) <= 0)
        assert np.all(result.similarities <= 1.0)
        assert np.all(result.similarities >= -1.0)

    def test_query_row_order_and_extra_features_ignored(self, exact_index, distinct_reference, config):
        baseline = search([exact_index], distinct_reference, w=3, config=config)

        order = [2, 0, 3, 1]
        values = np.vstack([distinct_reference.values[order], np.full((2, 6), 5.0)])
        shuffled = ExpressionView(
            feature_ids=tuple(distinct_reference.feature_ids[i] for i in order) + ("extra1", "extra2"),
            values=values,
            sample_names=distinct_reference.sample_names,
        )
        result = search([exact_index], shuffled, w=3, config=config)

        np.testing.assert_array_equal(result.neighbors, baseline.neighbors)
        np.testing.assert_allclose(result.similarities, baseline.similarities, atol=1e-6)

    def test_chunk_without_shared_features_contributes_nothing(self, exact_index,
                                                               distinct_reference, config):
        k = exact_index.n_clusters
        padded = ReferenceIndex(
            subcentroids=exact_index.subcentroids + (np.ones((2, k)),),
            chunk_features=exact_index.chunk_features + (("x1", "x2"),),
            subclusters=np.vstack([exact_index.subclusters, np.arange(6) % k]),
            n_clusters=k,
        )
        baseline = search([exact_index], distinct_reference, w=3, config=config)
        result = search([padded], distinct_reference, w=3, config=config)

        np.testing.assert_array_equal(result.neighbors, baseline.neighbors)
        np.testing.assert_array_equal(result.similarities, baseline.similarities)

    def test_zero_query_scores_zero(self, exact_index, config):
        query = ExpressionView(feature_ids=("g1", "g2", "g3", "g4"), values=np.zeros((4, 2)))
        result = search([exact_index], query, w=2, config=config)

        np.testing.assert_array_equal(result.similarities, 0.0)
        np.testing.assert_array_equal(result.neighbors[:, 0], [0, 1])

    def test_disjoint_query_scores_zero(self, exact_index, config):
        query = ExpressionView(feature_ids=("x1", "x2"), values=np.ones((2, 3)))
        result = search([exact_index], query, w=1, config=config)
        np.testing.assert_array_equal(result.similarities, 0.0)

    def test_multi_reference_matches_manual_merge(self, exact_index, distinct_reference,
                                                   second_reference, config):
        second = build_index(second_reference, n_chunks=2, n_clusters=2, config=config)
        query = angle_view([12, 44, 61, 88, 30], [70, 15, 40, 5, 50])
        w = 3

        combined = search([exact_index, second], query, w=w, config=config)
        singles = [search([index], query, w=w, config=config) for index in (exact_index, second)]

        for q in range(query.n_samples):
            candidates = []
            for dataset, single in enumerate(singles):
                for rank in range(w):
                    candidates.append((-float(single.similarities[rank, q]), dataset,
                                       int(single.neighbors[rank, q])))
            expected = sorted(candidates)[:w]
            np.testing.assert_array_equal(combined.datasets[:, q], [e[1] for e in expected])
            np.testing.assert_array_equal(combined.neighbors[:, q], [e[2] for e in expected])
            np.testing.assert_allclose(combined.similarities[:, q], [-e[0] for e in expected])

    def test_tie_across_datasets_prefers_first(self, exact_index, distinct_reference, config):
        result = search([exact_index, exact_index], distinct_reference, w=2, config=config)

        for q in range(6):
            np.testing.assert_array_equal(result.datasets[:, q], [0, 1])
            np.testing.assert_array_equal(result.neighbors[:, q], [q, q])

    def test_w_may_exceed_a_single_reference(self, exact_index, second_reference, config):
        second = build_index(second_reference, n_chunks=2, n_clusters=2, config=config)
        query = angle_view([30], [30])
        result = search([exact_index, second], query, w=10, config=config)

        assert result.w == 10
        assert np.all(result.neighbors >= 0)
        assert sorted(result.datasets[:, 0].tolist()) == [0] * 6 + [1] * 4

    def test_batches_match_single_pass(self, grouped_index, distinct_reference, config):
        config["search"]["query_batch_size"] = 1
        batched = search([grouped_index], distinct_reference, w=2, config=config)
        config["search"]["query_batch_size"] = 100
        single = search([grouped_index], distinct_reference, w=2, config=config)

        np.testing.assert_array_equal(batched.neighbors, single.neighbors)
        np.testing.assert_allclose(batched.similarities, single.similarities, atol=1e-6)

    @pytest.mark.parametrize("w", [0, -2, 7])
    def test_invalid_w(self, exact_index, distinct_reference, config, w):
        with pytest.raises(ConfigurationError):
            search([exact_index], distinct_reference, w=w, config=config)

    def test_no_indexes(self, distinct_reference, config):
        with pytest.raises(ConfigurationError):
            search([], distinct_reference, w=1, config=config)

    def test_query_must_be_expression_view(self, exact_index, config):
        with pytest.raises(TypeError):
            search([exact_index], np.ones((4, 2)), w=1, config=config)

    def test_query_label_count_mismatch(self):
        with pytest.raises(DimensionMismatch):
            angle_view([10, 20], [30, 40], labels=("A",))


class TestSearchResult:

    def test_to_dataframe(self, grouped_index, grouped_reference, config):
        result = search([grouped_index], grouped_reference, w=2, config=config)
        frame = result.to_dataframe()

        assert list(frame.columns) == ["query", "rank", "dataset", "neighbor", "similarity"]
        assert len(frame) == 12
        first = frame[frame["query"] == "cell0"]
        assert first["rank"].tolist() == [1, 2]
        assert first["neighbor"].tolist() == result.neighbors[:, 0].tolist()


class TestPQSearcher:

    def test_search_by_index_name(self, grouped_index, grouped_reference, config, tmp_path):
        PQBuilder(str(tmp_path), config).save_index(grouped_index, "grouped_m2_k2")
        searcher = PQSearcher(str(tmp_path), config)

        result = searcher.search(["grouped_m2_k2"], grouped_reference, w=1)
        direct = searcher.search([grouped_index], grouped_reference, w=1)

        np.testing.assert_array_equal(result.neighbors, direct.neighbors)
        assert searcher.get_loaded_indexes() == ["grouped_m2_k2"]
        assert searcher.load_index("grouped_m2_k2") is searcher.loaded_indexes["grouped_m2_k2"]

        searcher.unload_index("grouped_m2_k2")
        assert searcher.get_loaded_indexes() == []

    def test_default_w_from_config(self, grouped_index, grouped_reference, config):
        config["search"]["w"] = 2
        result = PQSearcher(config=config).search([grouped_index], grouped_reference)
        assert result.w == 2

    def test_missing_index(self, grouped_reference, config, tmp_path):
        searcher = PQSearcher(str(tmp_path), config)
        with pytest.raises(FileNotFoundError):
            searcher.search(["absent"], grouped_reference, w=1)
