"""
PQ Searcher Module

Handles feature alignment between queries and indexes and approximate
top-w cosine search across one or more reference indexes
"""

import os
import logging
import time
import numpy as np
import pandas as pd
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Sequence, Tuple, Union

from .data_manager import ExpressionView
from .errors import ConfigurationError
from .index import ReferenceIndex, index_exists, load_index
from .utils import format_time, load_config


@dataclass(frozen=True, eq=False)
class AlignedChunk:
    """Rows of a centroid block and of the query sharing the same features,
    both ordered by feature id"""

    centroid_rows: np.ndarray
    query_rows: np.ndarray

    @property
    def is_empty(self) -> bool:
        return self.query_rows.size == 0


EMPTY_CHUNK = AlignedChunk(np.empty(0, dtype=np.int64), np.empty(0, dtype=np.int64))


class FeatureAligner:
    """Aligns the query's features with each chunk of an index"""

    def __init__(self, query: ExpressionView):
        self.positions = query.feature_positions

    def align(self, index: ReferenceIndex, chunk: int) -> AlignedChunk:
        sorted_features, block_rows = index.sorted_chunk_features[chunk]
        keep = [i for i, feature in enumerate(sorted_features) if feature in self.positions]
        if not keep:
            return EMPTY_CHUNK
        return AlignedChunk(
            centroid_rows=block_rows[keep],
            query_rows=np.array([self.positions[sorted_features[i]] for i in keep], dtype=np.int64),
        )

    def align_index(self, index: ReferenceIndex) -> List[AlignedChunk]:
        return [self.align(index, m) for m in range(index.n_chunks)]


@dataclass(eq=False)
class SearchResult:
    """
    Top-w neighbours of every query sample

    Each matrix is w x Q; column j belongs to query sample j and is sorted by
    descending similarity.
    """

    neighbors: np.ndarray
    datasets: np.ndarray
    similarities: np.ndarray
    query_names: Tuple[str, ...]

    @property
    def w(self) -> int:
        return self.neighbors.shape[0]

    @property
    def n_queries(self) -> int:
        return self.neighbors.shape[1]

    def to_dataframe(self) -> pd.DataFrame:
        """Long format: one row per (query, rank)"""
        ranks, queries = np.indices(self.neighbors.shape)
        return pd.DataFrame({
            "query": np.asarray(self.query_names, dtype=object)[queries.ravel()],
            "rank": ranks.ravel() + 1,
            "dataset": self.datasets.ravel(),
            "neighbor": self.neighbors.ravel(),
            "similarity": self.similarities.ravel(),
        }).sort_values(["query", "rank"], kind="stable", ignore_index=True)


def score_index(index: ReferenceIndex, aligned: Sequence[AlignedChunk],
                query_block: np.ndarray) -> np.ndarray:
    """Approximate cosine similarity of each query column to every reference sample

    Sums, over chunks, the dot product between the query's aligned sub-vector
    and the centroid its reference sample was assigned to, then divides by
    the query norm over aligned features times sqrt(#contributing chunks).
    Returns a (queries x reference samples) matrix.
    """
    n_queries = query_block.shape[1]
    scores = np.zeros((n_queries, index.n_samples), dtype=np.float32)
    sq_norm = np.zeros(n_queries, dtype=np.float32)
    n_used = 0

    for m, chunk in enumerate(aligned):
        if chunk.is_empty:
            continue
        sub_query = query_block[chunk.query_rows, :]
        centroids = index.subcentroids[m][chunk.centroid_rows, :]
        sq_norm += np.einsum("ij,ij->j", sub_query, sub_query)
        table = sub_query.T @ centroids
        scores += table[:, index.subclusters[m]]
        n_used += 1

    denom = np.sqrt(sq_norm * n_used)
    valid = denom > 0
    scores[valid] /= denom[valid, None]
    scores[~valid] = 0.0
    np.clip(scores, -1.0, 1.0, out=scores)
    return scores


def select_top(scores: np.ndarray, w: int) -> Tuple[np.ndarray, np.ndarray]:
    """Best min(w, N) reference samples per query row, ties to the lower sample index"""
    w_eff = min(w, scores.shape[1])
    # stable: equal scores stay in sample order
    top = np.argsort(-scores, axis=1, kind="stable")[:, :w_eff]
    return np.take_along_axis(scores, top, axis=1), top


def merge_top(best: Tuple[np.ndarray, np.ndarray, np.ndarray],
              new_scores: np.ndarray, new_neighbors: np.ndarray,
              dataset: int, w: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Merge one dataset's candidates into the running top-w

    The running entries come first in a stable sort, so on equal similarity
    earlier datasets keep their place.
    """
    best_scores, best_neighbors, best_datasets = best
    scores = np.concatenate([best_scores, new_scores], axis=1)
    neighbors = np.concatenate([best_neighbors, new_neighbors], axis=1)
    datasets = np.concatenate([best_datasets, np.full_like(new_neighbors, dataset)], axis=1)
    order = np.argsort(-scores, axis=1, kind="stable")[:, :w]
    return (np.take_along_axis(scores, order, axis=1),
            np.take_along_axis(neighbors, order, axis=1),
            np.take_along_axis(datasets, order, axis=1))


def empty_top(n_queries: int, w: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    return (np.full((n_queries, w), -np.inf, dtype=np.float32),
            np.full((n_queries, w), -1, dtype=np.int64),
            np.full((n_queries, w), -1, dtype=np.int64))


class PQSearcher:
    """PQ searcher for loading indexes and executing multi-reference search"""

    def __init__(self, indexes_dir: str = "./indexes", config: Optional[Dict[str, Any]] = None):
        """Initialize PQ searcher"""
        self.logger = logging.getLogger(__name__)
        self.indexes_dir = indexes_dir
        search_config = (config or load_config())["search"]
        self.w = search_config["w"]
        self.query_batch_size = search_config["query_batch_size"]
        self.n_jobs = search_config["n_jobs"]
        self.loaded_indexes: Dict[str, ReferenceIndex] = {}

    def load_index(self, index_name: str) -> ReferenceIndex:
        """Load index into memory, reusing the cached copy"""
        if index_name in self.loaded_indexes:
            self.logger.debug(f"Index already in memory: {index_name}")
            return self.loaded_indexes[index_name]

        index_path = os.path.join(self.indexes_dir, index_name)
        if not index_exists(index_path):
            raise FileNotFoundError(f"Index files not found: {index_path}")

        self.logger.info(f"Loading index: {index_name}")
        index = load_index(index_path)
        self.loaded_indexes[index_name] = index
        self.logger.info(f"  Reference samples: {index.n_samples}")
        self.logger.info(f"  M={index.n_chunks}, K={index.n_clusters}, "
                         f"failed chunks={len(index.failed_chunks)}")
        return index

    def search(self, indexes: Sequence[Union[ReferenceIndex, str]], query: ExpressionView,
               w: Optional[int] = None) -> SearchResult:
        """Find the w most similar reference samples for every query sample"""
        if not isinstance(query, ExpressionView):
            raise TypeError(f"Query must be an ExpressionView, got {type(query).__name__}")
        indexes = [self.load_index(i) if isinstance(i, str) else i for i in indexes]
        if not indexes:
            raise ConfigurationError("At least one reference index is required")

        w = self.w if w is None else w
        total_samples = sum(index.n_samples for index in indexes)
        if w <= 0:
            raise ConfigurationError(f"Invalid w value: {w}. w must be positive")
        if w > total_samples:
            raise ConfigurationError(
                f"Invalid w value: {w}. w exceeds the reference sample count ({total_samples})")
        for index in indexes:
            index.validate()

        aligner = FeatureAligner(query)
        alignments = []
        for dataset, index in enumerate(indexes):
            aligned = aligner.align_index(index)
            mismatched = sum(1 for chunk in aligned if chunk.is_empty)
            if mismatched == index.n_chunks:
                self.logger.warning(f"Reference dataset {dataset + 1} shares no features with the query")
            elif mismatched:
                self.logger.debug(f"Reference dataset {dataset + 1}: {mismatched}/{index.n_chunks} "
                                  f"chunks without shared features")
            alignments.append(aligned)

        n_queries = query.n_samples
        self.logger.info(f"Executing search: {n_queries} queries, {len(indexes)} reference datasets, w={w}")
        search_start = time.time()

        neighbors = np.full((w, n_queries), -1, dtype=np.int64)
        datasets = np.full((w, n_queries), -1, dtype=np.int64)
        similarities = np.zeros((w, n_queries), dtype=np.float32)

        def _candidates(dataset: int, block: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
            scores = score_index(indexes[dataset], alignments[dataset], block)
            return select_top(scores, w)

        with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
            for start in range(0, n_queries, self.query_batch_size):
                stop = min(start + self.query_batch_size, n_queries)
                block = query.values[:, start:stop]
                best = empty_top(stop - start, w)
                candidates = executor.map(lambda d: _candidates(d, block), range(len(indexes)))
                for dataset, (scores, found) in enumerate(candidates):
                    best = merge_top(best, scores, found, dataset, w)
                similarities[:, start:stop] = best[0].T
                neighbors[:, start:stop] = best[1].T
                datasets[:, start:stop] = best[2].T

        search_time = time.time() - search_start
        qps = n_queries / search_time if search_time > 0 else float('inf')
        self.logger.info(f"Search completed, time: {format_time(search_time)}, QPS: {qps:.2f}")

        return SearchResult(neighbors=neighbors, datasets=datasets,
                            similarities=similarities, query_names=query.names())

    def get_loaded_indexes(self) -> List[str]:
        """Get loaded index list"""
        return list(self.loaded_indexes.keys())

    def unload_index(self, index_name: str) -> None:
        """Unload index from memory"""
        if index_name in self.loaded_indexes:
            del self.loaded_indexes[index_name]
            self.logger.info(f"Index unloaded: {index_name}")
        else:
            self.logger.warning(f"Index not in memory: {index_name}")

    def clear_cache(self) -> None:
        """Clear index cache"""
        self.loaded_indexes.clear()
        self.logger.info("Index cache cleared")


def search(indexes: Sequence[ReferenceIndex], query: ExpressionView, w: int = 3,
           config: Optional[Dict[str, Any]] = None) -> SearchResult:
    """Top-w approximate cosine neighbours of every query sample across indexes"""
    return PQSearcher(config=config).search(indexes, query, w)
