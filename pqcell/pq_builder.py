"""
PQ Builder Module

Handles chunk partitioning, per-chunk k-means quantization, index building
and saving
"""

import os
import shutil
import logging
import time
import numpy as np
import faiss
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from itertools import product
from typing import Callable, Dict, Any, Iterable, List, Optional, Tuple
from tqdm import tqdm

from .data_manager import ExpressionView
from .errors import ChunkClusteringFailure, ConfigurationError
from .index import ChunkStatus, ReferenceIndex, index_exists, load_index, save_index
from .utils import (
    create_index_name, default_n_clusters, format_time, get_memory_usage,
    load_config, load_json, normalize_columns, validate_parameters, ProgressTracker
)

FeatureSelector = Callable[[ExpressionView], Iterable[str]]


@dataclass
class ChunkResult:
    """k-means output for one chunk"""

    centroids: np.ndarray    # chunk_size x k
    assignments: np.ndarray  # N, 0-based cluster ids


def partition_chunks(n_rows: int, n_chunks: int) -> List[Tuple[int, int]]:
    """Split rows into n_chunks contiguous equal blocks, dropping the remainder"""
    if n_chunks <= 0:
        raise ConfigurationError(f"Invalid M value: {n_chunks}. M must be positive")
    if n_chunks > n_rows:
        raise ConfigurationError(f"Invalid M value: {n_chunks}. M exceeds the feature count ({n_rows})")
    chunk_size = n_rows // n_chunks
    return [(m * chunk_size, (m + 1) * chunk_size) for m in range(n_chunks)]


def quantize_chunk(chunk: np.ndarray, n_clusters: int, max_iter: int = 50,
                   seed: int = 1234, chunk_index: int = 0) -> ChunkResult:
    """Run k-means on one chunk (features x samples) with samples as points"""
    samples = np.ascontiguousarray(chunk.T, dtype=np.float32)
    if not np.all(np.isfinite(samples)):
        raise ChunkClusteringFailure(chunk_index, "non-finite values")

    n_distinct = np.unique(samples, axis=0).shape[0]
    if n_distinct < n_clusters:
        raise ChunkClusteringFailure(
            chunk_index, f"{n_distinct} distinct samples for {n_clusters} clusters")

    dimension = samples.shape[1]
    try:
        kmeans = faiss.Kmeans(dimension, n_clusters, niter=max_iter, seed=seed, verbose=False)
        kmeans.train(samples)
        centroids = np.ascontiguousarray(kmeans.centroids, dtype=np.float32)
        assigner = faiss.IndexFlatL2(dimension)
        assigner.add(centroids)
        _, labels = assigner.search(samples, 1)
    except RuntimeError as e:
        raise ChunkClusteringFailure(chunk_index, str(e)) from e

    if not np.all(np.isfinite(centroids)):
        raise ChunkClusteringFailure(chunk_index, "non-finite centroids")

    return ChunkResult(centroids=centroids.T, assignments=labels[:, 0].astype(np.int64))


class PQBuilder:
    """PQ index builder for reference expression matrices"""

    def __init__(self, indexes_dir: str = "./indexes", config: Optional[Dict[str, Any]] = None):
        """Initialize PQ builder"""
        self.logger = logging.getLogger(__name__)
        self.indexes_dir = indexes_dir
        index_config = (config or load_config())["index"]
        self.n_chunks = index_config["n_chunks"]
        self.n_clusters = index_config["n_clusters"]
        self.max_iter = index_config["max_iter"]
        self.seed = index_config["seed"]
        self.n_jobs = index_config["n_jobs"]
        self.show_progress = index_config["show_progress"]

    def build_index(self, reference: ExpressionView, n_chunks: Optional[int] = None,
                    n_clusters: Optional[int] = None,
                    feature_selector: Optional[FeatureSelector] = None) -> ReferenceIndex:
        """Build a PQ index over the reference samples"""
        if feature_selector is not None:
            selected = set(feature_selector(reference))
            reference = reference.subset_features(selected)
            self.logger.info(f"Feature selection kept {reference.n_features} features")

        n_chunks = n_chunks if n_chunks is not None else self.n_chunks
        if n_clusters is None:
            n_clusters = self.n_clusters
        if n_clusters is None:
            n_clusters = default_n_clusters(reference.n_samples)
        validate_parameters(reference.n_features, reference.n_samples, n_chunks, n_clusters)

        ranges = partition_chunks(reference.n_features, n_chunks)
        chunk_size = ranges[0][1] - ranges[0][0]
        self.logger.info(f"Building index: {reference.n_samples} samples, "
                         f"{reference.n_features} features")
        self.logger.info(f"  M={n_chunks}, K={n_clusters}, chunk size={chunk_size}, "
                         f"dropped features={reference.n_features - n_chunks * chunk_size}")

        start_time = time.time()
        normalized = normalize_columns(reference.values)
        results = self._quantize_chunks(normalized, ranges, n_clusters)

        blocks: List[np.ndarray] = [None] * n_chunks
        features: List[Tuple[str, ...]] = [()] * n_chunks
        statuses: List[ChunkStatus] = [None] * n_chunks
        subclusters = np.zeros((n_chunks, reference.n_samples), dtype=np.int64)

        for m, (start, stop) in enumerate(ranges):
            result = results[m]
            if isinstance(result, ChunkClusteringFailure):
                blocks[m] = np.zeros((1, n_clusters), dtype=np.float32)
                statuses[m] = ChunkStatus(m, False, result.reason)
                continue
            blocks[m] = normalize_columns(result.centroids)
            features[m] = reference.feature_ids[start:stop]
            subclusters[m] = result.assignments
            statuses[m] = ChunkStatus(m, True)

        failed = [s.chunk for s in statuses if not s.ok]
        if len(failed) == n_chunks:
            raise ConfigurationError(
                f"Clustering failed for all {n_chunks} chunks; the index would carry no information")
        if failed:
            self.logger.warning(f"{len(failed)}/{n_chunks} chunks failed clustering "
                                f"and contribute nothing: {failed}")

        index = ReferenceIndex(
            subcentroids=tuple(blocks),
            chunk_features=tuple(features),
            subclusters=subclusters,
            n_clusters=n_clusters,
            chunk_status=tuple(statuses),
            sample_names=reference.sample_names,
            sample_labels=reference.sample_labels,
        )
        self.logger.info(f"Index built, time: {format_time(time.time() - start_time)}")
        return index

    def _quantize_chunks(self, normalized: np.ndarray, ranges: List[Tuple[int, int]],
                         n_clusters: int) -> List[Any]:
        """Quantize every chunk concurrently; a failed chunk yields its exception"""
        results: List[Any] = [None] * len(ranges)

        def _run(m: int) -> ChunkResult:
            start, stop = ranges[m]
            return quantize_chunk(normalized[start:stop, :], n_clusters,
                                  max_iter=self.max_iter, seed=self.seed + m, chunk_index=m)

        with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
            futures = {executor.submit(_run, m): m for m in range(len(ranges))}
            for future in tqdm(as_completed(futures), total=len(futures),
                               desc="Quantizing chunks", disable=not self.show_progress):
                m = futures[future]
                try:
                    results[m] = future.result()
                except ChunkClusteringFailure as e:
                    self.logger.warning(str(e))
                    results[m] = e
        return results

    def build_indexes(self, reference: ExpressionView, dataset_name: str,
                      m_values: List[int], k_values: List[Optional[int]],
                      feature_selector: Optional[FeatureSelector] = None) -> List[Dict[str, Any]]:
        """Build and save one index per (M, K) combination"""
        param_combinations = list(product(m_values, k_values))
        total_combinations = len(param_combinations)
        self.logger.info(f"Starting index grid build for dataset: {dataset_name}")
        self.logger.info(f"M values: {m_values}")
        self.logger.info(f"K values: {k_values}")
        self.logger.info(f"Total {total_combinations} parameter combinations")

        results = []
        tracker = ProgressTracker(total_combinations, "Building indexes")

        for m, k in param_combinations:
            k_label = k if k is not None else default_n_clusters(reference.n_samples)
            index_name = create_index_name(dataset_name, m, k_label)

            if index_exists(os.path.join(self.indexes_dir, index_name)):
                self.logger.info(f"Index exists, skipping: {index_name}")
                results.append({"index_name": index_name, "m": m, "k": k_label,
                                "status": "Exists", "build_time": 0.0})
                tracker.update()
                continue

            try:
                start_time = time.time()
                index = self.build_index(reference, n_chunks=m, n_clusters=k,
                                         feature_selector=feature_selector)
                build_time = time.time() - start_time
                self.save_index(index, index_name, {
                    "dataset": dataset_name,
                    "build_time": build_time,
                    "memory_usage_mb": get_memory_usage(),
                })
                results.append({"index_name": index_name, "m": m, "k": index.n_clusters,
                                "status": "Success", "build_time": build_time,
                                "failed_chunks": len(index.failed_chunks)})
            except ConfigurationError as e:
                self.logger.error(f"Failed to build index (m={m}, k={k_label}): {e}")
                results.append({"index_name": index_name, "m": m, "k": k_label,
                                "status": f"Failed: {e}", "build_time": 0.0})
            tracker.update()

        tracker.finish()
        successful = len([r for r in results if r["status"] == "Success"])
        self.logger.info(f"Grid build completed, successfully built {successful} indexes")
        return results

    def save_index(self, index: ReferenceIndex, index_name: str,
                   extra_metadata: Optional[Dict[str, Any]] = None) -> str:
        """Save index and metadata under indexes_dir/index_name"""
        index_path = os.path.join(self.indexes_dir, index_name)
        self.logger.info(f"Saving index to: {index_path}")
        save_index(index, index_path, extra_metadata)
        return index_path

    def load_index(self, index_name: str) -> ReferenceIndex:
        index_path = os.path.join(self.indexes_dir, index_name)
        if not index_exists(index_path):
            raise FileNotFoundError(f"Index files not found: {index_path}")
        return load_index(index_path)

    def list_built_indexes(self) -> List[Dict[str, Any]]:
        """List all saved indexes with their metadata"""
        indexes = []
        if not os.path.exists(self.indexes_dir):
            return indexes

        for item_name in sorted(os.listdir(self.indexes_dir)):
            item_path = os.path.join(self.indexes_dir, item_name)
            if not os.path.isdir(item_path) or not index_exists(item_path):
                continue
            metadata = load_json(os.path.join(item_path, "metadata.json"))
            indexes.append({
                "index_name": item_name,
                "path": item_path,
                "n_chunks": metadata.get("n_chunks"),
                "n_clusters": metadata.get("n_clusters"),
                "n_samples": metadata.get("n_samples"),
                "failed_chunks": metadata.get("failed_chunks", []),
                "dataset": metadata.get("dataset"),
                "index_size_mb": metadata.get("index_size_mb"),
            })
        return indexes

    def delete_index(self, index_name: str) -> bool:
        """Delete a saved index"""
        index_path = os.path.join(self.indexes_dir, index_name)
        if not os.path.exists(index_path):
            self.logger.warning(f"Index does not exist: {index_name}")
            return False
        shutil.rmtree(index_path)
        self.logger.info(f"Index deleted: {index_name}")
        return True

    def get_build_summary(self, results: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Get build summary"""
        total_indexes = len(results)
        successful = len([r for r in results if r["status"] == "Success"])
        existing = len([r for r in results if r["status"] == "Exists"])
        failed = total_indexes - successful - existing
        total_build_time = sum(r.get("build_time", 0) for r in results)

        return {
            "total_indexes": total_indexes,
            "successful_indexes": successful,
            "failed_indexes": failed,
            "existing_indexes": existing,
            "total_build_time": total_build_time,
            "average_build_time": total_build_time / max(1, successful),
            "success_rate": successful / max(1, total_indexes - existing) * 100,
        }


def build_index(reference: ExpressionView, n_chunks: int = 100, n_clusters: Optional[int] = None,
                feature_selector: Optional[FeatureSelector] = None,
                config: Optional[Dict[str, Any]] = None) -> ReferenceIndex:
    """Build a ReferenceIndex with M=n_chunks and k=n_clusters (default floor(sqrt(N)))"""
    return PQBuilder(config=config).build_index(
        reference, n_chunks=n_chunks, n_clusters=n_clusters, feature_selector=feature_selector)
