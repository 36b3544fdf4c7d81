"""
Reference Index Module

The immutable product-quantization index produced by PQBuilder and consumed
by PQSearcher, plus its on-disk layout
"""

import os
import logging
import numpy as np
from dataclasses import dataclass
from functools import cached_property
from typing import Dict, Any, List, Optional, Tuple

from .errors import DimensionMismatch
from .utils import ensure_dir, save_json, load_json

logger = logging.getLogger(__name__)

INDEX_FILE = "index.npz"
METADATA_FILE = "metadata.json"


@dataclass(frozen=True)
class ChunkStatus:
    """Outcome of quantizing one chunk"""

    chunk: int
    ok: bool
    message: str = ""


@dataclass(frozen=True, eq=False)
class ReferenceIndex:
    """
    PQ index over one reference dataset

    Attributes:
        subcentroids: one (chunk_size x k) block per chunk, unit-norm columns.
            A failed chunk is a (1 x k) zero block.
        chunk_features: feature ids labelling the rows of each block,
            empty for a failed chunk
        subclusters: (M x N) cluster id of every reference sample per chunk,
            0-based and below k
        n_clusters: k
        chunk_status: per-chunk build outcome
    """

    subcentroids: Tuple[np.ndarray, ...]
    chunk_features: Tuple[Tuple[str, ...], ...]
    subclusters: np.ndarray
    n_clusters: int
    chunk_status: Tuple[ChunkStatus, ...] = ()
    sample_names: Optional[Tuple[str, ...]] = None
    sample_labels: Optional[Tuple[str, ...]] = None

    def __post_init__(self):
        blocks = []
        for block in self.subcentroids:
            block = np.array(block, dtype=np.float32)
            block.flags.writeable = False
            blocks.append(block)
        subclusters = np.array(self.subclusters, dtype=np.int64)
        subclusters.flags.writeable = False
        chunk_features = tuple(tuple(str(f) for f in features) for features in self.chunk_features)

        object.__setattr__(self, "subcentroids", tuple(blocks))
        object.__setattr__(self, "subclusters", subclusters)
        object.__setattr__(self, "chunk_features", chunk_features)
        object.__setattr__(self, "n_clusters", int(self.n_clusters))
        if not self.chunk_status:
            object.__setattr__(self, "chunk_status", tuple(
                ChunkStatus(m, bool(features)) for m, features in enumerate(chunk_features)))
        for field_name in ("sample_names", "sample_labels"):
            values = getattr(self, field_name)
            if values is not None:
                object.__setattr__(self, field_name, tuple(str(v) for v in values))

        self.validate()

    @property
    def n_chunks(self) -> int:
        return len(self.subcentroids)

    @property
    def n_samples(self) -> int:
        return self.subclusters.shape[1]

    @property
    def failed_chunks(self) -> List[int]:
        return [status.chunk for status in self.chunk_status if not status.ok]

    @property
    def feature_ids(self) -> Tuple[str, ...]:
        return tuple(f for features in self.chunk_features for f in features)

    def validate(self) -> None:
        """Check that blocks, row labels and cluster ids agree"""
        m, k = self.n_chunks, self.n_clusters
        if len(self.chunk_features) != m:
            raise DimensionMismatch(
                f"{len(self.chunk_features)} feature label sets for {m} centroid blocks")
        if len(self.chunk_status) != m:
            raise DimensionMismatch(f"{len(self.chunk_status)} chunk statuses for {m} chunks")
        if self.subclusters.ndim != 2 or self.subclusters.shape[0] != m:
            raise DimensionMismatch(
                f"Subclusters shape {self.subclusters.shape} does not match {m} chunks")
        for chunk, (block, features) in enumerate(zip(self.subcentroids, self.chunk_features)):
            expected_rows = len(features) if features else 1
            if block.shape != (expected_rows, k):
                raise DimensionMismatch(
                    f"Chunk {chunk}: centroid block shape {block.shape}, "
                    f"expected ({expected_rows}, {k})")
        if self.subclusters.size and (self.subclusters.min() < 0 or self.subclusters.max() >= k):
            raise DimensionMismatch(f"Cluster ids must lie in [0, {k})")
        for field_name in ("sample_names", "sample_labels"):
            values = getattr(self, field_name)
            if values is not None and len(values) != self.n_samples:
                raise DimensionMismatch(
                    f"{len(values)} {field_name} for {self.n_samples} reference samples")

    @cached_property
    def sorted_chunk_features(self) -> Tuple[Tuple[Tuple[str, ...], np.ndarray], ...]:
        """Per chunk: feature ids in lexicographic order and their block rows"""
        result = []
        for features in self.chunk_features:
            order = sorted(range(len(features)), key=features.__getitem__)
            result.append((tuple(features[i] for i in order), np.array(order, dtype=np.int64)))
        return tuple(result)

    def metadata(self) -> Dict[str, Any]:
        return {
            "n_chunks": self.n_chunks,
            "n_clusters": self.n_clusters,
            "n_samples": self.n_samples,
            "chunk_features": [list(features) for features in self.chunk_features],
            "chunk_status": [
                {"chunk": s.chunk, "ok": s.ok, "message": s.message} for s in self.chunk_status
            ],
            "failed_chunks": self.failed_chunks,
            "sample_names": None if self.sample_names is None else list(self.sample_names),
            "sample_labels": None if self.sample_labels is None else list(self.sample_labels),
        }


def save_index(index: ReferenceIndex, index_dir: str,
               extra_metadata: Optional[Dict[str, Any]] = None) -> None:
    """Write index arrays and metadata into index_dir"""
    ensure_dir(index_dir)
    arrays = {"subclusters": index.subclusters}
    for chunk, block in enumerate(index.subcentroids):
        arrays[f"centroids_{chunk}"] = block
    index_path = os.path.join(index_dir, INDEX_FILE)
    np.savez_compressed(index_path, **arrays)

    metadata = index.metadata()
    if extra_metadata:
        metadata.update(extra_metadata)
    metadata["index_size_mb"] = os.path.getsize(index_path) / 1024 / 1024
    save_json(metadata, os.path.join(index_dir, METADATA_FILE))
    logger.info(f"Index saved: {index_dir}")


def load_index(index_dir: str) -> ReferenceIndex:
    """Read an index written by save_index"""
    metadata = load_json(os.path.join(index_dir, METADATA_FILE))
    with np.load(os.path.join(index_dir, INDEX_FILE), allow_pickle=False) as data:
        blocks = tuple(data[f"centroids_{chunk}"] for chunk in range(metadata["n_chunks"]))
        subclusters = data["subclusters"]
    return ReferenceIndex(
        subcentroids=blocks,
        chunk_features=tuple(tuple(features) for features in metadata["chunk_features"]),
        subclusters=subclusters,
        n_clusters=metadata["n_clusters"],
        chunk_status=tuple(ChunkStatus(s["chunk"], s["ok"], s.get("message", ""))
                           for s in metadata["chunk_status"]),
        sample_names=metadata.get("sample_names"),
        sample_labels=metadata.get("sample_labels"),
    )


def index_exists(index_dir: str) -> bool:
    """Check if an index is stored in index_dir"""
    return (os.path.exists(os.path.join(index_dir, INDEX_FILE))
            and os.path.exists(os.path.join(index_dir, METADATA_FILE)))
