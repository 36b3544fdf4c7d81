"""
pqcell: Product Quantization Cell Classification

Approximate nearest-neighbour label assignment for expression profiles:
a cosine product-quantization index per reference dataset, top-w search
across several references and consensus labelling of query samples.

References:
    - Jegou, H., et al. (2011). Product quantization for nearest neighbor search. IEEE TPAMI.
    - Kiselev, V. Y., et al. (2018). scmap: projection of single-cell RNA-seq data across data sets. Nature Methods.
"""

# Core algorithm components
from .data_manager import DataManager, ExpressionView
from .index import ChunkStatus, ReferenceIndex, load_index, save_index
from .pq_builder import PQBuilder, build_index, partition_chunks, quantize_chunk
from .pq_searcher import FeatureAligner, PQSearcher, SearchResult, search
from .classifier import Classifier, UNASSIGNED, annotate, classify
from .evaluator import Evaluator
from .errors import (
    PQCellError, ConfigurationError, DimensionMismatch, ChunkClusteringFailure
)

# Utility functions
from .utils import (
    load_config, setup_logging, normalize_columns, create_index_name,
    ensure_dir, validate_parameters, print_system_info, get_timestamp, format_time
)

__version__ = "1.0.0"

__all__ = [
    "DataManager",
    "ExpressionView",
    "ReferenceIndex",
    "ChunkStatus",
    "PQBuilder",
    "PQSearcher",
    "FeatureAligner",
    "SearchResult",
    "Classifier",
    "Evaluator",
    "UNASSIGNED",
    "build_index",
    "search",
    "classify",
    "annotate",
    "partition_chunks",
    "quantize_chunk",
    "load_index",
    "save_index",
    "normalize_columns",
    "PQCellError",
    "ConfigurationError",
    "DimensionMismatch",
    "ChunkClusteringFailure",
    "load_config",
    "setup_logging",
]
