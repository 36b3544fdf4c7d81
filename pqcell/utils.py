"""
Utility Functions Module

Contains common utility functions for configuration loading, logging setup,
file management, vector normalization, etc.
"""

import os
import copy
import yaml
import logging
import json
import datetime
import numpy as np
import faiss
import psutil
from pathlib import Path
from typing import Dict, Any, Optional, Union

from .errors import ConfigurationError


DEFAULT_CONFIG: Dict[str, Any] = {
    "index": {
        "n_chunks": 100,
        "n_clusters": None,
        "max_iter": 50,
        "seed": 1234,
        "n_jobs": None,
        "show_progress": False,
    },
    "search": {
        "w": 3,
        "query_batch_size": 1024,
        "n_jobs": None,
    },
    "classify": {
        "threshold": 0.5,
    },
    "paths": {
        "indexes_dir": "./indexes",
        "results_dir": "./results",
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}


def _merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_dicts(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML configuration file merged over the defaults"""
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Config file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Config file format error: {e}")
    if not isinstance(config, dict):
        raise ValueError(f"Config file format error: expected a mapping in {config_path}")
    return _merge_dicts(DEFAULT_CONFIG, config)


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Setup logging configuration"""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    handlers = [logging.StreamHandler()]
    if log_file:
        ensure_dir(os.path.dirname(log_file))
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format=log_format,
        handlers=handlers
    )


def ensure_dir(dir_path: Union[str, Path]) -> None:
    """Ensure directory exists, create if not"""
    if dir_path:
        Path(dir_path).mkdir(parents=True, exist_ok=True)


def create_index_name(dataset: str, n_chunks: int, n_clusters: int) -> str:
    """Create index name string"""
    return f"{dataset}_m{n_chunks}_k{n_clusters}"


def save_json(data: Dict[str, Any], filepath: str) -> None:
    """Save data to JSON file"""
    ensure_dir(os.path.dirname(filepath))
    with open(filepath, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)


def load_json(filepath: str) -> Dict[str, Any]:
    """Load JSON file"""
    with open(filepath, 'r', encoding='utf-8') as f:
        return json.load(f)


def normalize_columns(matrix: np.ndarray) -> np.ndarray:
    """L2-normalize every column; all-zero columns are returned unchanged"""
    vectors = np.array(np.asarray(matrix, dtype=np.float32).T, dtype=np.float32,
                       order="C", copy=True)
    if vectors.size:
        faiss.normalize_L2(vectors)
    return vectors.T


def get_memory_usage() -> float:
    """Get current memory usage in MB"""
    process = psutil.Process()
    return process.memory_info().rss / 1024 / 1024


def format_time(seconds: float) -> str:
    """Format time duration"""
    if seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        minutes = seconds // 60
        secs = seconds % 60
        return f"{int(minutes)}m {secs:.2f}s"
    else:
        hours = seconds // 3600
        minutes = (seconds % 3600) // 60
        secs = seconds % 60
        return f"{int(hours)}h {int(minutes)}m {secs:.2f}s"


def get_timestamp() -> str:
    """Get current timestamp string"""
    return datetime.datetime.now().strftime("%Y%m%d_%H%M%S")


def default_n_clusters(n_samples: int) -> int:
    """Clusters per chunk when none is given: floor(sqrt(#samples))"""
    return int(np.floor(np.sqrt(n_samples)))


def validate_parameters(n_features: int, n_samples: int, n_chunks: int,
                        n_clusters: int) -> None:
    """Validate build parameters against the reference shape"""
    if n_samples <= 0:
        raise ConfigurationError("Reference has no samples")
    if n_features <= 0:
        raise ConfigurationError("Reference has no features")
    if n_chunks <= 0:
        raise ConfigurationError(f"Invalid M value: {n_chunks}. M must be positive")
    if n_chunks > n_features:
        raise ConfigurationError(
            f"Invalid M value: {n_chunks}. M exceeds the feature count ({n_features})")
    if n_clusters <= 0:
        raise ConfigurationError(f"Invalid K value: {n_clusters}. K must be positive")
    if n_clusters > n_samples:
        raise ConfigurationError(
            f"Invalid K value: {n_clusters}. K exceeds the reference sample count ({n_samples})")


def print_system_info() -> None:
    """Print system information"""
    logger = logging.getLogger(__name__)

    if hasattr(faiss, '__version__'):
        logger.info(f"FAISS version: {faiss.__version__}")
    else:
        logger.info("FAISS installed (version info unavailable)")

    logger.info(f"NumPy version: {np.__version__}")
    logger.info(f"Memory usage: {get_memory_usage():.2f} MB")
    logger.info(f"CPU count: {os.cpu_count()}")


class ProgressTracker:
    """Progress tracker for long-running operations"""

    def __init__(self, total: int, description: str = "Processing"):
        """Initialize progress tracker"""
        self.total = total
        self.current = 0
        self.description = description
        self.start_time = datetime.datetime.now()
        self.logger = logging.getLogger(__name__)

    def update(self, step: int = 1) -> None:
        """Update progress"""
        self.current += step
        percentage = (self.current / max(1, self.total)) * 100

        elapsed = (datetime.datetime.now() - self.start_time).total_seconds()
        if self.current > 0:
            eta = elapsed * (self.total - self.current) / self.current
            eta_str = format_time(eta)
        else:
            eta_str = "Unknown"

        self.logger.info(f"{self.description}: {self.current}/{self.total} "
                         f"({percentage:.1f}%) - ETA: {eta_str}")

    def finish(self) -> None:
        """Finish progress tracking"""
        elapsed = (datetime.datetime.now() - self.start_time).total_seconds()
        self.logger.info(f"{self.description} completed, time: {format_time(elapsed)}")
