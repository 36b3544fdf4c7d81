"""
Classifier Module

Assigns reference labels to query samples from their top-w neighbours
"""

import logging
import numpy as np
from typing import Dict, Any, List, Optional, Sequence

from .data_manager import ExpressionView
from .errors import ConfigurationError, DimensionMismatch
from .index import ReferenceIndex
from .pq_builder import PQBuilder
from .pq_searcher import PQSearcher, SearchResult
from .utils import load_config

UNASSIGNED = "unassigned"


def _label_table(reference_labels: Sequence) -> List[Sequence[str]]:
    """One label sequence per searched dataset; a flat sequence means one dataset"""
    if len(reference_labels) and isinstance(reference_labels[0], str):
        return [reference_labels]
    return list(reference_labels)


class Classifier:
    """Consensus-and-threshold label assignment"""

    def __init__(self, threshold: Optional[float] = None, config: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(__name__)
        if threshold is None:
            threshold = (config or load_config())["classify"]["threshold"]
        self.threshold = float(threshold)

    def classify(self, reference_labels: Sequence, result: SearchResult) -> List[str]:
        """
        Label every query sample of a search result

        A query takes its best neighbour's label when the highest similarity
        among its w neighbours is strictly above the threshold and all w
        neighbours carry the same label; otherwise it is "unassigned".

        Args:
            reference_labels: label sequence per searched dataset, in search
                order; a flat sequence of strings for a single dataset
            result: output of PQSearcher.search

        Returns:
            One label per query sample, in query order
        """
        tables = _label_table(reference_labels)
        used = np.unique(result.datasets[result.datasets >= 0])
        if used.size and used.max() >= len(tables):
            raise ConfigurationError(
                f"Search result refers to dataset {used.max() + 1} but "
                f"{len(tables)} label sequences were given")

        labels = []
        for q in range(result.n_queries):
            neighbor_labels = []
            for rank in range(result.w):
                dataset = result.datasets[rank, q]
                neighbor = result.neighbors[rank, q]
                if dataset < 0:
                    break
                if neighbor >= len(tables[dataset]):
                    raise DimensionMismatch(
                        f"Neighbour {neighbor} outside the {len(tables[dataset])} labels "
                        f"of dataset {dataset + 1}")
                neighbor_labels.append(str(tables[dataset][neighbor]))

            complete = len(neighbor_labels) == result.w
            best = float(np.max(result.similarities[:, q])) if result.w else -np.inf
            if complete and best > self.threshold and len(set(neighbor_labels)) == 1:
                labels.append(neighbor_labels[0])
            else:
                labels.append(UNASSIGNED)

        n_assigned = sum(1 for label in labels if label != UNASSIGNED)
        self.logger.info(f"Assigned {n_assigned}/{len(labels)} query samples "
                         f"(threshold={self.threshold}, w={result.w})")
        return labels


def classify(reference_labels: Sequence, result: SearchResult, thres: float = 0.5) -> List[str]:
    """Consensus labels for a search result; see Classifier.classify"""
    return Classifier(threshold=thres).classify(reference_labels, result)


def annotate(reference: ExpressionView, query: ExpressionView,
             index: Optional[ReferenceIndex] = None, w: int = 3, thres: float = 0.5,
             config: Optional[Dict[str, Any]] = None) -> List[str]:
    """Label query samples against one labelled reference, building its index if needed"""
    if reference.sample_labels is None:
        raise ConfigurationError("Reference samples carry no labels")
    if index is None:
        index = PQBuilder(config=config).build_index(reference)
    result = PQSearcher(config=config).search([index], query, w)
    return Classifier(threshold=thres).classify(reference.sample_labels, result)
