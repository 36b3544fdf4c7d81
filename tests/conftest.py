"""Shared fixtures: small synthetic expression matrices"""

import numpy as np
import pytest

from pqcell import ExpressionView, load_config

FEATURES = ("g1", "g2", "g3", "g4")


def angle_view(angles_a, angles_b, labels=None, names=None) -> ExpressionView:
    """Four features; chunk one holds (cos a, sin a), chunk two (cos b, sin b).

    Every sample has equal norm in both halves, so with M=2 a self-match
    without quantization error scores exactly 1.
    """
    a = np.radians(np.asarray(angles_a, dtype=float))
    b = np.radians(np.asarray(angles_b, dtype=float))
    values = np.vstack([np.cos(a), np.sin(a), np.cos(b), np.sin(b)]) * 3.0
    return ExpressionView(
        feature_ids=FEATURES,
        values=values,
        sample_names=names or tuple(f"cell{i}" for i in range(len(angles_a))),
        sample_labels=labels,
    )


@pytest.fixture
def config():
    cfg = load_config()
    cfg["index"]["n_jobs"] = 2
    cfg["search"]["n_jobs"] = 2
    cfg["search"]["query_batch_size"] = 4
    return cfg


@pytest.fixture
def distinct_reference():
    """Six samples, each distinct in both chunks"""
    return angle_view([5, 20, 35, 50, 65, 80], [80, 10, 60, 25, 45, 35],
                      labels=("A", "A", "A", "B", "B", "B"))


@pytest.fixture
def grouped_reference():
    """Six samples in two tight groups: A near 10 degrees, B near 80 degrees"""
    return angle_view([8, 10, 12, 78, 80, 82], [9, 11, 13, 77, 79, 81],
                      labels=("A", "A", "A", "B", "B", "B"))


@pytest.fixture
def second_reference():
    return angle_view([15, 40, 70, 85], [30, 55, 20, 5],
                      labels=("A", "B", "B", "A"),
                      names=("r0", "r1", "r2", "r3"))


@pytest.fixture
def random_reference():
    rng = np.random.default_rng(7)
    values = rng.gamma(2.0, 1.0, size=(23, 20))
    return ExpressionView(
        feature_ids=tuple(f"gene{i:02d}" for i in range(23)),
        values=values,
        sample_labels=tuple("AB"[i % 2] for i in range(20)),
    )
