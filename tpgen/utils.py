"""Utility functions for the training position generator."""

import hashlib
from pathlib import Path

import numpy as np


def stable_name_hash(path: str) -> int:
    """Hash a file name deterministically (independent of PYTHONHASHSEED).

    Args:
        path: File path; only the base name is hashed

    Returns:
        Unsigned 64-bit hash
    """
    digest = hashlib.sha1(Path(path).name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "little")


def normalize(probabilities: np.ndarray) -> np.ndarray:
    """Scale non-negative weights to sum to one.

    Falls back to a uniform distribution when all weights are zero.
    """
    probabilities = np.maximum(np.asarray(probabilities, dtype=np.float64), 0.0)
    total = probabilities.sum()
    if total > 0:
        return probabilities / total
    return np.full(len(probabilities), 1.0 / len(probabilities))


def blend_in_uniform(probabilities: np.ndarray, fraction_uniform: float) -> np.ndarray:
    """Blend a uniform distribution into a probability vector.

    Args:
        probabilities: Distribution over N outcomes
        fraction_uniform: Weight given to the uniform component

    Returns:
        (1 - fraction_uniform) * probabilities + fraction_uniform / N
    """
    probabilities = np.asarray(probabilities, dtype=np.float64)
    uniform_weight = 1.0 / len(probabilities)
    return (1.0 - fraction_uniform) * probabilities + fraction_uniform * uniform_weight


def clamp_deviations(q: float, min_deviation: float, max_deviation: float):
    """Clamp forward deviation bounds so q +/- deviation stays in [-1, 1].

    Returns:
        Tuple of (min_deviation, max_deviation)
    """
    q = min(1.0, max(-1.0, q))
    max_deviation = min(max(0.0, max_deviation), 1.0 - q)
    min_deviation = min(max(0.0, min_deviation), q + 1.0)
    return min_deviation, max_deviation
