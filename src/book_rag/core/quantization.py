"""Int8 quantization of embedding vectors for the persistent cache."""

from collections.abc import Sequence

import numpy as np

INT8_MAX = 127


def quantize(vector: Sequence[float] | np.ndarray) -> tuple[np.ndarray, float]:
    """Quantize a float vector to int8 with a symmetric per-vector scale.

    Args:
        vector: Float embedding.

    Returns:
        tuple[np.ndarray, float]: (int8 values, scale) where value * scale approximates the input.
    """
    values = np.asarray(vector, dtype=np.float32)
    peak = float(np.max(np.abs(values))) if values.size else 0.0
    if peak == 0.0:
        return np.zeros(values.shape, dtype=np.int8), 1.0

    scale = peak / INT8_MAX
    quantized = np.clip(np.rint(values / scale), -INT8_MAX, INT8_MAX).astype(np.int8)
    return quantized, scale


def dequantize(values: np.ndarray, scale: float) -> np.ndarray:
    """Re-hydrate int8 values into a float32 vector of the same length."""
    return values.astype(np.float32) * np.float32(scale)
