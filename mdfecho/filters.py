"""Window, block-proportional step sizes and the DC notch filter."""

from __future__ import annotations

import math

import numpy as np
from numpy.typing import ArrayLike

__all__ = ["hann_window", "initial_prop", "adjust_prop", "DcNotchFilter"]


def hann_window(size: int) -> np.ndarray:
    """Periodic Hann window ``0.5 - 0.5*cos(2*pi*i/size)`` of the given length."""
    if size < 1:
        raise ValueError(f"window size must be positive, got {size}")
    i = np.arange(size, dtype=np.float64)
    return 0.5 - 0.5 * np.cos(2.0 * math.pi * i / size)


def initial_prop(n_blocks: int) -> np.ndarray:
    """Starting per-block adaptation shares, decaying geometrically and summing to 0.8.

    The decay gives roughly a ratio of ten between the first and last block.
    """
    if n_blocks < 1:
        raise ValueError(f"number of blocks must be positive, got {n_blocks}")
    decay = math.exp(-2.4 / n_blocks)
    prop = 0.7 * decay ** np.arange(n_blocks, dtype=np.float64)
    return 0.8 * prop / prop.sum()


def adjust_prop(weights: ArrayLike, n_blocks: int) -> np.ndarray:
    """Per-block adaptation shares proportional to the filter energy in each block.

    ``weights`` holds packed filter spectra, the last axis being the spectrum
    length.  The flattened weights are read as ``(-1, n_blocks, N)``: every
    group of ``n_blocks`` consecutive spectra is one filter path.
    """
    if n_blocks < 1:
        raise ValueError(f"number of blocks must be positive, got {n_blocks}")
    w = np.asarray(weights, dtype=np.float64)
    if w.ndim < 2:
        raise ValueError("weights must hold at least one axis of spectra")
    n = w.shape[-1]
    if n == 0 or w.size % (n_blocks * n):
        raise ValueError(
            f"weights of shape {w.shape} cannot be split into {n_blocks} blocks"
        )
    paths = w.reshape(-1, n_blocks, n)
    prop = np.sqrt(1.0 + np.square(paths).sum(axis=(0, 2)))
    max_sum = max(1.0, float(prop.max()))
    prop = prop + 0.1 * max_sum
    prop_sum = 1.0 + float(prop.sum())
    return 0.99 * prop / prop_sum


class DcNotchFilter:
    """Second-order notch filter that removes the DC component of a signal."""

    def __init__(self, radius: float) -> None:
        self.radius = float(radius)
        self._den2 = self.radius**2 + 0.7 * (1.0 - self.radius) ** 2
        self._mem = [0.0, 0.0]

    def process(self, samples: ArrayLike) -> np.ndarray:
        """Filter a block of samples, carrying state over to the next call."""
        values = np.asarray(samples, dtype=np.float64)
        if values.ndim != 1:
            raise ValueError("samples must be one-dimensional")
        radius, den2 = self.radius, self._den2
        mem0, mem1 = self._mem
        out = np.empty_like(values)
        for i, vin in enumerate(values.tolist()):
            vout = mem0 + vin
            mem0 = mem1 + 2.0 * (-vin + radius * vout)
            mem1 = vin - den2 * vout
            out[i] = radius * vout
        self._mem = [mem0, mem1]
        return out

    def reset(self) -> None:
        """Clear the filter memory."""
        self._mem = [0.0, 0.0]