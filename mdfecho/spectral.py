"""Spectral primitives on packed half-complex spectra.

A real frame of even length ``N`` is transformed into ``N`` real numbers laid
out as ``[re0, re1, im1, re2, im2, ..., re(N/2)]``.  The forward transform is
scaled by ``1/N`` and the inverse transform is unscaled, so that
``ifft_packed(fft_packed(x))`` reproduces ``x``.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike

__all__ = [
    "fft_packed",
    "ifft_packed",
    "power_spectrum",
    "spectral_mul_accum",
    "weighted_spectral_mul_conj",
    "inner_prod",
]


def _as_frame(values: ArrayLike, what: str) -> np.ndarray:
    frame = np.asarray(values, dtype=np.float64)
    if frame.ndim != 1:
        raise ValueError(f"{what} must be one-dimensional")
    if frame.size < 2 or frame.size % 2:
        raise ValueError(f"{what} length must be even and at least 2, got {frame.size}")
    return frame


def _unpack(packed: np.ndarray) -> np.ndarray:
    """Turn packed spectra (last axis of length N) into complex bins (N/2+1)."""
    n = packed.shape[-1]
    bins = np.zeros(packed.shape[:-1] + (n // 2 + 1,), dtype=np.complex128)
    bins[..., 0] = packed[..., 0]
    bins[..., 1:-1] = packed[..., 1:-1:2] + 1j * packed[..., 2:-1:2]
    bins[..., -1] = packed[..., -1]
    return bins


def _pack(bins: np.ndarray) -> np.ndarray:
    """Turn complex bins (N/2+1) into a packed real spectrum of length N."""
    n = 2 * (bins.shape[-1] - 1)
    packed = np.empty(bins.shape[:-1] + (n,), dtype=np.float64)
    packed[..., 0] = bins[..., 0].real
    packed[..., 1:-1:2] = bins[..., 1:-1].real
    packed[..., 2:-1:2] = bins[..., 1:-1].imag
    packed[..., -1] = bins[..., -1].real
    return packed


def fft_packed(x: ArrayLike) -> np.ndarray:
    """Forward real FFT scaled by 1/N, returned in packed half-complex form."""
    frame = _as_frame(x, "frame")
    return _pack(np.fft.rfft(frame) / frame.size)


def ifft_packed(spectrum: ArrayLike) -> np.ndarray:
    """Unscaled inverse of :func:`fft_packed`."""
    packed = _as_frame(spectrum, "spectrum")
    n = packed.size
    return np.fft.irfft(_unpack(packed), n=n) * n


def power_spectrum(spectrum: ArrayLike) -> np.ndarray:
    """Squared magnitude of each of the N/2+1 bins of a packed spectrum."""
    packed = _as_frame(spectrum, "spectrum")
    bins = _unpack(packed)
    return bins.real**2 + bins.imag**2


def _as_blocks(values: ArrayLike, what: str) -> np.ndarray:
    blocks = np.atleast_2d(np.asarray(values, dtype=np.float64))
    if blocks.ndim != 2:
        raise ValueError(f"{what} must be a sequence of packed spectra")
    n = blocks.shape[1]
    if n < 2 or n % 2:
        raise ValueError(f"{what} spectrum length must be even and at least 2, got {n}")
    return blocks


def spectral_mul_accum(x_blocks: ArrayLike, w_blocks: ArrayLike) -> np.ndarray:
    """Sum over blocks of the bin-wise complex products of two packed spectra sets."""
    xs = _as_blocks(x_blocks, "x_blocks")
    ws = _as_blocks(w_blocks, "w_blocks")
    if xs.shape != ws.shape:
        raise ValueError(f"block shapes differ: {xs.shape} vs {ws.shape}")
    product = _unpack(xs) * _unpack(ws)
    return _pack(product.sum(axis=0))


def weighted_spectral_mul_conj(
    weights: ArrayLike, p: float, x: ArrayLike, y: ArrayLike
) -> np.ndarray:
    """Bin-wise ``p * weights * conj(x) * y`` of two packed spectra, packed."""
    xs = _as_frame(x, "x")
    ys = _as_frame(y, "y")
    if xs.size != ys.size:
        raise ValueError(f"spectrum lengths differ: {xs.size} vs {ys.size}")
    w = np.asarray(weights, dtype=np.float64)
    if w.shape != (xs.size // 2 + 1,):
        raise ValueError(f"weights must hold {xs.size // 2 + 1} values, got shape {w.shape}")
    product = (p * w) * np.conj(_unpack(xs)) * _unpack(ys)
    return _pack(product)


def inner_prod(x: ArrayLike, y: ArrayLike) -> float:
    """Dot product taken over whole sample pairs; an odd trailing sample is ignored."""
    xs = np.asarray(x, dtype=np.float64).ravel()
    ys = np.asarray(y, dtype=np.float64).ravel()
    if xs.size != ys.size:
        raise ValueError(f"lengths differ: {xs.size} vs {ys.size}")
    used = xs.size - xs.size % 2
    return float(np.dot(xs[:used], ys[:used]))