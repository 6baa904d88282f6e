"""Acoustic echo canceller based on the multidelay block frequency-domain filter.

The canceller runs two filters in parallel. A background filter adapts on
every frame. A foreground filter produces the output and takes over the
background weights only when they clearly do better. The learning rate
follows the estimated residual echo, so double-talk slows adaptation down
without an explicit detector.
"""

from __future__ import annotations

import logging
import math

import numpy as np
from numpy.typing import ArrayLike

from .filters import DcNotchFilter, adjust_prop, hann_window, initial_prop
from .spectral import (
    fft_packed,
    ifft_packed,
    inner_prod,
    power_spectrum,
    spectral_mul_accum,
    weighted_spectral_mul_conj,
)

__all__ = ["EchoCanceller"]

_log = logging.getLogger(__name__)

_DEFAULT_RATE = 8000
_PREEMPH = 0.9
_MIN_LEAK = 0.005
_VAR1_SMOOTH = 0.36
_VAR2_SMOOTH = 0.7225
_VAR1_UPDATE = 0.5
_VAR2_UPDATE = 0.25
_VAR_BACKTRACK = 4.0


def _notch_radius(rate: int) -> float:
    if rate < 12000:
        return 0.9
    if rate < 24000:
        return 0.982
    return 0.992


def _preemphasis(signal: np.ndarray, mem: float) -> np.ndarray:
    previous = np.concatenate(([mem], signal[:-1]))
    return signal - _PREEMPH * previous


def _to_int16(values: np.ndarray) -> np.ndarray:
    clean = np.nan_to_num(values, nan=0.0, posinf=32767.0, neginf=-32768.0)
    rounded = np.where(
        clean < -32767.5,
        -32768.0,
        np.where(clean > 32766.5, 32767.0, np.floor(0.5 + clean)),
    )
    return rounded.astype(np.int16)


def _retuned(notch: DcNotchFilter, radius: float) -> DcNotchFilter:
    """A notch filter with a new radius that keeps the old filter's memory."""
    if notch.radius == radius:
        return notch
    fresh = DcNotchFilter(radius)
    fresh._mem = list(notch._mem)
    return fresh


class EchoCanceller:
    """Frame-by-frame echo canceller for interleaved 16-bit audio."""

    def __init__(
        self,
        frame_size: int,
        filter_length: int,
        nb_mic: int = 1,
        nb_speakers: int = 1,
    ) -> None:
        if frame_size < 1:
            raise ValueError(f"frame size must be positive, got {frame_size}")
        if filter_length < 1:
            raise ValueError(f"filter length must be positive, got {filter_length}")
        if nb_mic < 1 or nb_speakers < 1:
            raise ValueError("there must be at least one microphone and one speaker")
        self._frame_size = frame_size
        self._window_size = 2 * frame_size
        self._blocks = (filter_length + frame_size - 1) // frame_size
        self._mics = nb_mic
        self._speakers = nb_speakers

        self._window = hann_window(self._window_size)
        self._prop = initial_prop(self._blocks)
        self._leak_estimate = 0.0
        self._notch = [DcNotchFilter(_notch_radius(_DEFAULT_RATE)) for _ in range(nb_mic)]
        self._apply_rate(_DEFAULT_RATE)
        self.reset()

    def _apply_rate(self, rate: int) -> None:
        n = self._frame_size
        self._sampling_rate = rate
        self._spec_average = n / rate
        self._beta0 = 2.0 * n / rate
        self._beta_max = 0.5 * n / rate
        radius = _notch_radius(rate)
        self._notch = [_retuned(notch, radius) for notch in self._notch]

    @property
    def frame_size(self) -> int:
        """Number of samples per channel in each frame."""
        return self._frame_size

    @property
    def sampling_rate(self) -> int:
        """Sampling rate in Hz; setting it retunes the rate-dependent constants."""
        return self._sampling_rate

    @sampling_rate.setter
    def sampling_rate(self, rate: int) -> None:
        rate = int(rate)
        if rate <= 0:
            raise ValueError(f"sampling rate must be positive, got {rate}")
        self._apply_rate(rate)

    def reset(self) -> None:
        """Return the canceller to its freshly created state."""
        n, big_n, m = self._frame_size, self._window_size, self._blocks
        c, k = self._mics, self._speakers
        self._cancel_count = 0
        self._screwed_up = 0
        self._saturated = 0
        self._adapted = False
        self._sum_adapt = 0.0

        self._w = np.zeros((c, m, k, big_n))
        self._foreground = np.zeros((c, m, k, big_n))
        self._x = np.zeros((k, big_n))
        self._X = np.zeros((m + 1, k, big_n))
        self._E = np.zeros((c, big_n))
        self._power = np.zeros(n + 1)
        self._power_1 = np.ones(n + 1)
        self._eh = np.zeros(n + 1)
        self._yh = np.zeros(n + 1)
        self._last_y = np.zeros(big_n)

        for notch in self._notch:
            notch.reset()
        self._mem_d = np.zeros(c)
        self._mem_e = np.zeros(c)
        self._mem_x = np.zeros(k)

        self._pey = 1.0
        self._pyy = 1.0
        self._davg1 = self._davg2 = 0.0
        self._dvar1 = self._dvar2 = 0.0

    def _frame(self, values: ArrayLike, channels: int, what: str) -> np.ndarray:
        arr = np.asarray(values)
        expected = self._frame_size * channels
        if arr.size != expected:
            raise ValueError(f"{what} must hold {expected} samples, got {arr.size}")
        return arr.astype(np.float64).reshape(self._frame_size, channels)

    def cancel(self, rec: ArrayLike, play: ArrayLike) -> np.ndarray:
        """Remove the echo of ``play`` from the microphone frame ``rec``.

        Both frames are interleaved; the result is the interleaved
        echo-free microphone signal as 16-bit integers.
        """
        n, big_n, m = self._frame_size, self._window_size, self._blocks
        c, k = self._mics, self._speakers
        rec_arr = self._frame(rec, c, "rec")
        play_arr = self._frame(play, k, "play")

        self._cancel_count += 1
        ss = 0.35 / m
        ss_1 = 1.0 - ss

        # Notch out DC and pre-emphasise the microphone signal.
        inp = np.empty((c, n))
        for chan in range(c):
            notched = self._notch[chan].process(rec_arr[:, chan])
            inp[chan] = _preemphasis(notched, self._mem_d[chan])
            self._mem_d[chan] = notched[-1]

        # Pre-emphasise the far end into the second half of the window.
        for speak in range(k):
            far = play_arr[:, speak]
            self._x[speak, :n] = self._x[speak, n:]
            self._x[speak, n:] = _preemphasis(far, self._mem_x[speak])
            self._mem_x[speak] = far[-1]

        self._X[1:] = self._X[:-1].copy()
        for speak in range(k):
            self._X[0, speak] = fft_packed(self._x[speak])

        sxx = sum(inner_prod(self._x[s, n:], self._x[s, n:]) for s in range(k))

        e = np.empty((c, big_n))
        y = np.empty((c, big_n))
        x_blocks = self._X[:m].reshape(m * k, big_n)

        # Foreground filter output.
        sff = 0.0
        for chan in range(c):
            fg = ifft_packed(
                spectral_mul_accum(x_blocks, self._foreground[chan].reshape(m * k, big_n))
            )
            e[chan] = fg
            e[chan, :n] = inp[chan] - fg[n:]
            sff += inner_prod(e[chan, :n], e[chan, :n])

        if self._adapted:
            self._prop = adjust_prop(self._w, m)

        # Weight gradient.
        if self._saturated == 0:
            for chan in range(c):
                for speak in range(k):
                    for j in range(m - 1, -1, -1):
                        self._w[chan, j, speak] += weighted_spectral_mul_conj(
                            self._power_1, self._prop[j], self._X[j + 1, speak], self._E[chan]
                        )
        else:
            self._saturated -= 1

        # Constrain some blocks to avoid circular convolution (AUMDF).
        for chan in range(c):
            for speak in range(k):
                for j in range(m):
                    if j == 0 or self._cancel_count % (m - 1) == j - 1:
                        taps = ifft_packed(self._w[chan, j, speak])
                        taps[n:] = 0.0
                        self._w[chan, j, speak] = fft_packed(taps)

        # Background filter output and residual powers.
        dbf = 0.0
        see = 0.0
        for chan in range(c):
            y[chan] = ifft_packed(
                spectral_mul_accum(x_blocks, self._w[chan].reshape(m * k, big_n))
            )
            diff = e[chan, n:] - y[chan, n:]
            dbf += 10.0 + inner_prod(diff, diff)
            e[chan, :n] = inp[chan] - y[chan, n:]
            see += inner_prod(e[chan, :n], e[chan, :n])

        # Decide between the foreground and background filters.
        delta = sff - see
        self._davg1 = 0.6 * self._davg1 + 0.4 * delta
        self._davg2 = 0.85 * self._davg2 + 0.15 * delta
        self._dvar1 = _VAR1_SMOOTH * self._dvar1 + (0.4 * sff) * (0.4 * dbf)
        self._dvar2 = _VAR2_SMOOTH * self._dvar2 + (0.15 * sff) * (0.15 * dbf)

        update_foreground = (
            delta * abs(delta) > sff * dbf
            or self._davg1 * abs(self._davg1) > _VAR1_UPDATE * self._dvar1
            or self._davg2 * abs(self._davg2) > _VAR2_UPDATE * self._dvar2
        )
        if update_foreground:
            self._davg1 = self._davg2 = 0.0
            self._dvar1 = self._dvar2 = 0.0
            self._foreground = self._w.copy()
            for chan in range(c):
                e[chan, n:] = self._window[n:] * e[chan, n:] + self._window[:n] * y[chan, n:]
        else:
            reset_background = (
                -delta * abs(delta) > _VAR_BACKTRACK * (sff * dbf)
                or -self._davg1 * abs(self._davg1) > _VAR_BACKTRACK * self._dvar1
                or -self._davg2 * abs(self._davg2) > _VAR_BACKTRACK * self._dvar2
            )
            if reset_background:
                self._w = self._foreground.copy()
                for chan in range(c):
                    y[chan, n:] = e[chan, n:]
                    e[chan, :n] = inp[chan] - y[chan, n:]
                see = sff
                self._davg1 = self._davg2 = 0.0
                self._dvar1 = self._dvar2 = 0.0

        # Output with de-emphasis, and the spectra used for adaptation.
        if self._saturated == 0 and np.any((rec_arr <= -32000) | (rec_arr >= 32000)):
            self._saturated = 1
        out = np.empty((n, c))
        sey = syy = sdd = 0.0
        rf = np.zeros(n + 1)
        yf = np.zeros(n + 1)
        for chan in range(c):
            residual = inp[chan] - e[chan, n:]
            mem = float(self._mem_e[chan])
            for i, value in enumerate(residual.tolist()):
                mem = value + _PREEMPH * mem
                out[i, chan] = mem
            self._mem_e[chan] = mem

            e[chan, n:] = e[chan, :n]
            e[chan, :n] = 0.0

            sey += inner_prod(e[chan, n:], y[chan, n:])
            syy += inner_prod(y[chan, n:], y[chan, n:])
            sdd += inner_prod(inp[chan], inp[chan])

            self._E[chan] = fft_packed(e[chan])
            y[chan, :n] = 0.0
            y_spec = fft_packed(y[chan])
            rf += power_spectrum(self._E[chan])
            yf += power_spectrum(y_spec)

        result = _to_int16(out).ravel()

        # Sanity checks.
        if not (syy >= 0 and sxx >= 0 and see >= 0) or not (
            sff < big_n * 1e9 and syy < big_n * 1e9 and sxx < big_n * 1e9
        ):
            self._screwed_up += 50
            result[:] = 0
        elif sff > sdd + big_n * 10000:
            self._screwed_up += 1
        else:
            self._screwed_up = 0
        if self._screwed_up >= 50:
            _log.warning("The echo canceller diverged and has been reset.")
            self.reset()
            return result

        see = max(see, big_n * 100.0)

        xf = np.zeros(n + 1)
        for speak in range(k):
            sxx += inner_prod(self._x[speak, n:], self._x[speak, n:])
            xf += power_spectrum(self._X[0, speak])

        self._power = ss_1 * self._power + 1.0 + ss * xf

        # Filtered spectra and their correlations.
        eh = rf - self._eh
        yh = yf - self._yh
        pey = 1.0 + float(np.dot(eh, yh))
        pyy = 1.0 + float(np.dot(yh, yh))
        sa = self._spec_average
        self._eh = (1.0 - sa) * self._eh + sa * rf
        self._yh = (1.0 - sa) * self._yh + sa * yf

        pyy = math.sqrt(pyy)
        pey = pey / pyy

        tmp = self._beta0 * syy
        if tmp > self._beta_max * see:
            tmp = self._beta_max * see
        alpha = tmp / see
        alpha_1 = 1.0 - alpha
        self._pey = alpha_1 * self._pey + alpha * pey
        self._pyy = alpha_1 * self._pyy + alpha * pyy
        if self._pyy < 1.0:
            self._pyy = 1.0
        if self._pey < _MIN_LEAK * self._pyy:
            self._pey = _MIN_LEAK * self._pyy
        if self._pey > self._pyy:
            self._pey = self._pyy
        self._leak_estimate = self._pey / self._pyy

        # Residual to error ratio.
        rer = (0.0001 * sxx + 3.0 * self._leak_estimate * syy) / see
        floor = sey * sey / (1.0 + see * syy)
        if rer < floor:
            rer = floor
        if rer > 0.5:
            rer = 0.5

        if (
            not self._adapted
            and self._sum_adapt > m
            and self._leak_estimate * syy > 0.03 * syy
        ):
            self._adapted = True

        if self._adapted:
            r = self._leak_estimate * yf
            err = rf + 1.0
            r = np.minimum(r, 0.5 * err)
            r = 0.7 * r + 0.3 * (rer * err)
            self._power_1 = r / (err * (self._power + 10.0))
        else:
            adapt_rate = 0.0
            if sxx > big_n * 1000:
                tmp = 0.25 * sxx
                if tmp > 0.25 * see:
                    tmp = 0.25 * see
                adapt_rate = tmp / see
            self._power_1 = adapt_rate / (self._power + 10.0)
            self._sum_adapt += adapt_rate

        self._last_y[:n] = self._last_y[n:]
        if self._adapted:
            raw = rec_arr.ravel()
            self._last_y[n:] = raw[:n] - result[:n].astype(np.float64)

        return result

    def residual_echo(self) -> np.ndarray:
        """Power spectrum (N/2+1 bins) of the estimated residual echo."""
        windowed = self._window * self._last_y
        spectrum = power_spectrum(fft_packed(windowed))
        leak2 = 1.0 if self._leak_estimate > 0.5 else 2.0 * self._leak_estimate
        return leak2 * spectrum

    def impulse_response(self) -> np.ndarray:
        """Time-domain taps of the background filter, scaled to 32767."""
        n = self._frame_size
        flat = self._w.reshape(-1, self._window_size)
        taps = [ifft_packed(flat[j])[:n] for j in range(self._blocks)]
        return np.trunc(32767.0 * np.concatenate(taps)).astype(np.int64)

    def impulse_response_size(self) -> int:
        """Number of taps returned by :meth:`impulse_response`."""
        return self._blocks * self._frame_size