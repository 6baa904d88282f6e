"""Echo cancellation driven by separate capture and playback calls.

The soundcard side of an application usually gets one callback when a frame
of audio is queued for playback and another when a frame is recorded.
:class:`BufferedEchoCanceller` keeps the played frames in a small queue. This
delays them by two frames, which matches the delay most soundcards add. Each
captured frame is cancelled against the oldest queued frame.
"""

from __future__ import annotations

import logging
from collections import deque

import numpy as np
from numpy.typing import ArrayLike

from .canceller import EchoCanceller

__all__ = ["BufferedEchoCanceller"]

_log = logging.getLogger(__name__)

PLAYBACK_DELAY = 2


class BufferedEchoCanceller:
    """Echo canceller fed by capture and playback events, with a two-frame delay."""

    def __init__(
        self,
        frame_size: int,
        filter_length: int,
        nb_mic: int = 1,
        nb_speakers: int = 1,
    ) -> None:
        self._canceller = EchoCanceller(frame_size, filter_length, nb_mic, nb_speakers)
        self._mics = nb_mic
        self._speakers = nb_speakers
        self._queue: deque[np.ndarray] = deque()
        self._started = False
        self._fill_silence()

    def _silence(self) -> np.ndarray:
        return np.zeros(self._canceller.frame_size * self._speakers, dtype=np.int16)

    def _fill_silence(self) -> None:
        self._queue.clear()
        self._queue.extend(self._silence() for _ in range(PLAYBACK_DELAY))

    def _frame(self, values: ArrayLike, channels: int, what: str) -> np.ndarray:
        arr = np.asarray(values).ravel()
        expected = self._canceller.frame_size * channels
        if arr.size != expected:
            raise ValueError(f"{what} must hold {expected} samples, got {arr.size}")
        return arr.astype(np.int16)

    def reset(self) -> None:
        """Reset the canceller and refill the playback queue with silence."""
        self._canceller.reset()
        self._fill_silence()
        self._started = False

    def capture(self, rec: ArrayLike) -> np.ndarray:
        """Cancel echo from a recorded frame using the oldest queued playback frame."""
        rec_frame = self._frame(rec, self._mics, "rec")
        self._started = True
        if not self._queue:
            _log.warning(
                "No playback frame available (your application is buggy and/or got xruns)"
            )
            return rec_frame.copy()
        play = self._queue.popleft()
        out = self._canceller.cancel(rec_frame, play)
        if self._canceller._cancel_count == 0:
            # The canceller diverged and reset itself: the queue starts over too,
            # less the frame that has just been consumed.
            self._fill_silence()
            self._queue.popleft()
            self._started = False
        return out

    def playback(self, play: ArrayLike) -> None:
        """Queue a frame that has just been sent to the speakers."""
        play_frame = self._frame(play, self._speakers, "play")
        if not self._started:
            _log.warning("discarded first playback frame")
            return
        if len(self._queue) > PLAYBACK_DELAY:
            _log.warning(
                "Had to discard a playback frame "
                "(your application is buggy and/or got xruns)"
            )
            return
        self._queue.append(play_frame)
        if len(self._queue) <= PLAYBACK_DELAY - 1:
            _log.warning(
                "Auto-filling the buffer (your application is buggy and/or got xruns)"
            )
            self._queue.append(play_frame.copy())