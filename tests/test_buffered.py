import logging

import numpy as np
import pytest

from mdfecho.buffered import BufferedEchoCanceller
from mdfecho.canceller import EchoCanceller

FRAME = 32
FILTER = 96
LOGGER = "mdfecho.buffered"


def _signal(seed, n_frames, channels=1, scale=3000):
    rng = np.random.default_rng(seed)
    data = rng.integers(-scale, scale, size=(n_frames, FRAME * channels))
    return [row.astype(np.int16) for row in data]


def _zeros(channels=1):
    return np.zeros(FRAME * channels, dtype=np.int16)


def _reference(pairs, nb_mic=1, nb_speakers=1):
    ref = EchoCanceller(FRAME, FILTER, nb_mic, nb_speakers)
    return [ref.cancel(rec, play) for rec, play in pairs]


def test_first_captures_use_silence():
    buf = BufferedEchoCanceller(FRAME, FILTER)
    recs = _signal(1, 2)
    outs = [buf.capture(r) for r in recs]
    expected = _reference([(recs[0], _zeros()), (recs[1], _zeros())])
    for got, want in zip(outs, expected):
        np.testing.assert_array_equal(got, want)


def test_capture_without_playback_passes_input_through(caplog):
    buf = BufferedEchoCanceller(FRAME, FILTER)
    recs = _signal(2, 3)
    buf.capture(recs[0])
    buf.capture(recs[1])
    with caplog.at_level(logging.WARNING, logger=LOGGER):
        out = buf.capture(recs[2])
    np.testing.assert_array_equal(out, recs[2])
    assert "No playback frame available" in caplog.text


def test_playback_before_first_capture_is_discarded(caplog):
    buf = BufferedEchoCanceller(FRAME, FILTER)
    plays = _signal(3, 1)
    recs = _signal(4, 2)
    with caplog.at_level(logging.WARNING, logger=LOGGER):
        buf.playback(plays[0])
    assert "discarded first playback frame" in caplog.text
    outs = [buf.capture(r) for r in recs]
    expected = _reference([(recs[0], _zeros()), (recs[1], _zeros())])
    for got, want in zip(outs, expected):
        np.testing.assert_array_equal(got, want)


def test_playback_is_delayed_by_two_frames():
    buf = BufferedEchoCanceller(FRAME, FILTER)
    recs = _signal(5, 5)
    plays = _signal(6, 5)
    outs = []
    for rec, play in zip(recs, plays):
        outs.append(buf.capture(rec))
        buf.playback(play)
    delayed = [_zeros(), _zeros()] + plays[:3]
    expected = _reference(list(zip(recs, delayed)))
    for got, want in zip(outs, expected):
        np.testing.assert_array_equal(got, want)


def test_empty_queue_is_auto_filled(caplog):
    buf = BufferedEchoCanceller(FRAME, FILTER)
    recs = _signal(7, 4)
    play = _signal(8, 1)[0]
    outs = [buf.capture(recs[0]), buf.capture(recs[1])]
    with caplog.at_level(logging.WARNING, logger=LOGGER):
        buf.playback(play)
    assert "Auto-filling the buffer" in caplog.text
    outs += [buf.capture(recs[2]), buf.capture(recs[3])]
    expected = _reference(
        [(recs[0], _zeros()), (recs[1], _zeros()), (recs[2], play), (recs[3], play)]
    )
    for got, want in zip(outs, expected):
        np.testing.assert_array_equal(got, want)


def test_full_queue_discards_playback(caplog):
    buf = BufferedEchoCanceller(FRAME, FILTER)
    recs = _signal(9, 5)
    plays = _signal(10, 3)
    outs = [buf.capture(recs[0])]
    buf.playback(plays[0])
    buf.playback(plays[1])
    with caplog.at_level(logging.WARNING, logger=LOGGER):
        buf.playback(plays[2])
    assert "Had to discard a playback frame" in caplog.text
    outs += [buf.capture(r) for r in recs[1:4]]
    expected = _reference(
        [
            (recs[0], _zeros()),
            (recs[1], _zeros()),
            (recs[2], plays[0]),
            (recs[3], plays[1]),
        ]
    )
    for got, want in zip(outs, expected):
        np.testing.assert_array_equal(got, want)
    np.testing.assert_array_equal(buf.capture(recs[4]), recs[4])


def test_reset_matches_fresh_instance():
    recs = _signal(11, 4)
    plays = _signal(12, 4)
    used = BufferedEchoCanceller(FRAME, FILTER)
    for rec, play in zip(recs, plays):
        used.capture(rec)
        used.playback(play)
    used.reset()
    fresh = BufferedEchoCanceller(FRAME, FILTER)
    for rec, play in zip(recs, plays):
        np.testing.assert_array_equal(used.capture(rec), fresh.capture(rec))
        used.playback(play)
        fresh.playback(play)


def test_reset_restores_discarding_of_first_playback(caplog):
    buf = BufferedEchoCanceller(FRAME, FILTER)
    buf.capture(_signal(13, 1)[0])
    buf.reset()
    with caplog.at_level(logging.WARNING, logger=LOGGER):
        buf.playback(_signal(14, 1)[0])
    assert "discarded first playback frame" in caplog.text


def test_multichannel_speakers_delay():
    buf = BufferedEchoCanceller(FRAME, FILTER, nb_mic=1, nb_speakers=2)
    recs = _signal(15, 3)
    plays = _signal(16, 3, channels=2)
    outs = []
    for rec, play in zip(recs, plays):
        outs.append(buf.capture(rec))
        buf.playback(play)
    expected = _reference(
        [(recs[0], _zeros(2)), (recs[1], _zeros(2)), (recs[2], plays[0])],
        nb_speakers=2,
    )
    for got, want in zip(outs, expected):
        np.testing.assert_array_equal(got, want)
    assert outs[0].size == FRAME


def test_capture_rejects_wrong_length():
    buf = BufferedEchoCanceller(FRAME, FILTER)
    with pytest.raises(ValueError):
        buf.capture(np.zeros(FRAME + 1, dtype=np.int16))


def test_playback_rejects_wrong_length():
    buf = BufferedEchoCanceller(FRAME, FILTER)
    buf.capture(_zeros())
    with pytest.raises(ValueError):
        buf.playback(np.zeros(FRAME - 1, dtype=np.int16))


def test_invalid_construction_raises():
    with pytest.raises(ValueError):
        BufferedEchoCanceller(0, FILTER)