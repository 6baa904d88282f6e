# mdfecho

Acoustic echo cancellation for 16-bit audio. The filter is a multidelay
block frequency-domain (MDF) adaptive filter with two paths. A background
filter adapts on every frame. A foreground filter produces the output and
takes over the background weights only when they clearly do better. The
learning rate follows the estimated residual echo, which keeps the filter
stable during double-talk without an explicit double-talk detector.

## Installation

```
pip install mdfecho
```

The only dependency is numpy.

## Usage

### Synchronous cancellation

Pass each microphone frame together with the far-end frame that was
played at the same moment:

```python
from mdfecho.canceller import EchoCanceller

frame_size = 160       # 20 ms at 8 kHz
filter_length = 1600   # 200 ms of echo tail

aec = EchoCanceller(frame_size, filter_length)   # one microphone, one speaker

for rec, play in frames:          # each frame holds frame_size samples
    cleaned = aec.cancel(rec, play)   # numpy int16 array
```

For several microphones or loudspeakers, pass `nb_mic` and `nb_speakers`
(both default to 1). The frames are then interleaved and hold
`frame_size * nb_mic` and `frame_size * nb_speakers` samples. The result is
interleaved in the same way. A frame of the wrong size raises `ValueError`.

Other members of `EchoCanceller`:

- `aec.frame_size` is the number of samples per channel in each frame (read-only property).
- `aec.sampling_rate` is the sampling rate in Hz, 8000 by default. Setting it retunes the rate-dependent constants, among them the radius of the DC notch filter applied to the microphone signal.
- `aec.residual_echo()` returns the power spectrum (`frame_size + 1` bins) of the estimated residual echo, for use in a post-filter.
- `aec.impulse_response()` returns the time-domain taps of the adapted filter, scaled to 32767, as an integer array.
- `aec.impulse_response_size()` returns the number of those taps.
- `aec.reset()` returns the canceller to its freshly created state.

If the filter diverges, the canceller logs a warning through the
`logging` module and resets itself.

### Buffered capture and playback

When the microphone and the speaker run as separate streams, use the
buffered canceller. It keeps played frames in a queue that starts with two
frames of silence, so playback is delayed by two frames. Most soundcards
add a delay of that size:

```python
from mdfecho.buffered import BufferedEchoCanceller

aec = BufferedEchoCanceller(160, 1600)

aec.playback(play_frame)           # whenever a frame is queued to the speaker
cleaned = aec.capture(rec_frame)   # whenever a frame is read from the microphone
```

Each captured frame is cancelled against the oldest queued playback frame.
The queue has some rules, and each one logs a warning when it applies:

- Playback frames that arrive before the first capture are discarded.
- A playback frame that arrives when the queue is already over two frames is discarded.
- When the queue is close to empty, the new frame is queued twice.
- If no playback frame is queued when `capture` is called, the microphone frame is returned unchanged.

`reset()` resets the canceller and refills the queue with silence.

### Building blocks

`mdfecho.spectral` holds the frequency-domain primitives. They work on
packed half-complex spectra laid out as `[re0, re1, im1, ..., re(N/2)]`:

- `fft_packed` is a forward real FFT scaled by `1/N`. `ifft_packed` is its unscaled inverse.
- `power_spectrum` returns the squared magnitude of each of the `N/2 + 1` bins.
- `spectral_mul_accum` sums bin-wise complex products over a set of blocks.
- `weighted_spectral_mul_conj` computes `p * weights * conj(x) * y` bin by bin.
- `inner_prod` computes a dot product over sample pairs. An odd trailing sample is ignored.

`mdfecho.filters` holds the rest:

- `hann_window` builds the periodic Hann window.
- `initial_prop` and `adjust_prop` compute the per-block adaptation shares.
- `DcNotchFilter` is a DC-removing notch filter. It has `process` and `reset` and keeps its state between calls.

## What it does not do

mdfecho works on frames of samples held in memory. It does not:

- read or write audio files;
- talk to sound devices;
- provide a command-line tool;
- do noise suppression or residual echo suppression. `residual_echo()` only supplies the spectrum that a post-filter of your own can use.