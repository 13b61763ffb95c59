"""
Stateless procedural synthesizer.

Every output sample is a pure function of its absolute time
``index / sample_rate``. Seven oscillator voices in three timbres are
evaluated at that time, each shaped by a single-expression envelope,
and summed. There are no phase accumulators and no per-voice state, so
any index range can be rendered in any order, in chunks, or on several
threads and the samples come out identical.

Architecture:
  noise / envelope            float32 primitives (hash noise, swell x release)
  voice_a / voice_b / voice_c timbres: sine+noise, 10% pulse, folded triangle+noise
  mix                         ordered fold over the voice table in SynthConfig
  render_samples / render_parallel
                              sample driver: index -> time -> mix, in index order
  SynthPlayer                 optional PyAudio stream reading the driver by index

Audio: 44100 Hz default, mono, float32. Samples are not clamped; only
the playback path soft-clips before handing buffers to the device.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from numbers import Real
from typing import Any, Optional, Union

import numpy as np
from numpy.typing import ArrayLike, NDArray

try:
    import pyaudio
    _HAS_PYAUDIO = True
except ImportError:
    pyaudio = None  # type: ignore[assignment]
    _HAS_PYAUDIO = False

logger = logging.getLogger(__name__)

FloatSignal = Union[np.float32, NDArray[np.float32]]


# ═══════════════════════════════════════════════════════════════════════
#  Constants
# ═══════════════════════════════════════════════════════════════════════

SAMPLE_RATE: int = 44100
BUFFER_SIZE: int = 2048
PARALLEL_CHUNK: int = BUFFER_SIZE * 16

# All oscillator math runs in float32 to match a highp-float evaluator
TAU = np.float32(6.28318530718)
RIGHT_ANGLE = np.float32(1.57079632679)
HALF_TAU = np.float32(0.5) * TAU

_NOISE_DOT_X = np.float32(12.9898)
_NOISE_DOT_Y = np.float32(78.233)
_NOISE_SCALE = np.float32(43758.5453123)
_BELOW_ONE = np.nextafter(np.float32(1.0), np.float32(0.0))

# Envelope presets (attack, release_start, release_end), normalized note time
ENVELOPE_A: tuple[float, float, float] = (10.0, 0.8, 0.4)
ENVELOPE_B: tuple[float, float, float] = (10.0, 0.8, 0.7)
ENVELOPE_C: tuple[float, float, float] = (20.0, 0.8, 0.2)

PULSE_DUTY: float = 0.1


# ═══════════════════════════════════════════════════════════════════════
#  Utility functions
# ═══════════════════════════════════════════════════════════════════════

def _as_f32(x: ArrayLike) -> NDArray[np.float32]:
    return np.asarray(x, dtype=np.float32)


def _unwrap(x: Any) -> Any:
    """Turn 0-d arrays back into numpy scalars, leave everything else alone."""
    return x[()] if isinstance(x, np.ndarray) else x


def _fract(x: FloatSignal) -> FloatSignal:
    return x - np.floor(x)


def _smoothstep(edge0: np.float32, edge1: np.float32, x: FloatSignal) -> FloatSignal:
    """Hermite step from 0 at edge0 to 1 at edge1 (edges may be reversed)."""
    s = np.clip((x - edge0) / (edge1 - edge0), np.float32(0.0), np.float32(1.0))
    return s * s * (np.float32(3.0) - np.float32(2.0) * s)


def _sanitize(x: FloatSignal) -> FloatSignal:
    return np.nan_to_num(x, nan=0.0, posinf=0.0, neginf=0.0)


def soft_clip(x: NDArray[np.float32]) -> NDArray[np.float32]:
    """Soft clipping (tanh-based) to prevent harsh digital distortion.

    Operates in-place to avoid allocations on the audio callback thread.
    """
    np.tanh(x, out=x)
    return x


# ═══════════════════════════════════════════════════════════════════════
#  Noise and envelope primitives
# ═══════════════════════════════════════════════════════════════════════

def noise(seed: ArrayLike) -> FloatSignal:
    """Sine-hash noise in [0, 1).

    ``fract(sin(dot((s, s), (12.9898, 78.233))) * 43758.5453123)`` in
    float32. Deterministic and cheap, with visible periodicity at some
    seed spacings. Results that round up to 1.0 are held just below it,
    and seeds large enough to overflow the hash give 0.
    """
    s = _as_f32(seed)
    with np.errstate(over="ignore", invalid="ignore"):
        h = np.sin(s * _NOISE_DOT_X + s * _NOISE_DOT_Y) * _NOISE_SCALE
        # seeds near float32 max overflow the dot product
        h = np.where(np.isfinite(h), h, np.float32(0.0))
        return _unwrap(np.minimum(_fract(h), _BELOW_ONE))


def envelope(
    time: ArrayLike,
    attack: float,
    release_start: float,
    release_end: float,
) -> FloatSignal:
    """Amplitude multiplier in [0, 1] for a normalized note position.

    ``time`` is elapsed / duration. The swell ``min(|sin(pi*t) * -attack|, 1)``
    rises faster the larger ``attack`` is; the release is a smoothstep
    that starts at ``t = 1 - release_start`` and reaches zero at
    ``t = 1 - release_end``. Expects ``release_end <= release_start <= 1``;
    other orderings invert the release rather than raising.

    The expression repeats every unit of ``t``: a note played past its
    duration retriggers. Voices gate it off for one-shot notes.
    """
    t = _as_f32(time)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        swell = np.minimum(np.abs(np.sin(HALF_TAU * t) * -np.float32(attack)), np.float32(1.0))
        release = _smoothstep(np.float32(release_end), np.float32(release_start),
                              np.float32(1.0) - _fract(t))
        env = swell * release
    return _unwrap(env)


# ═══════════════════════════════════════════════════════════════════════
#  Oscillator primitives (vectorized numpy)
# ═══════════════════════════════════════════════════════════════════════

def sine_blend(progress: ArrayLike, time: ArrayLike) -> FloatSignal:
    """Sine at 98% with 2% hash noise."""
    p = _as_f32(progress)
    return _unwrap(np.sin(TAU * p) * np.float32(0.98) + noise(time) * np.float32(0.02))


def pulse_wave(progress: ArrayLike) -> FloatSignal:
    """Narrow pulse: +1 for the first 10% of each cycle, -1 for the rest."""
    p = _as_f32(progress)
    return _unwrap(np.sign(np.float32(PULSE_DUTY) - _fract(p)))


def folded_triangle(progress: ArrayLike, time: ArrayLike) -> FloatSignal:
    """asin(sin(x)) folded into a [-1, 1] triangle, mixed 50/50 with noise."""
    p = _as_f32(progress)
    tri = np.arcsin(np.sin(TAU * p)) / RIGHT_ANGLE
    return _unwrap(tri * np.float32(0.5) + noise(time) * np.float32(0.5))


# ═══════════════════════════════════════════════════════════════════════
#  Voices: one note of a timbre, shaped by its envelope
# ═══════════════════════════════════════════════════════════════════════

def _shape(
    base: FloatSignal,
    t: NDArray[np.float32],
    duration: float,
    volume: float,
    shape: tuple[float, float, float],
    one_shot: bool,
) -> FloatSignal:
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        position = t / np.float32(duration)
        env = envelope(position, *shape)
        if one_shot:
            # silent from the end of the first note; NaN positions (0/0) stay NaN
            env = np.where(position >= 1.0, np.float32(0.0), env)
        return _unwrap(base * env * np.float32(volume))


def voice_a(time: ArrayLike, duration: float, volume: float, frequency: float,
            *, one_shot: bool = True) -> FloatSignal:
    """Soft percussive tone: near-pure sine with a little noise texture."""
    t = _as_f32(time)
    progress = np.float32(frequency) * t
    return _shape(sine_blend(progress, t), t, duration, volume, ENVELOPE_A, one_shot)


def voice_b(time: ArrayLike, duration: float, volume: float, frequency: float,
            *, one_shot: bool = True) -> FloatSignal:
    """Pulse-wave transient with a short release window."""
    t = _as_f32(time)
    progress = np.float32(frequency) * t
    return _shape(pulse_wave(progress), t, duration, volume, ENVELOPE_B, one_shot)


def voice_c(time: ArrayLike, duration: float, volume: float, frequency: float,
            *, one_shot: bool = True) -> FloatSignal:
    """Metallic shimmer: triangle plus heavy noise, sharp attack, long tail."""
    t = _as_f32(time)
    progress = np.float32(frequency) * t
    return _shape(folded_triangle(progress, t), t, duration, volume, ENVELOPE_C, one_shot)


GENERATORS: dict[str, Callable[..., FloatSignal]] = {
    "A": voice_a,
    "B": voice_b,
    "C": voice_c,
}


# ═══════════════════════════════════════════════════════════════════════
#  Configuration
# ═══════════════════════════════════════════════════════════════════════

class SynthConfigError(ValueError):
    """Raised when a synth configuration cannot be used."""


@dataclass(frozen=True)
class VoiceSpec:
    """One row of the voice table."""
    generator: str
    duration: float
    volume: float
    frequency: float

    @property
    def label(self) -> str:
        return f"{self.generator} {self.frequency:g}Hz {self.duration:g}s"

    @classmethod
    def from_value(cls, value: Any) -> VoiceSpec:
        """Build from a mapping or a ``[generator, duration, volume, frequency]`` row."""
        try:
            if isinstance(value, Mapping):
                return cls(
                    generator=str(value["generator"]),
                    duration=float(value["duration"]),
                    volume=float(value["volume"]),
                    frequency=float(value["frequency"]),
                )
            generator, duration, volume, frequency = value
            return cls(str(generator), float(duration), float(volume), float(frequency))
        except (KeyError, TypeError, ValueError) as e:
            raise SynthConfigError(f"invalid voice entry {value!r}: {e}") from e


VOICE_TABLE: tuple[VoiceSpec, ...] = (
    VoiceSpec("A", 1.0, 1.2, 55.0),
    VoiceSpec("A", 0.4, 0.4, 110.0),
    VoiceSpec("A", 0.1, 0.1, 220.0),
    VoiceSpec("B", 0.2, 0.02, 880.0),
    VoiceSpec("B", 0.4, 0.03, 440.0),
    VoiceSpec("C", 0.8, 0.2, 110.0),
    VoiceSpec("C", 0.2, 0.1, 220.0),
)


@dataclass(frozen=True)
class SynthConfig:
    """Everything the mixer reads. Immutable, safe to share across threads.

    ``speed`` scales every voice duration (larger is slower).
    ``loop_notes`` lets each voice repeat once per duration instead of
    sounding once from time zero. ``sanitize`` zeroes NaN/Inf samples
    that degenerate voice parameters would otherwise produce.
    """
    sample_rate: int = SAMPLE_RATE
    speed: float = 1.0
    loop_notes: bool = False
    sanitize: bool = False
    voices: tuple[VoiceSpec, ...] = VOICE_TABLE

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise SynthConfigError(f"sample_rate must be positive, got {self.sample_rate}")
        voices = tuple(
            v if isinstance(v, VoiceSpec) else VoiceSpec.from_value(v) for v in self.voices
        )
        object.__setattr__(self, "voices", voices)
        for spec in voices:
            if spec.generator not in GENERATORS:
                raise SynthConfigError(
                    f"unknown generator {spec.generator!r} "
                    f"(choose from: {', '.join(GENERATORS)})"
                )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SynthConfig:
        """Build a config from a plain mapping, e.g. parsed JSON.

        Missing keys fall back to the defaults; unknown keys are ignored.
        Flags must be real booleans and sample_rate a whole number.
        """
        known = {"sample_rate", "speed", "loop_notes", "sanitize", "voices"}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.debug("ignoring unknown config keys: %s", ", ".join(unknown))

        kwargs: dict[str, Any] = {}
        if "sample_rate" in data:
            rate = data["sample_rate"]
            if isinstance(rate, bool) or not isinstance(rate, Real) or not float(rate).is_integer():
                raise SynthConfigError(f"sample_rate must be a whole number, got {rate!r}")
            kwargs["sample_rate"] = int(rate)
        if "speed" in data:
            try:
                kwargs["speed"] = float(data["speed"])
            except (TypeError, ValueError) as e:
                raise SynthConfigError(f"invalid speed {data['speed']!r}: {e}") from e
        for flag in ("loop_notes", "sanitize"):
            if flag in data:
                if not isinstance(data[flag], (bool, np.bool_)):
                    raise SynthConfigError(f"{flag} must be true or false, got {data[flag]!r}")
                kwargs[flag] = bool(data[flag])
        if "voices" in data:
            voices = data["voices"]
            if isinstance(voices, (str, bytes)) or not hasattr(voices, "__iter__"):
                raise SynthConfigError("voices must be a list of voice entries")
            kwargs["voices"] = tuple(VoiceSpec.from_value(v) for v in voices)
        return cls(**kwargs)


DEFAULT_CONFIG = SynthConfig()


# ═══════════════════════════════════════════════════════════════════════
#  Mixer
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class VoiceLayers:
    """Per-voice arrays from a single render pass (diagnostic use).

    ``voices`` is keyed by VoiceSpec.label in table order; ``mix`` is
    exactly what mix() returns for the same times.
    """
    voices: dict[str, NDArray[np.float32]]
    mix: NDArray[np.float32]


def render_voice(spec: VoiceSpec, time: ArrayLike,
                 config: SynthConfig = DEFAULT_CONFIG) -> FloatSignal:
    """Evaluate one voice-table row at the given time(s)."""
    duration = np.float32(spec.duration) * np.float32(config.speed)
    generator = GENERATORS[spec.generator]
    return generator(time, duration, spec.volume, spec.frequency,
                     one_shot=not config.loop_notes)


def mix(time: ArrayLike, config: SynthConfig = DEFAULT_CONFIG) -> FloatSignal:
    """One output sample per time value: the ordered sum of every voice."""
    t = _as_f32(time)
    total = np.zeros_like(t)
    for spec in config.voices:
        total = total + render_voice(spec, t, config)
    if config.sanitize:
        total = _sanitize(total)
    return _unwrap(total)


def mix_layers(time: ArrayLike, config: SynthConfig = DEFAULT_CONFIG) -> VoiceLayers:
    """Like mix(), but keep each voice's contribution."""
    t = _as_f32(time)
    voices: dict[str, NDArray[np.float32]] = {}
    total = np.zeros_like(t)
    for spec in config.voices:
        layer = np.asarray(render_voice(spec, t, config), dtype=np.float32)
        label = spec.label
        n = 2
        while label in voices:
            label = f"{spec.label} #{n}"
            n += 1
        voices[label] = layer
        total = total + layer
    if config.sanitize:
        total = _sanitize(total)
    return VoiceLayers(voices=voices, mix=np.asarray(total, dtype=np.float32))


# ═══════════════════════════════════════════════════════════════════════
#  Sample driver
# ═══════════════════════════════════════════════════════════════════════

def sample_times(n_samples: int, sample_rate: int = SAMPLE_RATE,
                 start_index: int = 0) -> NDArray[np.float32]:
    """float32 times ``index / sample_rate`` for a contiguous index range."""
    if n_samples < 0:
        raise ValueError(f"n_samples must be >= 0, got {n_samples}")
    if start_index < 0:
        raise ValueError(f"start_index must be >= 0, got {start_index}")
    if sample_rate <= 0:
        raise ValueError(f"sample_rate must be positive, got {sample_rate}")
    # Index goes to float32 first, then divides (as a float vertex id would)
    frames = np.arange(start_index, start_index + n_samples, dtype=np.int64).astype(np.float32)
    return frames / np.float32(sample_rate)


def sample(index: int, config: SynthConfig = DEFAULT_CONFIG) -> np.float32:
    """Compute the single sample at ``index``."""
    if index < 0:
        raise ValueError(f"index must be >= 0, got {index}")
    return mix(np.float32(index) / np.float32(config.sample_rate), config)


def render_samples(n_samples: int, config: SynthConfig = DEFAULT_CONFIG,
                   start_index: int = 0) -> NDArray[np.float32]:
    """Render a buffer of samples in index order."""
    times = sample_times(n_samples, config.sample_rate, start_index)
    out = np.asarray(mix(times, config), dtype=np.float32)
    if not config.sanitize:
        bad = int(np.count_nonzero(~np.isfinite(out)))
        if bad:
            logger.warning(
                "%d non-finite samples in [%d, %d); set sanitize=True to zero them",
                bad, start_index, start_index + n_samples,
            )
    return out


def render_parallel(
    n_samples: int,
    config: SynthConfig = DEFAULT_CONFIG,
    *,
    start_index: int = 0,
    workers: Optional[int] = None,
    chunk_size: int = PARALLEL_CHUNK,
) -> NDArray[np.float32]:
    """Render on a thread pool, one chunk of indices per task.

    Chunks only share the read-only config, so the concatenated result
    matches render_samples() exactly.
    """
    if n_samples < 0:
        raise ValueError(f"n_samples must be >= 0, got {n_samples}")
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    end = start_index + n_samples
    starts = range(start_index, end, chunk_size)
    if len(starts) <= 1:
        return render_samples(n_samples, config, start_index)

    logger.debug("rendering %d samples as %d chunks (workers=%s)",
                 n_samples, len(starts), workers)

    def _chunk(start: int) -> NDArray[np.float32]:
        return render_samples(min(chunk_size, end - start), config, start)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="shader-synth") as pool:
        chunks = list(pool.map(_chunk, starts))
    return np.concatenate(chunks)


def render_layers(n_samples: int, config: SynthConfig = DEFAULT_CONFIG,
                  start_index: int = 0) -> VoiceLayers:
    """Per-voice render of an index range (diagnostic use)."""
    return mix_layers(sample_times(n_samples, config.sample_rate, start_index), config)


# ═══════════════════════════════════════════════════════════════════════
#  Playback
# ═══════════════════════════════════════════════════════════════════════

class SynthPlayer:
    """
    Streams the mixer to the default output device.

    Call start() to begin audio output and stop() on shutdown. The read
    position is the only state: each callback renders the next block by
    absolute sample index, so dropped buffers never shift note timing.
    """

    def __init__(
        self,
        config: SynthConfig = DEFAULT_CONFIG,
        duration: Optional[float] = None,
        master_volume: float = 0.5,
        buffer_size: int = BUFFER_SIZE,
    ) -> None:
        self._config = config
        self._total_samples: Optional[int] = (
            None if duration is None else max(0, round(duration * config.sample_rate))
        )
        self._buffer_size = buffer_size
        self._master_volume: float = max(0.0, min(1.0, master_volume))
        self._position: int = 0

        self._pa: pyaudio.PyAudio | None = None  # type: ignore[name-defined]
        self._stream: pyaudio.Stream | None = None  # type: ignore[name-defined]
        self._running: bool = False
        self._underrun_count: int = 0

    # ── Public properties ──────────────────────────────────────────────

    @property
    def config(self) -> SynthConfig:
        return self._config

    @property
    def master_volume(self) -> float:
        return self._master_volume

    @property
    def position(self) -> int:
        return self._position

    @property
    def finished(self) -> bool:
        return self._total_samples is not None and self._position >= self._total_samples

    @property
    def is_running(self) -> bool:
        return self._running

    # ── Lifecycle ──────────────────────────────────────────────────────

    def start(self) -> bool:
        """Start audio output. Returns True on success, False on failure."""
        if not _HAS_PYAUDIO:
            logger.warning("PyAudio is not installed; playback unavailable")
            return False

        try:
            self._pa = pyaudio.PyAudio()
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=1,
                rate=self._config.sample_rate,
                output=True,
                frames_per_buffer=self._buffer_size,
                stream_callback=self._audio_callback,
            )
            self._running = True
            self._stream.start_stream()
            return True
        except Exception:
            logger.warning("could not open audio output stream", exc_info=True)
            self._running = False
            self._cleanup_audio()
            return False

    def stop(self) -> None:
        """Stop audio output and clean up resources."""
        self._running = False
        self._cleanup_audio()

    def _cleanup_audio(self) -> None:
        """Tear down PyAudio resources, logging rather than raising."""
        try:
            if self._stream is not None:
                if self._stream.is_active():
                    self._stream.stop_stream()
                self._stream.close()
        except Exception:
            logger.debug("error closing audio stream", exc_info=True)
        self._stream = None
        try:
            if self._pa is not None:
                self._pa.terminate()
        except Exception:
            logger.debug("error terminating PyAudio", exc_info=True)
        self._pa = None

    # ── Rendering ──────────────────────────────────────────────────────

    def next_block(self, frame_count: int) -> NDArray[np.float32]:
        """Render the next frame_count samples, ready for the device.

        Past the end of ``duration`` the block is zero-padded.
        """
        n = frame_count
        if self._total_samples is not None:
            n = max(0, min(frame_count, self._total_samples - self._position))

        block = np.zeros(frame_count, dtype=np.float32)
        if n > 0:
            block[:n] = render_samples(n, self._config, start_index=self._position)
        self._position += n

        np.nan_to_num(block, copy=False, nan=0.0, posinf=0.0, neginf=0.0)
        block *= np.float32(self._master_volume)

        return soft_clip(block)

    def _audio_callback(
        self,
        in_data: bytes | None,
        frame_count: int,
        time_info: dict[str, float],
        status_flags: int,
    ) -> tuple[bytes, int]:
        """PyAudio stream callback. Generates audio samples."""
        if not self._running:
            silence = b'\x00' * (frame_count * 4)
            return (silence, pyaudio.paComplete)

        if status_flags & pyaudio.paOutputUnderflow:
            self._underrun_count += 1

        try:
            samples = self.next_block(frame_count)
        except Exception:
            logger.exception("render failed at sample %d", self._position)
            samples = np.zeros(frame_count, dtype=np.float32)

        flag = pyaudio.paComplete if self.finished else pyaudio.paContinue
        return (samples.tobytes(), flag)

    def status_string(self) -> str:
        """Playback position, volume and underrun count on one line."""
        seconds = self._position / self._config.sample_rate
        base = f"{self._master_volume:.0%} {seconds:.1f}s"
        if self._underrun_count > 0:
            base += f" XR:{self._underrun_count}"
        return base
