"""
Media layer: local microphone capture, remote playback and level metering.

Capture pipeline:
- sounddevice RawInputStream (int16 mono) → VoiceProcessor (noise gate,
  AGC, echo ducking) → mute gate → LevelMeter → av.AudioFrame → aiortc

Playback pipeline:
- aiortc remote track → mono int16 → LevelMeter → deafen gate →
  sounddevice RawOutputStream

Acquisition failures are reported as PermissionDenied or DeviceUnavailable,
both MediaAcquisitionError, which callers surface as "cannot start call".
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from fractions import Fraction
from typing import Any, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from chess_voice.logging_config import get_logger

logger = get_logger("core.media")

try:
    import sounddevice as sd  # type: ignore
except (ImportError, OSError):  # pragma: no cover - PortAudio missing
    sd = None  # type: ignore

DEFAULT_SAMPLE_RATE = 48000
DEFAULT_FRAME_MS = 20
SILENCE_DBFS = -120.0


class MediaAcquisitionError(Exception):
    """Local audio capture could not be started."""


class PermissionDenied(MediaAcquisitionError):
    """The user or OS refused microphone access."""


class DeviceUnavailable(MediaAcquisitionError):
    """No usable microphone."""


def classify_media_error(exc: Exception) -> MediaAcquisitionError:
    text = str(exc).lower()
    if any(word in text for word in ("permission", "denied", "not authorized", "not permitted")):
        return PermissionDenied(str(exc))
    return DeviceUnavailable(str(exc))


@dataclass(frozen=True)
class AudioConstraints:
    echo_cancellation: bool = True
    noise_suppression: bool = True
    auto_gain_control: bool = True


def rms_dbfs(samples: np.ndarray) -> float:
    """RMS level of int16 samples in dBFS, floored at SILENCE_DBFS."""
    if samples.size == 0:
        return SILENCE_DBFS
    rms = float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))
    if rms <= 0.0:
        return SILENCE_DBFS
    return max(SILENCE_DBFS, 20.0 * math.log10(rms / 32768.0))


class LevelMeter:
    """Read-only tap holding the RMS level (0.0-1.0) of the latest block."""

    def __init__(self) -> None:
        self.level = 0.0

    def update(self, samples: np.ndarray) -> float:
        if samples.size == 0:
            self.level = 0.0
        else:
            rms = float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))
            self.level = min(1.0, rms / 32768.0)
        return self.level

    def reset(self) -> None:
        self.level = 0.0


class VoiceProcessor:
    """
    Applies the capture constraints to int16 mono blocks.

    - noise suppression: blocks below the gate threshold become silence
    - auto gain control: smoothed gain towards the target level, bounded by max gain
    - echo cancellation: ducks the microphone while the far end is audible
    """

    AGC_SMOOTHING = 0.1
    ECHO_DUCK_GAIN = 0.25
    ECHO_FAR_END_THRESHOLD = 0.05

    def __init__(
        self,
        constraints: AudioConstraints,
        target_level_dbfs: float = -18.0,
        max_gain_db: float = 12.0,
        gate_threshold_dbfs: float = -50.0,
    ) -> None:
        self.constraints = constraints
        self.target_level_dbfs = target_level_dbfs
        self.max_gain_db = max_gain_db
        self.gate_threshold_dbfs = gate_threshold_dbfs
        self.far_end: Optional[LevelMeter] = None
        self.gain_db = 0.0

    def process(self, samples: np.ndarray) -> np.ndarray:
        level = rms_dbfs(samples)
        if self.constraints.noise_suppression and level < self.gate_threshold_dbfs:
            return np.zeros_like(samples)

        out = samples.astype(np.float32)

        if self.constraints.auto_gain_control and level > SILENCE_DBFS:
            desired = self.target_level_dbfs - level
            desired = max(-self.max_gain_db, min(self.max_gain_db, desired))
            self.gain_db += (desired - self.gain_db) * self.AGC_SMOOTHING
            out *= 10.0 ** (self.gain_db / 20.0)

        far_end = self.far_end
        if (
            self.constraints.echo_cancellation
            and far_end is not None
            and far_end.level > self.ECHO_FAR_END_THRESHOLD
        ):
            out *= self.ECHO_DUCK_GAIN

        return np.clip(out, -32768, 32767).astype(np.int16)


def frame_to_mono(frame: av.AudioFrame) -> np.ndarray:
    """Mix an audio frame of any common sample format down to mono int16."""
    arr = frame.to_ndarray().astype(np.float64)
    channels = len(frame.layout.channels)
    if frame.format.is_planar:
        mono = arr.reshape(channels, -1).mean(axis=0)
    else:
        mono = arr.reshape(-1, channels).mean(axis=1)

    fmt = frame.format.name.rstrip("p")
    if fmt in ("flt", "dbl"):
        mono = mono * 32767.0
    elif fmt == "s32":
        mono = mono / 65536.0
    return np.clip(mono, -32768, 32767).astype(np.int16)


class MicrophoneTrack(MediaStreamTrack):
    """
    Outbound audio track fed by a sounddevice input stream.

    Setting `enabled` to False sends silence on the same track, so muting
    never renegotiates.
    """

    kind = "audio"

    def __init__(
        self,
        *,
        device: Any = None,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        frame_ms: int = DEFAULT_FRAME_MS,
        processor: Optional[VoiceProcessor] = None,
    ) -> None:
        super().__init__()
        if sd is None:
            raise DeviceUnavailable("sounddevice/PortAudio is not available")

        self.enabled = True
        self.meter = LevelMeter()
        self.processor = processor
        self.sample_rate = sample_rate
        self._samples_per_frame = int(sample_rate * frame_ms / 1000)
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=50)
        self._timestamp = 0
        self._time_base = Fraction(1, sample_rate)

        self._stream = sd.RawInputStream(
            samplerate=sample_rate,
            channels=1,
            dtype="int16",
            blocksize=self._samples_per_frame,
            device=device,
            callback=self._on_audio,
        )
        self._stream.start()
        logger.info(f"Microphone open (device={device}, rate={sample_rate}, frame_ms={frame_ms})")

    def _on_audio(self, indata, frames, time_info, status) -> None:
        if status:
            logger.debug(f"Capture status: {status}")
        try:
            self._loop.call_soon_threadsafe(self._enqueue, bytes(indata))
        except RuntimeError:
            # Loop already closed during shutdown.
            pass

    def _enqueue(self, data: bytes) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(data)

    async def recv(self) -> av.AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        data = await self._queue.get()
        if not data:
            raise MediaStreamError

        samples = np.frombuffer(data, dtype=np.int16)
        if self.processor is not None:
            samples = self.processor.process(samples)
        if not self.enabled:
            samples = np.zeros_like(samples)
        self.meter.update(samples)

        frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
        frame.sample_rate = self.sample_rate
        frame.pts = self._timestamp
        frame.time_base = self._time_base
        self._timestamp += samples.shape[0]
        return frame

    def stop(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:
                logger.error(f"Error closing input stream: {exc}")
            self._enqueue(b"")
            logger.info("Microphone closed")
        super().stop()


@dataclass
class LocalMedia:
    """The call's capture stream; owned by one call attempt."""

    track: MicrophoneTrack

    @property
    def meter(self) -> LevelMeter:
        return self.track.meter

    def attach_far_end(self, meter: Optional[LevelMeter]) -> None:
        if self.track.processor is not None:
            self.track.processor.far_end = meter

    def close(self) -> None:
        self.track.stop()


class RemotePlayback:
    """
    Plays the remote track on the local output device.

    `muted` (deafen) silences playback only; the inbound meter keeps running.
    """

    def __init__(self, track: MediaStreamTrack, *, device: Any = None) -> None:
        self.track = track
        self.device = device
        self.muted = False
        self.meter = LevelMeter()
        self._stream = None
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._pump(), name="remote-audio-pump"
        )

    async def _pump(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                frame = await self.track.recv()
                samples = frame_to_mono(frame)
                self.meter.update(samples)
                if self._stream is None:
                    self._stream = self._open_stream(frame.sample_rate)
                if self._stream is False:
                    continue
                if self.muted:
                    samples = np.zeros_like(samples)
                await loop.run_in_executor(None, self._stream.write, samples.tobytes())
        except MediaStreamError:
            logger.info("Remote audio track ended")
        except Exception as exc:
            logger.warning(f"Remote audio playback stopped: {exc}")
        finally:
            self.meter.reset()
            self._close_stream()

    def _open_stream(self, sample_rate: int):
        if sd is None:
            logger.warning("sounddevice unavailable; remote audio is metered but not played")
            return False
        try:
            stream = sd.RawOutputStream(
                samplerate=sample_rate,
                channels=1,
                dtype="int16",
                device=self.device,
            )
            stream.start()
        except Exception as exc:
            logger.error(f"Failed to open output device {self.device}: {exc}")
            return False
        logger.info(f"Remote audio playing (device={self.device}, rate={sample_rate})")
        return stream

    def _close_stream(self) -> None:
        stream = self._stream
        self._stream = None
        if stream:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:
                logger.error(f"Error closing output stream: {exc}")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


class SoundDeviceMedia:
    """Acquires the microphone and opens playback with sounddevice."""

    def __init__(
        self,
        input_device: Any = None,
        output_device: Any = None,
        constraints: Optional[AudioConstraints] = None,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        frame_ms: int = DEFAULT_FRAME_MS,
        agc_target_level: float = -18.0,
        agc_max_gain: float = 12.0,
        noise_gate_threshold: float = -50.0,
    ) -> None:
        self.input_device = input_device
        self.output_device = output_device
        self.constraints = constraints or AudioConstraints()
        self.sample_rate = sample_rate
        self.frame_ms = frame_ms
        self.agc_target_level = agc_target_level
        self.agc_max_gain = agc_max_gain
        self.noise_gate_threshold = noise_gate_threshold

    @classmethod
    def from_config(cls, config) -> "SoundDeviceMedia":
        return cls(
            input_device=config.audio_input_device,
            output_device=config.audio_output_device,
            constraints=AudioConstraints(
                echo_cancellation=config.echo_cancellation,
                noise_suppression=config.noise_suppression,
                auto_gain_control=config.auto_gain_control,
            ),
            sample_rate=config.sample_rate,
            frame_ms=config.frame_ms,
            agc_target_level=config.get("audio", "agc_target_level", -18.0),
            agc_max_gain=config.get("audio", "agc_max_gain", 12.0),
            noise_gate_threshold=config.get("audio", "noise_gate_threshold", -50.0),
        )

    async def acquire(self) -> LocalMedia:
        if sd is None:
            raise DeviceUnavailable("sounddevice/PortAudio is not available")

        processor = VoiceProcessor(
            self.constraints,
            target_level_dbfs=self.agc_target_level,
            max_gain_db=self.agc_max_gain,
            gate_threshold_dbfs=self.noise_gate_threshold,
        )
        try:
            sd.check_input_settings(
                device=self.input_device,
                channels=1,
                dtype="int16",
                samplerate=self.sample_rate,
            )
            track = MicrophoneTrack(
                device=self.input_device,
                sample_rate=self.sample_rate,
                frame_ms=self.frame_ms,
                processor=processor,
            )
        except MediaAcquisitionError:
            raise
        except Exception as exc:
            raise classify_media_error(exc) from exc

        logger.info(
            f"Local audio acquired (echo_cancellation={self.constraints.echo_cancellation}, "
            f"noise_suppression={self.constraints.noise_suppression}, "
            f"auto_gain_control={self.constraints.auto_gain_control})"
        )
        return LocalMedia(track=track)

    def open_playback(self, track: MediaStreamTrack) -> RemotePlayback:
        return RemotePlayback(track, device=self.output_device)


def list_devices() -> list[dict[str, Any]]:
    """Describe the audio devices sounddevice can see."""
    if sd is None:
        return []
    devices = []
    for index, dev in enumerate(sd.query_devices()):
        devices.append(
            {
                "index": index,
                "name": dev.get("name", ""),
                "inputs": int(dev.get("max_input_channels", 0) or 0),
                "outputs": int(dev.get("max_output_channels", 0) or 0),
                "default_samplerate": float(dev.get("default_samplerate", 0.0) or 0.0),
            }
        )
    return devices
