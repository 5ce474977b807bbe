"""Microphone capture via sounddevice.

The stream callback runs on PortAudio's thread; it hands every block to
``on_samples`` as a 1-D float32 array and must return quickly.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

import numpy as np

logger = logging.getLogger(__name__)

CHANNELS = 1
DTYPE = "float32"
CHUNK_DURATION = 0.1  # Seconds per block

SamplesCallback = Callable[[np.ndarray], None]


class Microphone(Protocol):
    sample_rate: int

    def has_permission(self) -> bool: ...

    def start(self, on_samples: SamplesCallback) -> None: ...

    def stop(self) -> None: ...


class SoundDeviceMicrophone:
    def __init__(self, sample_rate: int = 16_000, device: int | None = None):
        self.sample_rate = sample_rate
        self._device = device
        self._stream = None
        self._lock = threading.Lock()

    def has_permission(self) -> bool:
        """True when an input device can be opened.

        Desktop platforms surface a refused microphone as a missing or
        unopenable input device.
        """
        import sounddevice as sd

        try:
            device = sd.query_devices(self._device, kind="input")
            sd.check_input_settings(
                device=self._device, channels=CHANNELS, dtype=DTYPE, samplerate=self.sample_rate
            )
        except (sd.PortAudioError, ValueError) as exc:
            logger.warning("No usable input device: %s", exc)
            return False
        logger.info("Using input device: %s", device["name"])
        return True

    def start(self, on_samples: SamplesCallback) -> None:
        import sounddevice as sd

        def _callback(indata, frames, time_info, status):
            if status:
                logger.warning("Audio stream status: %s", status)
            on_samples(indata[:, 0].copy())

        with self._lock:
            if self._stream is not None:
                logger.warning("Microphone already started")
                return
            stream = sd.InputStream(
                device=self._device,
                samplerate=self.sample_rate,
                channels=CHANNELS,
                dtype=DTYPE,
                blocksize=int(self.sample_rate * CHUNK_DURATION),
                callback=_callback,
            )
            try:
                stream.start()
            except Exception:
                stream.close()
                raise
            self._stream = stream
        logger.info("Microphone capture started")

    def stop(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
        if stream is None:
            return
        stream.stop()
        stream.close()
        logger.info("Microphone capture stopped")
