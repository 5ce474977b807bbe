"""Speech listener: microphone in, transcribed utterances out.

Data flow::

    capture thread ──call_soon_threadsafe──> raw queue
        ──segment task (VAD)──> segment queue (bounded)
        ──transcribe task (worker thread)──> on_text callbacks / texts()

The segment queue is the only bounded hop. When transcription falls
behind, ``drop_oldest`` discards the oldest pending utterance and
``block`` makes segmentation wait (raw audio keeps piling up in the raw
queue, since the microphone cannot be paused).

``pause()`` drops incoming audio until ``resume()``; the voice chat pipeline
pauses while the assistant speaks so its own voice is not transcribed.

States: UNINITIALIZED -> INITIALIZED -> LISTENING -> STOPPED. ``dispose()``
is allowed from any state and STOPPED is terminal.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from typing import AsyncIterator, Awaitable, Callable, Union

import numpy as np

from waico.errors import InferenceError, ListenerStateError, PermissionDenied
from waico.voice.microphone import Microphone
from waico.voice.stt import STTProvider
from waico.voice.vad import SpeechSegmenter

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], Union[Awaitable[None], None]]

_STOP = object()


class ListenerState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    LISTENING = "listening"
    STOPPED = "stopped"


class Backpressure(enum.Enum):
    DROP_OLDEST = "drop_oldest"
    BLOCK = "block"


def _put_drop_oldest(queue: asyncio.Queue, item) -> bool:
    """Put without waiting; evict the oldest item if full. True if one was evicted."""
    evicted = False
    if queue.full():
        queue.get_nowait()
        evicted = True
    queue.put_nowait(item)
    return evicted


class SpeechListener:
    def __init__(
        self,
        stt: STTProvider,
        microphone: Microphone,
        segmenter: SpeechSegmenter,
        queue_size: int = 8,
        backpressure: Backpressure | str = Backpressure.DROP_OLDEST,
    ):
        self._stt = stt
        self._mic = microphone
        self._segmenter = segmenter
        self._queue_size = queue_size
        self._backpressure = Backpressure(backpressure)

        self._state = ListenerState.UNINITIALIZED
        self._loop: asyncio.AbstractEventLoop | None = None
        self._raw: asyncio.Queue[np.ndarray] = asyncio.Queue()
        self._segments: asyncio.Queue[np.ndarray] = asyncio.Queue(maxsize=queue_size)
        self._callbacks: list[TextCallback] = []
        self._subscribers: list[asyncio.Queue] = []
        self._tasks: list[asyncio.Task] = []
        self._paused = False
        self.dropped_segments = 0

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_buffering_speech(self) -> bool:
        """The user started speaking but the utterance has not ended yet."""
        return (
            self._state is ListenerState.LISTENING
            and not self._paused
            and self._segmenter.is_speech_detected
        )

    async def initialize(self) -> None:
        """Check microphone access. Raises PermissionDenied if refused."""
        if self._state is ListenerState.STOPPED:
            raise ListenerStateError("SpeechListener was disposed")
        if self._state is not ListenerState.UNINITIALIZED:
            logger.info("SpeechListener already initialized, skipping.")
            return

        granted = await asyncio.to_thread(self._mic.has_permission)
        if not granted:
            raise PermissionDenied("Record permission required")
        self._state = ListenerState.INITIALIZED
        logger.info("SpeechListener initialized")

    async def listen(self, on_text: TextCallback | None = None) -> None:
        """Register *on_text* and start capturing if not already listening.

        *on_text* is called once per utterance, on the event loop; it may be
        a plain function or a coroutine function.
        """
        if self._state not in (ListenerState.INITIALIZED, ListenerState.LISTENING):
            raise ListenerStateError(f"listen() is not allowed in state {self._state.value}")

        if on_text is not None:
            self._callbacks.append(on_text)
        if self._state is ListenerState.LISTENING:
            return

        self._loop = asyncio.get_running_loop()
        self._tasks = [
            asyncio.create_task(self._segment_loop(), name="listener-segment"),
            asyncio.create_task(self._transcribe_loop(), name="listener-transcribe"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._on_task_done)
        self._state = ListenerState.LISTENING

        try:
            await asyncio.to_thread(self._mic.start, self._on_samples)
        except Exception:
            await self.dispose()
            raise
        logger.info("Listening (backpressure=%s)", self._backpressure.value)

    def pause(self) -> None:
        """Stop turning audio into text until resume(), e.g. while the assistant speaks.

        The microphone keeps running; its samples are dropped. A half-captured
        utterance is discarded.
        """
        if self._state is not ListenerState.LISTENING or self._paused:
            return
        self._paused = True
        discarded = self._segmenter.flush()
        if discarded:
            logger.debug("Paused, discarded %d partial utterance(s)", len(discarded))
        logger.info("SpeechListener paused")

    def resume(self) -> None:
        if not self._paused or self._state is ListenerState.STOPPED:
            return
        self._paused = False
        logger.info("SpeechListener resumed")

    async def texts(self) -> AsyncIterator[str]:
        """Yield transcribed utterances until the listener stops.

        Each iterator gets its own bounded channel; a slow reader loses the
        oldest texts rather than stalling transcription.
        """
        if self._state is ListenerState.STOPPED:
            return
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _STOP:
                    return
                yield item
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    async def dispose(self) -> None:
        """Stop capture and release audio resources. Idempotent."""
        if self._state is ListenerState.STOPPED:
            return
        was_listening = self._state is ListenerState.LISTENING
        self._state = ListenerState.STOPPED

        if was_listening:
            await asyncio.to_thread(self._mic.stop)

        # dispose() may be called from an on_text callback, i.e. from inside
        # the transcribe task; that task is cancelled last.
        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, []
        others = [t for t in tasks if t is not current]
        for task in others:
            task.cancel()
        # In-flight transcriptions finish on their worker thread; results are discarded
        await asyncio.gather(*others, return_exceptions=True)

        self._segmenter.close()
        self._callbacks.clear()
        for queue in list(self._subscribers):
            _put_drop_oldest(queue, _STOP)
        logger.info("SpeechListener disposed")

        if current in tasks:
            current.cancel()

    # ── Capture thread ────────────────────────────────────────────

    def _on_samples(self, samples: np.ndarray) -> None:
        loop = self._loop
        if (
            loop is None
            or loop.is_closed()
            or self._paused
            or self._state is not ListenerState.LISTENING
        ):
            return
        loop.call_soon_threadsafe(self._raw.put_nowait, samples)

    # ── Event loop tasks ──────────────────────────────────────────

    async def _segment_loop(self) -> None:
        while True:
            samples = await self._raw.get()
            if self._paused:
                continue
            try:
                utterances = self._segmenter.accept(samples)
            except Exception:
                logger.exception("Segmenter failed on %d samples, skipping them", len(samples))
                continue
            for utterance in utterances:
                await self._enqueue(utterance)

    async def _enqueue(self, utterance: np.ndarray) -> None:
        if self._backpressure is Backpressure.BLOCK:
            await self._segments.put(utterance)
            return
        if _put_drop_oldest(self._segments, utterance):
            self.dropped_segments += 1
            logger.warning(
                "Transcription is falling behind, dropped oldest utterance (%d dropped)",
                self.dropped_segments,
            )

    async def _transcribe_loop(self) -> None:
        sample_rate = self._mic.sample_rate
        while True:
            utterance = await self._segments.get()
            logger.debug("Transcribing %.1fs utterance", len(utterance) / sample_rate)
            try:
                text = await asyncio.to_thread(self._stt.transcribe, utterance, sample_rate)
            except InferenceError as exc:
                # One bad segment must not end the session
                logger.error("Transcription error: %s", exc)
                continue
            if not text:
                logger.debug("Empty transcription, nothing to deliver")
                continue
            await self._deliver(text)

    async def _deliver(self, text: str) -> None:
        for callback in list(self._callbacks):
            try:
                result = callback(text)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Error in text callback")
        for queue in list(self._subscribers):
            _put_drop_oldest(queue, text)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Listener task %s crashed", task.get_name(), exc_info=exc)
