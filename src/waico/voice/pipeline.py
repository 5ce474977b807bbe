"""Voice chat pipeline: listener text in, spoken chat reply out.

Each final utterance goes to the chat session; the streamed reply is cut
into sentences so synthesis of the first sentence starts while the model
is still generating the rest.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Protocol

from waico.chat.session import ChatSession
from waico.errors import InferenceError, MaxTokensExceededError
from waico.voice.listener import SpeechListener
from waico.voice.tts import TTSProvider, TtsResult

logger = logging.getLogger(__name__)

# Regex: sentence-ending punctuation followed by whitespace (or end-of-string)
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?:;])\s+|\n")


class SentenceBuffer:
    """Accumulates streaming tokens and flushes complete sentences.

    Sentence boundaries are detected at ``.!?:;`` followed by whitespace
    or ``\\n``.  This avoids feeding single tokens to TTS (choppy speech)
    while still streaming text as soon as a natural pause point arrives.
    """

    def __init__(self) -> None:
        self._buf = ""

    def add(self, text: str) -> list[str]:
        """Add a token; return any complete sentences ready to flush."""
        self._buf += text
        parts = _SENTENCE_BOUNDARY.split(self._buf)
        if len(parts) <= 1:
            return []  # no complete sentence yet
        # All but the last part are complete sentences
        sentences = [p.strip() for p in parts[:-1] if p.strip()]
        self._buf = parts[-1]
        return sentences

    def flush(self) -> str | None:
        """Return remaining buffered text (if any) and clear the buffer."""
        leftover = self._buf.strip()
        self._buf = ""
        return leftover or None


class AudioPlayer(Protocol):
    def play(self, audio: TtsResult) -> None:
        """Play *audio* and block until it finishes."""
        ...


class SoundDevicePlayer:
    def play(self, audio: TtsResult) -> None:
        import sounddevice as sd

        sd.play(audio.samples, samplerate=audio.sample_rate)
        sd.wait()


class VoiceChatPipeline:
    """Wires a SpeechListener, a ChatSession and a TTS model together.

    While a reply is being generated or spoken the pipeline is busy: the
    listener is paused so the assistant does not hear itself, utterances
    that still arrive are ignored and the ``add_system_*`` entry points
    refuse new work.
    """

    def __init__(
        self,
        listener: SpeechListener,
        session: ChatSession,
        tts: TTSProvider,
        player: AudioPlayer,
        voice: str,
        speed: float = 1.0,
    ):
        self._listener = listener
        self._session = session
        self._tts = tts
        self._player = player
        self._voice = voice
        self._speed = speed
        self._task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._busy = False
        self._ended = False

    @property
    def is_busy(self) -> bool:
        return self._busy

    async def start_chat(self) -> None:
        """Check the microphone and start answering utterances."""
        await self._listener.initialize()
        self._task = asyncio.create_task(self._run(), name="voice-chat")
        await self._listener.listen()

    async def end_chat(self) -> None:
        self._ended = True
        await self._listener.dispose()
        tasks = list(self._pending)
        if self._task is not None:
            tasks.append(self._task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._task = None
        self._pending.clear()

    async def add_system_message(self, message: str) -> bool:
        """Answer *message* as if the user had said it.

        Returns immediately; the reply is generated and spoken in the
        background. False when busy or after end_chat().
        """
        if self._ended or self._busy:
            return False
        self._enter_busy()
        task = asyncio.create_task(self._respond(message), name="voice-chat-system")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def add_system_speech(self, text: str) -> bool:
        """Speak *text* without sending it to the chat model.

        Returns once playback finished. False when busy or after end_chat().
        """
        if self._ended or self._busy:
            return False
        self._enter_busy()
        try:
            await asyncio.to_thread(self._speak, text)
        finally:
            self._exit_busy()
        return True

    async def _run(self) -> None:
        async for text in self._listener.texts():
            if self._busy:
                logger.debug("Busy, ignoring utterance: %s", text)
                continue
            logger.info("User said: %s", text)
            self._enter_busy()
            await self._respond(text)

    async def _respond(self, text: str) -> None:
        try:
            await asyncio.to_thread(self.answer, text)
        except MaxTokensExceededError as exc:
            logger.warning("%s; starting a fresh conversation", exc)
            self._session.reset()
        except InferenceError as exc:
            logger.error("Failed to answer utterance: %s", exc)
        except Exception:
            logger.exception("Failed to answer utterance")
        finally:
            self._exit_busy()

    def _enter_busy(self) -> None:
        self._busy = True
        self._listener.pause()

    def _exit_busy(self) -> None:
        self._busy = False
        if not self._ended:
            self._listener.resume()

    def answer(self, text: str) -> str:
        """Stream the chat reply to *text*, speaking each sentence. Blocking."""
        buf = SentenceBuffer()
        reply_parts: list[str] = []
        for chunk in self._session.send(text):
            if self._ended:
                break
            reply_parts.append(chunk)
            for sentence in buf.add(chunk):
                self._speak(sentence)

        leftover = buf.flush()
        if leftover:
            self._speak(leftover)
        return "".join(reply_parts).strip()

    def _speak(self, sentence: str) -> None:
        if self._ended:
            return
        logger.debug("Speaking: %s", sentence)
        audio = self._tts.generate_speech(sentence, self._voice, self._speed)
        if len(audio.samples):
            self._player.play(audio)
