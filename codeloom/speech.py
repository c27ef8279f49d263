"""
Speech playback for the instructor.

Two voice backends share one ``AudioSession``:

- ``RemoteVoice``: base64 16-bit PCM from the tutor service, decoded and
  played through an ``AudioSink`` with text revealed in step with playback
- ``LocalVoice``: an on-device synthesizer reporting word boundaries

``SpeechController`` starts on the local voice. Once the user opts in to the
remote one, it drops back to the local voice for good if the remote fails.
"""

from __future__ import annotations

import asyncio
from array import array
import base64
import binascii
from collections.abc import Callable
import logging
import math
import re
import sys
from typing import Any, Optional, Protocol

from .errors import ConfigurationError, UpstreamError
from .tutor import PCM_SAMPLE_RATE
from .utils import strip_code_blocks


log = logging.getLogger(__name__)

REVEAL_TICK_S = 0.05
LOCAL_FALLBACK_NOTICE = "AI Voice Quota Hit - Switched to Local Voice"

RevealFunc = Callable[[int, int], None]


def decode_pcm(data: str) -> array:
    """Base64 little-endian int16 mono PCM -> float samples in [-1, 1)."""
    try:
        raw = base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UpstreamError("speech audio is not valid base64") from e
    if len(raw) % 2:
        raw = raw[:-1]
    ints = array("h")
    ints.frombytes(raw)
    if sys.byteorder == "big":
        ints.byteswap()
    return array("f", (s / 32768 for s in ints))


class Playback(Protocol):
    message_id: int

    async def start(self) -> None: ...

    def stop(self) -> None: ...

    async def wait(self) -> None: ...


class AudioSink:
    """Audio graph destination. The base class only keeps time."""

    def start(self, samples: array, sample_rate: int) -> None:
        pass

    def stop(self) -> None:
        pass


class PcmPlayback:
    def __init__(
        self,
        message_id: int,
        text: str,
        samples: array,
        on_reveal: RevealFunc,
        sink: Optional[AudioSink] = None,
        sample_rate: int = PCM_SAMPLE_RATE,
        tick_s: float = REVEAL_TICK_S,
    ):
        self.message_id = message_id
        self.text = text
        self.samples: Optional[array] = samples
        self.sample_rate = sample_rate
        self.duration = len(samples) / sample_rate
        self._on_reveal = on_reveal
        self._sink = sink or AudioSink()
        self._tick_s = tick_s
        self._task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    async def start(self) -> None:
        self._on_reveal(self.message_id, 0)
        self._sink.start(self.samples, self.sample_rate)
        self._task = asyncio.ensure_future(self._reveal())

    async def _reveal(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        chars_per_s = len(self.text) / self.duration if self.duration else math.inf
        while True:
            elapsed = loop.time() - started
            if elapsed >= self.duration:
                break
            self._on_reveal(self.message_id, min(len(self.text), math.floor(elapsed * chars_per_s)))
            await asyncio.sleep(self._tick_s)
        self._finish()

    def _finish(self) -> None:
        if self._done.is_set():
            return
        self._on_reveal(self.message_id, len(self.text))
        self.samples = None
        self._done.set()

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._sink.stop()
        self._finish()

    async def wait(self) -> None:
        await self._done.wait()


class LocalSynthesizer:
    """On-device voice: one word-boundary event per word at a fixed pace."""

    def __init__(self, words_per_minute: float = 180.0):
        self.seconds_per_word = 60.0 / words_per_minute

    async def speak(self, text: str, on_boundary: Callable[[int, int], None]) -> None:
        for m in re.finditer(r"\S+", text):
            on_boundary(m.start(), len(m.group()))
            await asyncio.sleep(self.seconds_per_word)


class LocalUtterance:
    def __init__(self, message_id: int, text: str, synthesizer: LocalSynthesizer, on_reveal: RevealFunc):
        self.message_id = message_id
        self.text = text
        self._synth = synthesizer
        self._on_reveal = on_reveal
        self._task: Optional[asyncio.Task] = None
        self._done = asyncio.Event()

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def _boundary(self, char_index: int, char_length: int) -> None:
        next_space = self.text.find(" ", char_index + char_length)
        self._on_reveal(self.message_id, len(self.text) if next_space == -1 else next_space)

    async def start(self) -> None:
        self._on_reveal(self.message_id, 0)
        self._task = asyncio.ensure_future(self._run())

    async def _run(self) -> None:
        try:
            await self._synth.speak(self.text, self._boundary)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("local speech synthesis failed")
        self._finish()

    def _finish(self) -> None:
        if not self._done.is_set():
            self._on_reveal(self.message_id, len(self.text))
            self._done.set()

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._finish()

    async def wait(self) -> None:
        await self._done.wait()


class AudioSession:
    """At most one utterance plays; starting another stops the current one."""

    def __init__(self) -> None:
        self.active: Optional[Playback] = None

    async def play(self, playback: Playback) -> None:
        self.stop()
        self.active = playback
        await playback.start()

    def stop(self) -> None:
        if self.active is not None:
            self.active.stop()
            self.active = None

    def release(self) -> None:
        self.stop()


class RemoteVoice:
    def __init__(self, tutor: Any, sink: Optional[AudioSink] = None):
        self.tutor = tutor
        self.sink = sink

    async def prepare(self, message_id: int, text: str, on_reveal: RevealFunc) -> PcmPlayback:
        audio = await self.tutor.synthesize_speech(text)
        return PcmPlayback(message_id, text, decode_pcm(audio), on_reveal, sink=self.sink)


class LocalVoice:
    def __init__(self, synthesizer: Optional[LocalSynthesizer] = None):
        self.synthesizer = synthesizer or LocalSynthesizer()

    async def prepare(self, message_id: int, text: str, on_reveal: RevealFunc) -> LocalUtterance:
        return LocalUtterance(message_id, text, self.synthesizer, on_reveal)


class SpeechController:
    def __init__(
        self,
        local: Optional[LocalVoice] = None,
        remote: Optional[RemoteVoice] = None,
        session: Optional[AudioSession] = None,
        notify: Optional[Callable[[str], None]] = None,
        voice_type: str = "local",
    ):
        self.local = local or LocalVoice()
        self.remote = remote
        self.session = session or AudioSession()
        self.notify = notify
        self.voice_type = "local"
        self.revealed: dict[int, int] = {}
        self._noticed = False
        self._epoch = 0
        if voice_type == "ai":
            self.use_ai_voice()

    def use_ai_voice(self, enabled: bool = True) -> None:
        """Opt in to (or out of) the remote voice; the local voice is the default."""
        if enabled and self.remote is None:
            raise ConfigurationError("no AI voice is configured")
        self.voice_type = "ai" if enabled else "local"

    def _reveal(self, message_id: int, chars: int) -> None:
        self.revealed[message_id] = chars

    @property
    def speaking(self) -> Optional[int]:
        active = self.session.active
        if active is None or getattr(active, "finished", False):
            return None
        return active.message_id

    def _fall_back(self, exc: BaseException) -> None:
        log.warning("AI voice failed (%s); switching to local voice", exc)
        self.voice_type = "local"
        if not self._noticed:
            self._noticed = True
            if self.notify is not None:
                self.notify(LOCAL_FALLBACK_NOTICE)

    async def speak(
        self, text: str, message_id: int, is_current: Optional[Callable[[], bool]] = None
    ) -> Optional[Playback]:
        """Speak ``text``. Returns None when there is nothing to say or when the
        audio is ready only after the session moved on."""
        clean = strip_code_blocks(text)
        if not clean:
            return None
        epoch = self._epoch

        playback: Optional[Playback] = None
        if self.voice_type == "ai" and self.remote is not None:
            try:
                playback = await self.remote.prepare(message_id, clean, self._reveal)
            except Exception as e:
                self._fall_back(e)
        if playback is None:
            playback = await self.local.prepare(message_id, clean, self._reveal)

        if epoch != self._epoch or (is_current is not None and not is_current()):
            log.debug("dropping speech for message %s, session moved on", message_id)
            return None
        await self.session.play(playback)
        return playback

    def stop(self) -> None:
        self._epoch += 1
        self.session.stop()

    def close(self) -> None:
        self._epoch += 1
        self.session.release()
