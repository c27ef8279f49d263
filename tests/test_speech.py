"""
Speech tests: PCM decoding, the one-utterance-at-a-time audio session and
the permanent fallback to the local voice.
"""

import asyncio
import base64
import struct

import pytest

from codeloom.errors import ConfigurationError, UpstreamError, UpstreamQuotaExceeded
from codeloom.speech import (
    LOCAL_FALLBACK_NOTICE,
    AudioSession,
    AudioSink,
    LocalSynthesizer,
    LocalUtterance,
    LocalVoice,
    PcmPlayback,
    RemoteVoice,
    SpeechController,
    decode_pcm,
)

from conftest import FakeTutor


def pcm_b64(samples):
    return base64.b64encode(struct.pack("<%dh" % len(samples), *samples)).decode()


class RecordingSink(AudioSink):
    def __init__(self):
        self.started = []
        self.stopped = 0

    def start(self, samples, sample_rate):
        self.started.append((len(samples), sample_rate))

    def stop(self):
        self.stopped += 1


class TestDecodePcm:
    def test_scales_to_unit_range(self):
        samples = decode_pcm(pcm_b64([0, 16384, -32768, 32767]))
        assert list(samples)[:3] == [0.0, 0.5, -1.0]
        assert samples[3] == pytest.approx(32767 / 32768)

    def test_odd_byte_dropped(self):
        raw = struct.pack("<2h", 1, 2) + b"\x05"
        assert len(decode_pcm(base64.b64encode(raw).decode())) == 2

    def test_invalid_base64(self):
        with pytest.raises(UpstreamError):
            decode_pcm("***not base64***")


@pytest.mark.anyio
class TestPlayback:
    async def test_pcm_reveals_text_and_releases_buffer(self):
        revealed = {}
        sink = RecordingSink()
        samples = decode_pcm(pcm_b64([0] * 240))  # 10 ms at 24 kHz
        playback = PcmPlayback(7, "hello", samples, lambda mid, n: revealed.__setitem__(mid, n), sink=sink, tick_s=0.001)

        await playback.start()
        await asyncio.wait_for(playback.wait(), 2)
        assert revealed[7] == 5
        assert sink.started == [(240, 24000)]
        assert playback.samples is None

    async def test_local_word_boundaries(self):
        seen = []
        utterance = LocalUtterance(1, "one two three", LocalSynthesizer(words_per_minute=60000), lambda mid, n: seen.append(n))
        await utterance.start()
        await asyncio.wait_for(utterance.wait(), 2)
        assert seen == [0, 3, 7, 13, 13]

    async def test_session_keeps_one_active(self):
        session = AudioSession()
        sink = RecordingSink()
        slow = LocalSynthesizer(words_per_minute=1)
        first = LocalUtterance(1, "a b c", slow, lambda mid, n: None)
        second = PcmPlayback(2, "x", decode_pcm(pcm_b64([0] * 24000)), lambda mid, n: None, sink=sink)

        await session.play(first)
        assert session.active is first
        await session.play(second)
        assert first.finished
        assert session.active is second

        session.release()
        assert session.active is None
        assert second.finished and second.samples is None
        assert sink.stopped == 1


@pytest.mark.anyio
class TestSpeechController:
    async def test_local_only(self):
        ctl = SpeechController(local=LocalVoice(LocalSynthesizer(words_per_minute=60000)))
        assert ctl.voice_type == "local"
        playback = await ctl.speak("Hi there", 1)
        await asyncio.wait_for(playback.wait(), 2)
        assert ctl.revealed[1] == len("Hi there")

    async def test_remote_plays_pcm(self):
        tutor = FakeTutor(speech=pcm_b64([0] * 240))
        ctl = SpeechController(local=LocalVoice(), remote=RemoteVoice(tutor), voice_type="ai")
        playback = await ctl.speak("Hello", 3)
        assert isinstance(playback, PcmPlayback)
        assert ctl.voice_type == "ai"
        ctl.close()

    async def test_code_blocks_not_spoken(self):
        tutor = FakeTutor(speech=pcm_b64([0] * 240))
        ctl = SpeechController(remote=RemoteVoice(tutor), voice_type="ai")
        assert await ctl.speak("```js\nx()\n```", 1) is None
        await ctl.speak("Try this ```js\nx()\n``` now", 2)
        assert tutor.speech_calls == ["Try this  now"]
        ctl.close()

    async def test_falls_back_once_and_for_good(self):
        notices = []
        tutor = FakeTutor(speech=UpstreamQuotaExceeded("429"))
        ctl = SpeechController(
            local=LocalVoice(LocalSynthesizer(words_per_minute=60000)),
            remote=RemoteVoice(tutor),
            notify=notices.append,
            voice_type="ai",
        )

        first = await ctl.speak("First message", 1)
        assert isinstance(first, LocalUtterance)
        assert ctl.voice_type == "local"

        tutor.speech = pcm_b64([0] * 240)
        second = await ctl.speak("Second message", 2)
        assert isinstance(second, LocalUtterance)
        assert tutor.speech_calls == ["First message"]
        assert notices == [LOCAL_FALLBACK_NOTICE]
        ctl.close()

    async def test_local_voice_is_the_default(self):
        tutor = FakeTutor(speech=pcm_b64([0] * 240))
        ctl = SpeechController(local=LocalVoice(LocalSynthesizer(words_per_minute=60000)), remote=RemoteVoice(tutor))
        assert ctl.voice_type == "local"
        assert isinstance(await ctl.speak("Hi", 1), LocalUtterance)
        assert tutor.speech_calls == []

        ctl.use_ai_voice()
        assert ctl.voice_type == "ai"
        assert isinstance(await ctl.speak("Hi again", 2), PcmPlayback)
        ctl.close()

    async def test_ai_voice_needs_a_remote(self):
        with pytest.raises(ConfigurationError):
            SpeechController().use_ai_voice()


@pytest.mark.anyio
class TestLateAudio:
    def remote_controller(self, tutor):
        return SpeechController(remote=RemoteVoice(tutor), voice_type="ai")

    async def test_audio_ready_after_stop_is_dropped(self):
        tutor = FakeTutor(speech=pcm_b64([0] * 240))
        gate = tutor.speech_gate = asyncio.Event()
        ctl = self.remote_controller(tutor)

        pending = asyncio.ensure_future(ctl.speak("Old lesson", 1))
        await asyncio.sleep(0)
        ctl.stop()
        gate.set()

        assert await asyncio.wait_for(pending, 2) is None
        assert ctl.session.active is None

    async def test_audio_ready_after_close_is_dropped(self):
        tutor = FakeTutor(speech=pcm_b64([0] * 240))
        gate = tutor.speech_gate = asyncio.Event()
        ctl = self.remote_controller(tutor)

        pending = asyncio.ensure_future(ctl.speak("Goodbye", 1))
        await asyncio.sleep(0)
        ctl.close()
        gate.set()

        assert await asyncio.wait_for(pending, 2) is None
        assert ctl.session.active is None

    async def test_is_current_checked_before_play(self):
        ctl = self.remote_controller(FakeTutor(speech=pcm_b64([0] * 240)))
        assert await ctl.speak("Moved on", 1, is_current=lambda: False) is None
        assert ctl.session.active is None

        playback = await ctl.speak("Still here", 2, is_current=lambda: True)
        assert ctl.session.active is playback
        ctl.close()
