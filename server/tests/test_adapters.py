import base64
import math
from types import SimpleNamespace

import pytest

from guided_form import llm, stt, tts
from guided_form.config import Settings
from guided_form.extraction import EmailStrategy, SelectStrategy, ValueExtractor
from guided_form.form_builder import FormField
from guided_form.speech import NO_SPEECH

WAV_BYTES = b"RIFF0000WAVEfmt "


class FakeEngine:
    def __init__(self):
        self.properties = {}
        self.voices = [
            SimpleNamespace(id="english-us", languages=[b"\x05en-us"]),
            SimpleNamespace(id="italian", languages=["it"]),
        ]
        self._queued = []

    def setProperty(self, name, value):
        self.properties[name] = value

    def getProperty(self, name):
        return self.voices if name == "voices" else self.properties.get(name)

    def save_to_file(self, text, path):
        self._queued.append(path)

    def runAndWait(self):
        for path in self._queued:
            with open(path, "wb") as f:
                f.write(WAV_BYTES)
        self._queued = []


@pytest.fixture
def engine(monkeypatch):
    fake = FakeEngine()
    monkeypatch.setattr(tts.pyttsx3, "init", lambda: fake)
    return fake


def test_synthesizer_renders_clip_and_waits_for_playback(engine):
    synthesizer = tts.Pyttsx3Synthesizer()
    done = []

    assert synthesizer.available
    synthesizer.speak("Ciao", "it-IT", lambda: done.append(1))

    assert engine.properties["rate"] == tts.DEFAULT_RATE
    assert engine.properties["voice"] == "italian"
    [clip] = synthesizer.drain_audio()
    assert base64.b64decode(clip["audio_b64"]) == WAV_BYTES
    assert clip["text"] == "Ciao"
    assert synthesizer.drain_audio() == []

    assert not synthesizer.playback_finished("some-other-clip")
    assert done == []
    assert synthesizer.playback_finished(clip["id"])
    assert not synthesizer.playback_finished(clip["id"])
    assert done == [1]


def test_synthesizer_cancel_drops_completion(engine):
    synthesizer = tts.Pyttsx3Synthesizer(rate=200, voice="english-us")
    done = []
    synthesizer.speak("Hello", "en-US", lambda: done.append(1))
    synthesizer.cancel()
    synthesizer.playback_finished()

    assert done == []
    assert engine.properties["rate"] == 200
    assert engine.properties["voice"] == "english-us"


def test_synthesizer_complete_on_render(engine):
    synthesizer = tts.Pyttsx3Synthesizer(complete_on_render=True)
    done = []
    synthesizer.speak("Hello", "en-US", lambda: done.append(1))
    assert done == [1]


def test_synthesizer_unavailable_without_driver(monkeypatch):
    def broken_init():
        raise RuntimeError("no espeak")

    monkeypatch.setattr(tts.pyttsx3, "init", broken_init)
    assert not tts.Pyttsx3Synthesizer().available


def segment(text, avg_logprob=-0.1):
    return SimpleNamespace(text=text, avg_logprob=avg_logprob)


@pytest.fixture
def whisper(monkeypatch):
    calls = []
    outputs = {"segments": [segment(" John"), segment(" Smith ")]}

    def fake_transcribe(audio_bytes, language=None, model_size=None, device=None):
        calls.append((audio_bytes, language))
        if isinstance(outputs["segments"], Exception):
            raise outputs["segments"]
        return outputs["segments"]

    monkeypatch.setattr(stt, "transcribe_bytes", fake_transcribe)
    return SimpleNamespace(calls=calls, outputs=outputs)


def listen(recognizer, language="en-US"):
    results, errors = [], []
    recognizer.start(language, results.append, errors.append)
    return results, errors


def test_recognizer_emits_interim_then_final(whisper):
    recognizer = stt.WhisperRecognizer()
    results, errors = listen(recognizer)

    transcript = recognizer.feed_audio_b64(base64.b64encode(b"audio").decode())

    assert transcript == "John Smith"
    assert whisper.calls == [(b"audio", "en-US")]
    assert [(r.transcript, r.is_final) for r in results] == [
        ("John", False),
        ("John Smith", False),
        ("John Smith", True),
    ]
    assert results[-1].confidence == pytest.approx(math.exp(-0.1))
    assert errors == []


def test_recognizer_reports_silence_and_failures(whisper):
    recognizer = stt.WhisperRecognizer()
    results, errors = listen(recognizer)

    whisper.outputs["segments"] = [segment("  ")]
    recognizer.feed_audio_b64(base64.b64encode(b"silence").decode())
    whisper.outputs["segments"] = RuntimeError("bad audio")
    recognizer.feed_audio_b64(base64.b64encode(b"noise").decode())

    assert results == []
    assert errors == [NO_SPEECH, stt.TRANSCRIPTION_FAILED]


def test_recognizer_rejects_audio_when_not_listening(whisper):
    recognizer = stt.WhisperRecognizer()
    with pytest.raises(ValueError):
        recognizer.feed_audio_b64("AAAA")
    listen(recognizer)
    recognizer.stop()
    assert not recognizer.active


def test_whisper_language_codes():
    assert stt._whisper_language("it-IT") == "it"
    assert stt._whisper_language(None) is None


class FakeGemini:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    def generate_content(self, prompt, generation_config=None):
        self.prompts.append(prompt)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return SimpleNamespace(text=response)


EMAIL = FormField(id="email", label="Email", type="email")
ADDONS = FormField(id="addons", label="Add-ons", type="multi_select", options=["Support", "SSO"])


def test_gemini_strategy_parses_wrapped_json():
    model = FakeGemini('Sure! {"value": "ada@example.com"}')
    strategy = llm.GeminiExtractionStrategy(fallback=EmailStrategy(), model=model)
    assert strategy.extract("ada at example dot com", EMAIL) == "ada@example.com"
    assert '"user_message": "ada at example dot com"' in model.prompts[0]


def test_gemini_strategy_falls_back_to_heuristics():
    strategy = llm.GeminiExtractionStrategy(
        fallback=EmailStrategy(),
        model=FakeGemini("not json at all", RuntimeError("quota"), '{"value": null}'),
    )
    for _ in range(3):
        assert strategy.extract("ada at example dot com", EMAIL) == "ada@example.com"


def test_gemini_strategy_multi_select_list():
    strategy = llm.GeminiExtractionStrategy(fallback=SelectStrategy(), model=FakeGemini('{"value": ["SSO"]}'))
    assert ValueExtractor({ADDONS.type: strategy}).extract("just sso", ADDONS) == ["SSO"]


def test_gemini_strategy_requires_api_key():
    with pytest.raises(RuntimeError):
        llm.GeminiExtractionStrategy()


def test_build_extractor_uses_heuristics_by_default():
    extractor = llm.build_extractor(Settings(EXTRACTION_BACKEND="heuristic"))
    assert not any(isinstance(s, llm.GeminiExtractionStrategy) for s in extractor.strategies.values())

    extractor = llm.build_extractor(Settings(EXTRACTION_BACKEND="gemini", GEMINI_API_KEY=None))
    assert not any(isinstance(s, llm.GeminiExtractionStrategy) for s in extractor.strategies.values())
