import pytest

from guided_form.clock import ManualClock
from guided_form.config import Settings
from guided_form.form_builder import FormStore, FormTemplate, initialize_sample_forms
from guided_form.memory import InMemoryDraftStore
from guided_form.speech import RecognitionResult


class FakeSynthesizer:
    """Records utterances; playback completes only when the test says so."""

    available = True

    def __init__(self):
        self.spoken = []
        self.cancels = 0
        self._on_end = None

    @property
    def speaking(self):
        return self._on_end is not None

    @property
    def last_text(self):
        return self.spoken[-1][0] if self.spoken else None

    def speak(self, text, language, on_end):
        self.spoken.append((text, language))
        self._on_end = on_end

    def cancel(self):
        self.cancels += 1
        self._on_end = None

    def finish(self):
        on_end, self._on_end = self._on_end, None
        if on_end:
            on_end()


class FakeRecognizer:
    available = True

    def __init__(self):
        self.starts = []
        self.stops = 0
        self._on_result = None
        self._on_error = None

    @property
    def active(self):
        return self._on_result is not None

    def start(self, language, on_result, on_error):
        self.starts.append(language)
        self._on_result = on_result
        self._on_error = on_error

    def stop(self):
        self.stops += 1
        self._on_result = None
        self._on_error = None

    def interim(self, transcript):
        self._on_result(RecognitionResult(transcript=transcript, is_final=False))

    def hear(self, transcript, confidence=0.95, alternatives=()):
        self._on_result(RecognitionResult(
            transcript=transcript, confidence=confidence, is_final=True, alternatives=list(alternatives)
        ))

    def fail(self, error):
        self._on_error(error)


CONTACT_TEMPLATE = {
    "id": "contact",
    "name": "Contact Details",
    "sections": [
        {
            "id": "about",
            "title": "About You",
            "fields": [
                {"id": "full_name", "label": "Full Name", "required": True},
                {"id": "nickname", "label": "Nickname"},
                {"id": "email", "label": "Email", "type": "email", "required": True,
                 "prompt": "What is your email address?"},
            ],
        },
        {
            "id": "schedule",
            "title": "Schedule",
            "fields": [
                {"id": "start_date", "label": "Start Date", "type": "date", "required": True},
            ],
        },
    ],
}

PLAN_TEMPLATE = {
    "id": "plan",
    "name": "Plan Selection",
    "sections": [
        {
            "id": "plan",
            "title": "Plan",
            "fields": [
                {"id": "plan", "label": "Plan", "type": "single_select", "required": True,
                 "options": [
                     {"value": "starter", "label": "Starter"},
                     {"value": "growth", "label": "Growth"},
                     {"value": "enterprise", "label": "Enterprise"},
                     {"value": "custom", "label": "Custom"},
                     {"value": "trial", "label": "Trial"},
                 ]},
                {"id": "addons", "label": "Add-ons", "type": "multi_select", "required": True,
                 "options": ["Support", "Analytics", "SSO"]},
            ],
        },
    ],
}


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def recognizer():
    return FakeRecognizer()


@pytest.fixture
def contact_template():
    return FormTemplate(**CONTACT_TEMPLATE)


@pytest.fixture
def plan_template():
    return FormTemplate(**PLAN_TEMPLATE)


@pytest.fixture
def form_store():
    store = FormStore()
    initialize_sample_forms(store)
    store.create_template(CONTACT_TEMPLATE)
    store.create_template(PLAN_TEMPLATE)
    return store


@pytest.fixture
def draft_store():
    return InMemoryDraftStore()
