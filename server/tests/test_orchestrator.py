import random

import pytest

from guided_form.form_builder import UnknownFieldError
from guided_form.orchestrator import DialogueOrchestrator, DialogueState, SessionClosedError
from guided_form.profile import UserProfile
from guided_form.speech import NO_SPEECH, RecognitionResult, SpeechIOManager
from guided_form.translations import rephrasings

WELCOME = "Let's complete your Contact Details form."
GOT_IT = "Got it, thank you!"
DIDNT_CATCH = "I didn't catch that. Could you try again?"
ALL_COMPLETE = "Great! All required fields are complete. You can review and submit your form now."


@pytest.fixture
def make(clock, settings, draft_store, form_store):
    def factory(template, synthesizer=None, recognizer=None, **kwargs):
        kwargs.setdefault("draft_store", draft_store)
        kwargs.setdefault("submission_sink", form_store)
        return DialogueOrchestrator(
            template,
            SpeechIOManager(synthesizer, recognizer),
            clock,
            settings=settings,
            rng=random.Random(0),
            **kwargs,
        )
    return factory


def last_message(orch):
    return orch.chat[-1].content


def answer(orch, clock, text):
    orch.submit_text(text)
    clock.advance(1.0 + 1.8)


def to_first_field(orch, clock, voice=False):
    orch.start(voice=voice)
    clock.advance(3.5)


def to_listening(orch, clock, synthesizer):
    """Start in voice mode and play prompts until the microphone opens."""
    orch.start(voice=True)
    synthesizer.finish()
    clock.advance(3.5)
    synthesizer.finish()
    clock.advance(0.5)
    assert orch.state == DialogueState.LISTENING


def test_typed_session_fills_every_required_field(make, clock, contact_template, draft_store):
    orch = make(contact_template)
    orch.start(voice=False)

    assert orch.state == DialogueState.IDLE
    assert not orch.voice_enabled
    assert last_message(orch).startswith(WELCOME)

    clock.advance(3.5)
    assert orch.current_field_id == "full_name"
    assert last_message(orch) == "What is your full name?"
    assert orch.chat[-1].field_id == "full_name"

    orch.submit_text("my name is John Smith")
    assert orch.state == DialogueState.THINKING
    assert orch.answers["full_name"] == "John Smith"

    clock.advance(1.0)
    assert last_message(orch) == GOT_IT
    assert orch.state == DialogueState.IDLE

    clock.advance(1.8)
    assert orch.current_field_id == "email"
    assert last_message(orch) == "What is your email address?"

    answer(orch, clock, "john at example dot com")
    assert orch.answers["email"] == "john@example.com"
    assert orch.current_field_id == "start_date"
    assert last_message(orch) == "What is your start date?"

    answer(orch, clock, "02/01/2024")
    assert orch.answers["start_date"] == "02/01/2024"
    assert orch.guided_complete
    assert last_message(orch) == ALL_COMPLETE
    assert orch.progress == (100, 0)
    assert "nickname" not in orch.answers

    snapshot = orch.snapshot()
    assert snapshot["progress_percent"] == 100
    assert snapshot["state"] == "idle"

    clock.advance(1.0)
    draft = draft_store.get(orch.draft_id)
    assert draft.answers == {
        "full_name": "John Smith",
        "email": "john@example.com",
        "start_date": "02/01/2024",
    }
    assert draft.progress_percent == 100


def test_voice_session_listens_after_each_prompt(make, clock, contact_template, synthesizer, recognizer):
    orch = make(contact_template, synthesizer, recognizer)
    orch.start()

    assert orch.voice_enabled
    assert orch.state == DialogueState.SPEAKING
    assert synthesizer.last_text.startswith(WELCOME)

    # The welcome belongs to no field, so nothing listens after it
    synthesizer.finish()
    assert orch.state == DialogueState.IDLE
    clock.advance(1.0)
    assert not recognizer.active

    clock.advance(2.5)
    assert synthesizer.last_text == "What is your full name?"
    synthesizer.finish()
    clock.advance(0.4)
    assert orch.state == DialogueState.IDLE
    clock.advance(0.1)
    assert orch.state == DialogueState.LISTENING
    assert recognizer.active

    recognizer.interim("John")
    assert orch.snapshot()["interim_transcript"] == "John"

    recognizer.hear("John Smith", confidence=0.8)
    assert orch.state == DialogueState.THINKING
    assert not recognizer.active
    assert orch.chat[-1].confidence == 0.8
    assert orch.answers["full_name"] == "John Smith"

    clock.advance(1.0)
    assert synthesizer.last_text == GOT_IT
    synthesizer.finish()
    clock.advance(1.8)
    assert synthesizer.last_text == "What is your email address?"
    synthesizer.finish()
    clock.advance(0.5)
    recognizer.hear("john at example dot com")
    clock.advance(2.8)
    assert orch.answers["email"] == "john@example.com"
    assert orch.current_field_id == "start_date"


def test_voice_requested_without_synthesis_falls_back_to_text(make, clock, contact_template, recognizer):
    orch = make(contact_template, None, recognizer)
    orch.start(voice=True)
    assert not orch.voice_enabled
    assert orch.state == DialogueState.IDLE


def test_voice_without_synthesis_listens_after_each_prompt(make, clock, contact_template, recognizer):
    orch = make(contact_template, None, recognizer)
    to_first_field(orch, clock)
    orch.set_voice_enabled(True)
    clock.advance(0.5)
    assert orch.state == DialogueState.LISTENING

    recognizer.hear("John Doe")
    assert orch.answers["full_name"] == "John Doe"
    clock.advance(1.0 + 1.8)
    assert orch.current_field_id == "email"
    assert orch.state == DialogueState.IDLE

    clock.advance(0.5)
    assert orch.state == DialogueState.LISTENING
    assert recognizer.active

    recognizer.fail("network")
    assert last_message(orch) == DIDNT_CATCH
    assert orch.state == DialogueState.IDLE
    clock.advance(1.0)
    assert orch.state == DialogueState.LISTENING
    assert len(recognizer.starts) == 3


def test_clearing_current_answer_cancels_acknowledgement(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)

    orch.submit_text("John Doe")
    orch.edit_field("full_name", "")
    assert orch.state == DialogueState.IDLE

    clock.advance(3.0)
    assert "full_name" not in orch.answers
    assert orch.current_field_id == "full_name"
    assert GOT_IT not in [m.content for m in orch.chat]

    answer(orch, clock, "Jane Doe")
    assert orch.current_field_id == "email"


def test_second_answer_while_thinking_is_ignored(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)

    orch.submit_text("Ada Lovelace")
    orch.submit_text("Grace Hopper")
    clock.advance(5)

    assert orch.answers["full_name"] == "Ada Lovelace"
    assert [m.content for m in orch.chat].count(GOT_IT) == 1
    assert orch.current_field_id == "email"


def test_typing_while_listening_stops_recognition(make, clock, contact_template, synthesizer, recognizer):
    orch = make(contact_template, synthesizer, recognizer)
    to_listening(orch, clock, synthesizer)
    stale = recognizer._on_result

    orch.submit_text("Jane Doe")
    assert not recognizer.active
    assert orch.state == DialogueState.THINKING

    # A recognition result from the abandoned session changes nothing
    stale(RecognitionResult("Someone Else", is_final=True))
    assert orch.answers["full_name"] == "Jane Doe"


def test_empty_extraction_reprompts(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)
    answer(orch, clock, "my name is John")
    orch.submit_text("...")

    assert orch.state == DialogueState.IDLE
    assert last_message(orch) == DIDNT_CATCH
    assert orch.chat[-1].field_id == "email"
    assert "email" not in orch.answers


def test_input_without_current_field_is_recorded_and_ignored(make, clock, contact_template):
    orch = make(contact_template)
    orch.start(voice=False)
    orch.submit_text("hello there")

    assert orch.chat[-1].role == "user"
    assert len(orch.answers) == 0
    assert orch.state == DialogueState.IDLE


def test_skip_and_revisit(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)

    orch.skip()
    assert orch.skipped == ["full_name"]
    assert orch.chat[-2].content == "Skip for now"
    assert last_message(orch) == "No problem, we can come back to this later."

    clock.advance(1.0)
    assert orch.current_field_id == "email"
    answer(orch, clock, "ada@example.com")
    answer(orch, clock, "2024-03-01")

    # The skipped field is never surfaced again on its own
    assert orch.guided_complete
    assert orch.progress.percent == 67

    orch.click_field("full_name")
    assert orch.skipped == []
    assert orch.current_field_id == "full_name"
    assert not orch.guided_complete
    assert last_message(orch) == "Let me help you with Full Name. What is your full name?"

    answer(orch, clock, "Ada Lovelace")
    assert orch.guided_complete
    assert orch.progress.percent == 100


def test_click_cancels_pending_advance(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)
    orch.submit_text("Ada")

    orch.click_field("start_date")
    clock.advance(5)
    assert orch.current_field_id == "start_date"
    assert GOT_IT not in [m.content for m in orch.chat]


def test_pause_and_resume(make, clock, contact_template, synthesizer, recognizer):
    orch = make(contact_template, synthesizer, recognizer)
    to_listening(orch, clock, synthesizer)

    orch.pause()
    assert orch.state == DialogueState.PAUSED
    assert not recognizer.active

    orch.resume()
    assert orch.state == DialogueState.LISTENING
    assert len(recognizer.starts) == 2

    orch.toggle_pause()
    assert orch.state == DialogueState.PAUSED
    orch.toggle_pause()
    assert orch.state == DialogueState.LISTENING


def test_pause_is_voice_only(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)
    orch.pause()
    assert orch.state == DialogueState.IDLE


def test_voice_toggle(make, clock, contact_template, synthesizer, recognizer):
    orch = make(contact_template, synthesizer, recognizer)
    to_listening(orch, clock, synthesizer)

    orch.set_voice_enabled(False)
    assert orch.state == DialogueState.IDLE
    assert not recognizer.active
    clock.advance(10)
    assert orch.state == DialogueState.IDLE

    orch.toggle_voice()
    assert orch.voice_enabled
    clock.advance(0.5)
    assert orch.state == DialogueState.LISTENING


def test_mic_toggle(make, clock, contact_template, recognizer):
    orch = make(contact_template, None, recognizer)
    to_first_field(orch, clock)

    orch.toggle_mic()
    assert orch.state == DialogueState.LISTENING
    orch.toggle_mic()
    assert orch.state == DialogueState.IDLE
    assert not recognizer.active


def test_recognition_error_retries_in_voice_mode(make, clock, contact_template, synthesizer, recognizer):
    orch = make(contact_template, synthesizer, recognizer)
    to_listening(orch, clock, synthesizer)

    recognizer.fail("network")
    assert orch.state == DialogueState.SPEAKING
    assert synthesizer.last_text == DIDNT_CATCH

    synthesizer.finish()
    clock.advance(0.9)
    assert orch.state == DialogueState.IDLE
    clock.advance(0.1)
    assert orch.state == DialogueState.LISTENING


def test_recognition_retries_are_bounded(make, clock, contact_template, synthesizer, recognizer):
    orch = make(contact_template, synthesizer, recognizer)
    to_listening(orch, clock, synthesizer)

    for _ in range(3):
        recognizer.fail("network")
        synthesizer.finish()
        clock.advance(1.0)
        assert orch.state == DialogueState.LISTENING

    recognizer.fail("network")
    synthesizer.finish()
    clock.advance(5)
    assert orch.state == DialogueState.IDLE


def test_no_speech_is_silent(make, clock, contact_template, synthesizer, recognizer):
    orch = make(contact_template, synthesizer, recognizer)
    to_listening(orch, clock, synthesizer)
    messages = len(orch.chat)

    recognizer.fail(NO_SPEECH)
    assert orch.state == DialogueState.IDLE
    assert len(orch.chat) == messages
    clock.advance(5)
    assert orch.state == DialogueState.IDLE
    assert not recognizer.active


def test_select_quick_replies(make, clock, plan_template):
    orch = make(plan_template)
    to_first_field(orch, clock)

    assert orch.current_field_id == "plan"
    assert orch.chat[-1].quick_replies == ["Starter", "Growth", "Enterprise", "Custom"]

    orch.quick_reply("Growth")
    assert orch.answers["plan"] == "growth"
    clock.advance(2.8)

    assert orch.current_field_id == "addons"
    assert orch.chat[-1].quick_replies == ["Support", "Analytics", "SSO"]
    orch.quick_reply("SSO")
    clock.advance(2.8)
    assert orch.answers["addons"] == ["SSO"]
    assert orch.guided_complete


def test_prepopulated_welcome_and_confirmation(make, clock, contact_template):
    orch = make(contact_template, profile=UserProfile(full_name="Ada Lovelace", email="ada@example.com"))
    orch.start(voice=False)

    welcome = last_message(orch)
    assert "Full Name: Ada Lovelace" in welcome
    assert "Email: ada@example.com" in welcome
    assert orch.chat[-1].quick_replies == ["Looks good", "Need to update something"]

    # No automatic advance until the user confirms
    clock.advance(10)
    assert orch.current_field_id is None

    orch.quick_reply("Looks good")
    assert orch.state == DialogueState.THINKING
    clock.advance(1.0)
    assert last_message(orch).startswith("Perfect!")
    clock.advance(3.0)
    assert orch.current_field_id == "start_date"


def test_confirmation_in_another_language(make, clock, contact_template):
    orch = make(contact_template, profile=UserProfile(full_name="Ada"), language="it-IT")
    orch.start(voice=False)
    orch.quick_reply("Devo aggiornare qualcosa")
    clock.advance(1.0)
    assert last_message(orch).startswith("Nessun problema!")


def test_direct_edits(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)

    orch.edit_field("email", "ada@example.com")
    assert orch.answers["email"] == "ada@example.com"
    assert orch.current_field_id == "full_name"
    assert orch.state == DialogueState.IDLE

    orch.edit_field("email", "")
    assert "email" not in orch.answers

    orch.edit_field("full_name", "Ada")
    assert orch.state == DialogueState.THINKING
    clock.advance(2.8)
    assert orch.current_field_id == "email"

    with pytest.raises(UnknownFieldError):
        orch.edit_field("shoe_size", "9")
    with pytest.raises(UnknownFieldError):
        orch.click_field("shoe_size")


def test_repeat_and_rephrase_keep_position(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)

    orch.repeat()
    assert [m.content for m in orch.chat[-2:]] == ["What is your full name?"] * 2

    orch.rephrase()
    assert last_message(orch) in rephrasings("Full Name", "en-US")
    assert orch.current_field_id == "full_name"


def test_language_switch(make, clock, contact_template, synthesizer):
    orch = make(contact_template, synthesizer)
    orch.set_language("it-IT")

    assert orch.language == "it-IT"
    assert orch.speech.language == "it-IT"
    assert last_message(orch) == "Perfetto! Ora parlerò in italiano."

    to_first_field(orch, clock)
    assert last_message(orch) == "Qual è il tuo full name?"

    with pytest.raises(ValueError):
        orch.set_language("fr-FR")


def test_submit_blocks_on_validation(make, clock, contact_template):
    orch = make(contact_template)
    to_first_field(orch, clock)

    result = orch.submit()
    assert not result.success
    assert [issue.field_id for issue in result.issues] == ["full_name", "email", "start_date"]
    assert last_message(orch).startswith("I found 3 issues")
    assert orch.snapshot()["validation_errors"][0]["field_id"] == "full_name"


def fill_contact(orch, clock):
    to_first_field(orch, clock)
    answer(orch, clock, "Ada Lovelace")
    answer(orch, clock, "ada@example.com")
    answer(orch, clock, "2024-03-01")


def test_submit_success_discards_draft(make, clock, contact_template, form_store, draft_store):
    orch = make(contact_template)
    fill_contact(orch, clock)
    draft_id = orch.save_draft()
    assert draft_store.get(draft_id) is not None

    result = orch.submit()

    assert result.success
    submissions = form_store.get_submissions("contact")
    assert [s.id for s in submissions] == [result.submission_id]
    assert "  Full Name: Ada Lovelace" in submissions[0].summary
    assert draft_store.get(draft_id) is None
    assert last_message(orch) == "Thank you! Your form has been submitted."

    clock.advance(5)
    assert draft_store.drafts == {}


def test_submit_failure_keeps_draft(make, clock, contact_template, draft_store):
    class FailingSink:
        def create_submission(self, template_id, answers, summary):
            raise ConnectionError("database unavailable")

    orch = make(contact_template, submission_sink=FailingSink())
    fill_contact(orch, clock)
    draft_id = orch.save_draft()

    result = orch.submit()

    assert not result.success
    assert result.error == "database unavailable"
    assert last_message(orch) == "There was an error submitting your form. Please try again."
    assert draft_store.get(draft_id) is not None


def test_resume_from_draft(make, clock, contact_template, draft_store):
    first = make(contact_template)
    to_first_field(first, clock)
    answer(first, clock, "Ada Lovelace")
    first.skip()
    draft_id = first.save_draft()
    first.close()

    draft = draft_store.get(draft_id)
    resumed = make(contact_template, draft=draft)

    assert resumed.answers["full_name"] == "Ada Lovelace"
    assert resumed.current_field_id == "email"
    assert resumed.skipped == ["email"]
    assert len(resumed.chat) == len(draft.chat_history)
    assert resumed.draft_id == draft_id


def test_close_cancels_everything(make, clock, contact_template, synthesizer, recognizer):
    orch = make(contact_template, synthesizer, recognizer)
    to_listening(orch, clock, synthesizer)
    orch.submit_text("Ada")

    orch.close()

    assert clock.pending == 0
    assert not recognizer.active
    assert not synthesizer.speaking
    with pytest.raises(SessionClosedError):
        orch.skip()


def test_failing_handler_recovers_to_idle(make, clock, contact_template):
    class ExplodingExtractor:
        def extract(self, utterance, field):
            raise RuntimeError("boom")

    orch = make(contact_template, extractor=ExplodingExtractor())
    to_first_field(orch, clock)
    orch.submit_text("Ada")

    assert orch.state == DialogueState.IDLE
    orch.skip()
    clock.advance(1.0)
    assert orch.current_field_id == "email"
