import pytest

from salescall.prompts import STALE_CALL_GOODBYE, Script, classifier_prompt
from salescall.states import ScriptStep


def test_every_question_step_has_question_and_reprompt(script, session):
    for step in ScriptStep:
        if step.asks_question:
            assert script.question(session, step)
            assert script.reprompt(session, step)


def test_question_personalised(script, session):
    text = script.question(session, ScriptStep.GREETING)
    assert "Jonas" in text
    assert "Premier Auto" in text
    assert "Sarah" in text


def test_dealership_falls_back_to_script_default(session):
    session.customer.dealership = ""
    text = Script(dealership_name="Lakeside Motors").question(session, ScriptStep.GREETING)
    assert "Lakeside Motors" in text


def test_closing_uses_collected_email(script, session):
    session.extracted_data["email"] = "jonas@example.com"
    assert "jonas@example.com" in script.closing(session, "email_collected")


def test_unknown_closing_key_uses_default(script, session):
    assert script.closing(session, "nope") == "Thank you for your time, Jonas. Have a great day!"


def test_script_is_immutable(script):
    with pytest.raises(TypeError):
        script.questions[ScriptStep.GREETING] = "changed"


def test_question_text_has_no_placeholders(script):
    assert "{" not in script.question_text(ScriptStep.CONFIRM_INTEREST)


def test_classifier_prompt_lists_labels():
    prompt = classifier_prompt("Are you still interested?", ["yes", "no", "unknown"])
    assert "Are you still interested?" in prompt
    assert "['yes', 'no', 'unknown']" in prompt


def test_stale_goodbye_is_polite():
    assert STALE_CALL_GOODBYE.endswith("Goodbye!")
