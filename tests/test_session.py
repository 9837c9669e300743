import pytest
from salescall.session import CallSession, CustomerRecord, EMAIL, STILL_INTERESTED
from salescall.states import ScriptStep


def test_new_session_starts_at_greeting(session):
    assert session.step == ScriptStep.GREETING
    assert session.terminal is False
    assert session.dispatched is False
    assert session.turn_seq == 0


def test_session_fields_default_empty():
    s = CallSession(call_id="CA_1", customer=CustomerRecord(phone="+1"))
    assert s.extracted_data == {}
    assert s.turn_history == []
    assert s.outcome == ""
    assert s.customer.found is False


class TestAddTurn:
    def test_turns_accumulate_in_order(self, session):
        session.add_turn("system", "Hello")
        session.add_turn("customer", "Hi", 0.91)
        assert [t["speaker"] for t in session.turn_history] == ["system", "customer"]
        assert session.turn_history[1]["confidence"] == 0.91
        assert "confidence" not in session.turn_history[0]

    def test_turn_records_current_step(self, session):
        session.move_to(ScriptStep.OFFER_SIMILAR)
        session.add_turn("system", "Similar cars?")
        assert session.turn_history[0]["step"] == "offer_similar"

    def test_customer_turns_counts_only_customer(self, session):
        session.add_turn("system", "Hello")
        session.add_turn("customer", "Yes")
        session.add_turn("customer", "")
        assert session.customer_turns == 2


class TestRecordField:
    def test_first_write_lands(self, session):
        assert session.record_field(STILL_INTERESTED, "yes") is True
        assert session.extracted_data[STILL_INTERESTED] == "yes"

    def test_second_write_ignored(self, session):
        session.record_field(STILL_INTERESTED, "yes")
        assert session.record_field(STILL_INTERESTED, "no") is False
        assert session.extracted_data[STILL_INTERESTED] == "yes"

    def test_unknown_can_be_overwritten(self, session):
        session.record_field(EMAIL, "unknown")
        assert session.record_field(EMAIL, "jonas@example.com") is True
        assert session.extracted_data[EMAIL] == "jonas@example.com"

    def test_correction_overwrites(self, session):
        session.record_field(STILL_INTERESTED, "yes")
        assert session.record_field(STILL_INTERESTED, "no", correction=True) is True
        assert session.extracted_data[STILL_INTERESTED] == "no"


class TestMoveTo:
    def test_forward_move(self, session):
        session.move_to(ScriptStep.CONFIRM_INTEREST)
        assert session.step == ScriptStep.CONFIRM_INTEREST

    def test_backward_move_raises(self, session):
        session.move_to(ScriptStep.OFFER_SIMILAR)
        with pytest.raises(ValueError):
            session.move_to(ScriptStep.CONFIRM_INTEREST)

    def test_step_change_resets_retries(self, session):
        session.step_retries = 1
        session.awaiting = "appointmentTime"
        session.move_to(ScriptStep.CONFIRM_INTEREST)
        assert session.step_retries == 0
        assert session.awaiting == ""


class TestTerminate:
    def test_terminate_marks_session(self, session):
        assert session.terminate("system_error") is True
        assert session.terminal is True
        assert session.step == ScriptStep.TERMINATED
        assert session.outcome == "system_error"
        assert session.ended_at > 0

    def test_terminate_twice_is_noop(self, session):
        session.terminate("customer_hangup")
        assert session.terminate("abandoned") is False
        assert session.outcome == "customer_hangup"

    def test_explicit_outcome_not_replaced(self, session):
        session.outcome = "system_error"
        session.terminate("customer_hangup")
        assert session.outcome == "system_error"


def test_duration_uses_end_time(session):
    session.created_at = 1000.0
    session.ended_at = 1042.7
    assert session.duration_seconds == 42
