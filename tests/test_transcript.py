from salescall.transcript import to_json_array, to_plain_text, to_timestamped_dump


class TestToPlainText:
    def test_basic_conversation(self):
        history = [
            {"speaker": "system", "text": "Hi Jonas, is now a good time?", "timestamp": 1000.0, "step": "greeting"},
            {"speaker": "customer", "text": "Yes.", "timestamp": 1003.0, "step": "greeting", "confidence": 0.93},
            {"speaker": "system", "text": "Are you still interested?", "timestamp": 1004.0, "step": "confirm_interest"},
        ]
        assert to_plain_text(history) == (
            "Agent: Hi Jonas, is now a good time?\n"
            "Customer: Yes.\n"
            "Agent: Are you still interested?"
        )

    def test_silent_customer_turn(self):
        history = [{"speaker": "customer", "text": "  ", "timestamp": 1000.0, "step": "greeting"}]
        assert to_plain_text(history) == "Customer: (no response)"

    def test_unknown_speakers_skipped(self):
        history = [
            {"speaker": "system", "text": "Hello.", "timestamp": 1000.0},
            {"speaker": "debug", "text": "ignored", "timestamp": 1000.5},
        ]
        assert to_plain_text(history) == "Agent: Hello."

    def test_empty_history(self):
        assert to_plain_text([]) == ""


class TestToJsonArray:
    def test_keeps_speaker_text_and_confidence(self):
        history = [
            {"speaker": "system", "text": "Hello.", "timestamp": 1000.0, "step": "greeting"},
            {"speaker": "customer", "text": "Hi.", "timestamp": 1001.0, "step": "greeting", "confidence": 0.8},
        ]
        assert to_json_array(history) == [
            {"speaker": "system", "text": "Hello."},
            {"speaker": "customer", "text": "Hi.", "confidence": 0.8},
        ]

    def test_empty_history(self):
        assert to_json_array([]) == []


class TestToTimestampedDump:
    def test_relative_timestamps(self):
        history = [
            {"speaker": "system", "text": "Hello.", "timestamp": 1000.0, "step": "greeting"},
            {"speaker": "customer", "text": "Hi.", "timestamp": 1002.34, "step": "greeting", "confidence": 0.9},
        ]
        dump = to_timestamped_dump(history, 1000.0, "CA_1", "+15125551234", "confirm_interest")
        assert dump["call_id"] == "CA_1"
        assert dump["phone"] == "+15125551234"
        assert dump["final_step"] == "confirm_interest"
        assert dump["entries"] == [
            {"t": 0.0, "speaker": "system", "step": "greeting", "text": "Hello."},
            {"t": 2.3, "speaker": "customer", "step": "greeting", "text": "Hi.", "confidence": 0.9},
        ]

    def test_zero_start_uses_first_timestamp(self):
        history = [
            {"speaker": "system", "text": "Hello.", "timestamp": 500.0, "step": "greeting"},
            {"speaker": "customer", "text": "Hi.", "timestamp": 505.0, "step": "greeting"},
        ]
        dump = to_timestamped_dump(history, 0, "CA_1", "", "greeting")
        assert [e["t"] for e in dump["entries"]] == [0.0, 5.0]

    def test_entries_without_timestamp_skipped(self):
        history = [{"speaker": "system", "text": "Hello.", "step": "greeting"}]
        assert to_timestamped_dump(history, 1000.0, "CA_1", "", "greeting")["entries"] == []
