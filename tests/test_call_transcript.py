import json
import os
import sys

# Add scripts to path so we can import the module
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "scripts"))
from call_transcript import format_transcript, parse_transcript_lines


def _dump(call_id="CA_test", entries=None, **extra):
    body = {
        "call_id": call_id,
        "phone": "+15125551234",
        "final_step": "terminated",
        "outcome": "appointment_scheduled",
        "duration_s": 52,
        "entries": entries if entries is not None else [
            {"t": 0.0, "speaker": "system", "step": "greeting", "text": "Hi Jonas, is now a good time?"},
            {"t": 2.3, "speaker": "customer", "step": "greeting", "text": "Yes.", "confidence": 0.93},
        ],
    }
    body.update(extra)
    return body


class TestParseTranscriptLines:
    def test_single_chunk(self):
        lines = [f"TRANSCRIPT_DUMP|1/1|{json.dumps(_dump())}"]
        result = parse_transcript_lines(lines)
        assert len(result) == 1
        assert result[0]["call_id"] == "CA_test"
        assert len(result[0]["entries"]) == 2

    def test_log_prefix_ignored(self):
        lines = [f"2026-10-14 10:00:00 INFO salescall.post_call: TRANSCRIPT_DUMP|1/1|{json.dumps(_dump())}\n"]
        assert parse_transcript_lines(lines)[0]["call_id"] == "CA_test"

    def test_multi_chunk_reassembly(self):
        first = json.dumps(_dump("CA_multi", [{"t": 0.0, "speaker": "system", "step": "greeting", "text": "A"}]))
        second = json.dumps({"entries": [{"t": 5.0, "speaker": "customer", "step": "greeting", "text": "B"}]})
        lines = [f"TRANSCRIPT_DUMP|1/2|{first}", "unrelated line", f"TRANSCRIPT_DUMP|2/2|{second}"]
        result = parse_transcript_lines(lines)
        assert len(result) == 1
        assert [e["text"] for e in result[0]["entries"]] == ["A", "B"]

    def test_call_id_filter(self):
        lines = [
            f"TRANSCRIPT_DUMP|1/1|{json.dumps(_dump('CA_a'))}",
            f"TRANSCRIPT_DUMP|1/1|{json.dumps(_dump('CA_b'))}",
        ]
        result = parse_transcript_lines(lines, call_id="CA_b")
        assert [t["call_id"] for t in result] == ["CA_b"]

    def test_corrupt_chunk_skipped(self):
        lines = ["TRANSCRIPT_DUMP|1/1|{not json", f"TRANSCRIPT_DUMP|1/1|{json.dumps(_dump())}"]
        assert len(parse_transcript_lines(lines)) == 1

    def test_no_dumps(self):
        assert parse_transcript_lines(["INFO nothing here"]) == []


class TestFormatTranscript:
    def test_header_and_turns(self):
        out = format_transcript(_dump())
        assert out.splitlines()[0] == "Call CA_test | +15125551234 | 52s | appointment_scheduled"
        assert "Agent: Hi Jonas, is now a good time?" in out
        assert "Customer: Yes. (0.93)" in out
        assert "Call ended" in out

    def test_gap_marked(self):
        entries = [
            {"t": 0.0, "speaker": "system", "step": "greeting", "text": "Hello?"},
            {"t": 6.5, "speaker": "customer", "step": "greeting", "text": "Hi"},
        ]
        out = format_transcript(_dump(entries=entries))
        assert "+6.5s ⚠ SLOW" in out

    def test_small_gap_not_marked(self):
        entries = [
            {"t": 0.0, "speaker": "system", "step": "greeting", "text": "Hello?"},
            {"t": 1.0, "speaker": "customer", "step": "greeting", "text": "Hi"},
        ]
        assert "┆" not in format_transcript(_dump(entries=entries))

    def test_silent_customer_turn(self):
        entries = [{"t": 0.0, "speaker": "customer", "step": "greeting", "text": ""}]
        assert "Customer: (no response)" in format_transcript(_dump(entries=entries))

    def test_falls_back_to_final_step(self):
        dump = _dump()
        del dump["outcome"]
        assert format_transcript(dump).splitlines()[0].endswith("| terminated")
