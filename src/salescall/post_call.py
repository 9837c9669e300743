import json
import logging
from datetime import datetime, timezone

from salescall.session import (
    APPOINTMENT_TIME,
    EMAIL,
    GOOD_TIME,
    STILL_INTERESTED,
    WANTS_APPOINTMENT,
    WANTS_SIMILAR,
    CallSession,
)
from salescall.transcript import to_json_array, to_plain_text, to_timestamped_dump

logger = logging.getLogger(__name__)

# Outcomes set by the engine that no answer can override.
FAILURE_OUTCOMES = {"system_error", "call_failed"}

_NEXT_ACTIONS = {
    "appointment_scheduled": "send_appointment_confirmation",
    "interested_similar": "send_similar_cars_email",
    "callback_requested": "schedule_callback",
    "no_response": "schedule_retry_call",
    "customer_hangup": "schedule_retry_call",
    "abandoned": "schedule_retry_call",
}

# Outcome -> value written to the customer's Status column.
_RECORD_STATUS = {
    "appointment_scheduled": "appointment",
    "interested_similar": "interested",
    "not_interested": "not_interested",
    "callback_requested": "callback",
}


def _answered(value) -> bool:
    return bool(value) and value != "unknown"


def _outcome_from_answers(data: dict) -> str:
    if data.get(WANTS_APPOINTMENT) == "yes":
        if _answered(data.get(APPOINTMENT_TIME)):
            return "appointment_scheduled"
        return "callback_requested"
    if data.get(GOOD_TIME) == "no":
        return "callback_requested"
    if data.get(WANTS_SIMILAR) == "yes":
        return "interested_similar"
    if data.get(STILL_INTERESTED) == "no" or data.get(WANTS_SIMILAR) == "no":
        return "not_interested"
    return ""


def derive_outcome(session: CallSession) -> str:
    """Classify how the call went.

    Failures recorded by the engine win; otherwise the customer's answers
    decide, and only when they say nothing does the end reason
    (hangup, no answer, abandoned) stand.
    """
    if session.outcome in FAILURE_OUTCOMES:
        return session.outcome
    return _outcome_from_answers(session.extracted_data) or session.outcome or "incomplete"


def next_action(outcome: str, extracted_data: dict) -> str:
    if outcome == "not_interested":
        return "add_to_nurture_campaign" if _answered(extracted_data.get(EMAIL)) else "mark_as_closed"
    return _NEXT_ACTIONS.get(outcome, "manual_review_required")


def event_for(outcome: str) -> str:
    return "call_failed" if outcome in FAILURE_OUTCOMES else "call_completed"


def call_notes(session: CallSession, outcome: str) -> str:
    data = session.extracted_data
    notes = [f"Call duration: {session.duration_seconds} seconds", f"Outcome: {outcome}"]
    if data.get(STILL_INTERESTED) == "yes":
        notes.append("Customer confirmed interest")
    elif data.get(STILL_INTERESTED) == "no":
        notes.append("Customer no longer interested")
    if data.get(WANTS_APPOINTMENT) == "yes":
        notes.append("Customer wants to schedule appointment")
    if _answered(data.get(APPOINTMENT_TIME)):
        notes.append(f"Appointment requested for {data[APPOINTMENT_TIME]}")
    if data.get(WANTS_SIMILAR) == "yes":
        notes.append("Customer open to similar vehicles")
    if _answered(data.get(EMAIL)):
        notes.append(f"Email collected: {data[EMAIL]}")
    if outcome == "system_error":
        notes.append("Call ended after repeated technical failures, needs manual follow-up")
    return ". ".join(notes)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat() if ts > 0 else ""


def customer_ref(session: CallSession) -> str:
    return session.customer.key or session.customer.phone


def build_outcome_payload(session: CallSession) -> dict:
    """Everything downstream needs to know about a finished call."""
    outcome = derive_outcome(session)
    customer = session.customer
    return {
        "customer_ref": customer_ref(session),
        "phone_number": customer.phone,
        "customer_name": customer.name,
        "car_model": customer.car_model,
        "dealership_name": customer.dealership,
        "known_customer": customer.found,
        "outcome": outcome,
        "next_action": next_action(outcome, session.extracted_data),
        "extracted_data": dict(session.extracted_data),
        "transcript": to_plain_text(session.turn_history),
        "turns": to_json_array(session.turn_history),
        "customer_turns": session.customer_turns,
        "final_step": session.step.value,
        "duration_seconds": session.duration_seconds,
        "started_at": _iso(session.created_at),
        "ended_at": _iso(session.ended_at),
        "call_notes": call_notes(session, outcome),
    }


def build_record_fields(payload: dict) -> dict:
    """Customer-row fields written back after the call."""
    data = payload["extracted_data"]
    fields = {
        "status": _RECORD_STATUS.get(payload["outcome"], "follow_up"),
        "lastCallDate": (payload["ended_at"] or datetime.now(timezone.utc).isoformat())[:10],
        "callResult": payload["outcome"],
        "notes": payload["call_notes"],
        "callDuration": payload["duration_seconds"],
        "nextAction": payload["next_action"],
    }
    if _answered(data.get(APPOINTMENT_TIME)):
        fields["appointmentDate"] = data[APPOINTMENT_TIME]
    if _answered(data.get(EMAIL)):
        fields["email"] = data[EMAIL]
    return fields


def chunk_transcript_dump(dump: dict, max_bytes: int = 3500) -> list[str]:
    """Split a transcript dump into log-line sized pieces.

    Each piece reads ``TRANSCRIPT_DUMP|N/M|{json}``.  The header fields ride
    on the first piece only; later pieces carry entries alone.
    """
    header = {k: v for k, v in dump.items() if k != "entries"}
    entries = dump.get("entries", [])
    if not entries:
        return [f"TRANSCRIPT_DUMP|1/1|{json.dumps({**header, 'entries': []})}"]

    groups: list[list[dict]] = [[]]
    size = len(json.dumps({**header, "entries": []}).encode("utf-8"))
    for entry in entries:
        # +2 for the separator and closing bracket
        entry_size = len(json.dumps(entry).encode("utf-8")) + 2
        if groups[-1] and size + entry_size > max_bytes:
            groups.append([])
            size = len(json.dumps({"entries": []}).encode("utf-8"))
        groups[-1].append(entry)
        size += entry_size

    lines = []
    for i, group in enumerate(groups):
        body = {**header, "entries": group} if i == 0 else {"entries": group}
        lines.append(f"TRANSCRIPT_DUMP|{i + 1}/{len(groups)}|{json.dumps(body)}")
    return lines


def log_transcript_dump(session: CallSession, outcome: str) -> None:
    dump = to_timestamped_dump(
        session.turn_history,
        start_time=session.created_at,
        call_id=session.call_id,
        phone=session.customer.phone,
        final_step=session.step.value,
    )
    dump["outcome"] = outcome
    dump["duration_s"] = session.duration_seconds
    for line in chunk_transcript_dump(dump):
        logger.info(line)
