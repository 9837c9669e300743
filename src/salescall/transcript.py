_SPEAKER_LABELS = {"system": "Agent", "customer": "Customer"}


def to_plain_text(history: list[dict]) -> str:
    """Render turn history as plain text.

    System lines are prefixed with "Agent:", customer lines with "Customer:".
    Empty customer turns (silence / timeout) show as "(no response)".
    """
    if not history:
        return ""

    lines = []
    for entry in history:
        label = _SPEAKER_LABELS.get(entry.get("speaker", ""))
        if label is None:
            continue
        text = entry.get("text", "")
        if entry["speaker"] == "customer" and not text.strip():
            text = "(no response)"
        lines.append(f"{label}: {text}")
    return "\n".join(lines)


def to_json_array(history: list[dict]) -> list[dict]:
    """Turn history as a list of {speaker, text[, confidence]} for the workflow payload."""
    if not history:
        return []

    result = []
    for entry in history:
        if entry.get("speaker") not in _SPEAKER_LABELS:
            continue
        item = {"speaker": entry["speaker"], "text": entry.get("text", "")}
        if "confidence" in entry:
            item["confidence"] = entry["confidence"]
        result.append(item)
    return result


def to_timestamped_dump(
    history: list[dict],
    start_time: float,
    call_id: str,
    phone: str,
    final_step: str,
) -> dict:
    """Turn history with times relative to the call start, for the TRANSCRIPT_DUMP log line.

    A non-positive ``start_time`` falls back to the first timestamped turn.
    Turns without a timestamp are left out.
    """
    timed = [entry for entry in history if "timestamp" in entry]
    origin = start_time if start_time > 0 or not timed else timed[0]["timestamp"]

    entries = []
    for entry in timed:
        row = {
            "t": round(entry["timestamp"] - origin, 1),
            "speaker": entry.get("speaker", ""),
            "step": entry.get("step", ""),
            "text": entry.get("text", ""),
        }
        if "confidence" in entry:
            row["confidence"] = entry["confidence"]
        entries.append(row)

    return {"call_id": call_id, "phone": phone, "final_step": final_step, "entries": entries}
