#!/usr/bin/env python3
"""Rebuild call transcripts from TRANSCRIPT_DUMP log lines.

Usage:
    python scripts/call_transcript.py server.log                  # last call, human-readable
    docker logs salescall 2>&1 | python scripts/call_transcript.py  # from stdin
    python scripts/call_transcript.py server.log --raw            # last call, raw JSON
    python scripts/call_transcript.py server.log --call-id CA...  # specific call
    python scripts/call_transcript.py server.log --all            # every call in the log
    python scripts/call_transcript.py server.log --gap-threshold 3
"""

import argparse
import json
import sys

MARKER = "TRANSCRIPT_DUMP|"


def parse_transcript_lines(lines: list[str], call_id: str | None = None) -> list[dict]:
    """Reassemble TRANSCRIPT_DUMP chunks into one dict per call.

    A ``1/N`` chunk opens a new group; the following chunks of that group are
    appended to its entries.  Returns transcripts oldest first, optionally
    filtered to one call id.  Corrupt chunks are skipped.
    """
    groups: list[dict[int, str]] = []

    for line in lines:
        idx = line.find(MARKER)
        if idx < 0:
            continue
        parts = line[idx:].rstrip("\n").split("|", 2)
        if len(parts) < 3:
            continue
        try:
            chunk_num = int(parts[1].split("/")[0])
        except ValueError:
            continue
        if chunk_num == 1 or not groups:
            groups.append({})
        groups[-1][chunk_num] = parts[2]

    transcripts = []
    for chunks in groups:
        try:
            first = json.loads(chunks.get(1, ""))
        except json.JSONDecodeError:
            continue
        if call_id and first.get("call_id") != call_id:
            continue

        entries = list(first.get("entries", []))
        for num in sorted(k for k in chunks if k != 1):
            try:
                entries.extend(json.loads(chunks[num]).get("entries", []))
            except json.JSONDecodeError:
                continue
        first["entries"] = entries
        transcripts.append(first)

    return transcripts


def format_transcript(transcript: dict, gap_threshold: float = 2.0) -> str:
    """Human-readable transcript with gaps between turns called out."""
    call_id = transcript.get("call_id", "unknown")
    phone = transcript.get("phone", "unknown")
    duration = transcript.get("duration_s", 0)
    outcome = transcript.get("outcome", transcript.get("final_step", "unknown"))

    lines = [f"Call {call_id} | {phone} | {duration}s | {outcome}", "═" * 55, ""]

    entries = transcript.get("entries", [])
    prev_t = None
    for entry in entries:
        t = entry.get("t", 0.0)
        if prev_t is not None and t - prev_t >= gap_threshold:
            gap = t - prev_t
            lines.append(f"      ┆ +{gap:.1f}s" + (" ⚠ SLOW" if gap >= 5.0 else ""))

        step = entry.get("step", "")
        tag = f"[{step}]" if step else ""
        text = entry.get("text", "")
        if entry.get("speaker") == "system":
            lines.append(f"{t:5.1f}s {tag:<22} Agent: {text}")
        elif entry.get("speaker") == "customer":
            conf = entry.get("confidence")
            conf_str = f" ({conf:.2f})" if conf is not None else ""
            lines.append(f"{t:5.1f}s {tag:<22} Customer: {text or '(no response)'}{conf_str}")
        prev_t = t

    if entries:
        lines.append(f"{duration:5.1f}s {'':22} ☎ Call ended")

    return "\n".join(lines)


def main():
    parser = argparse.ArgumentParser(description="Rebuild call transcripts from server logs")
    parser.add_argument("logfile", nargs="?", default="-", help="Log file to read (default: stdin)")
    parser.add_argument("--raw", action="store_true", help="Output raw JSON")
    parser.add_argument("--call-id", type=str, default=None, help="Filter by call id")
    parser.add_argument("--all", action="store_true", help="Show every call, not just the last")
    parser.add_argument("--gap-threshold", type=float, default=2.0, help="Gap threshold in seconds (default: 2.0)")
    args = parser.parse_args()

    if args.logfile == "-":
        lines = sys.stdin.readlines()
    else:
        try:
            with open(args.logfile, encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
        except OSError as e:
            print(f"Error: cannot read {args.logfile}: {e}", file=sys.stderr)
            sys.exit(1)

    transcripts = parse_transcript_lines(lines, call_id=args.call_id)
    if not transcripts:
        print("No call transcripts found in the log.", file=sys.stderr)
        sys.exit(1)

    selected = transcripts if args.all else transcripts[-1:]
    for transcript in selected:
        if args.raw:
            print(json.dumps(transcript, indent=2))
        else:
            print(format_transcript(transcript, gap_threshold=args.gap_threshold))
            print()


if __name__ == "__main__":
    main()
