import re
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo


def match_any_keyword(text: str, keywords: set[str] | frozenset[str]) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf"\b{re.escape(kw)}\b", lower) for kw in keywords)


YES_SIGNALS = frozenset({
    "yes", "yeah", "yep", "yup", "sure", "okay", "ok", "alright",
    "definitely", "absolutely", "certainly", "of course", "sounds good",
    "still interested", "i am", "i would", "i'd like", "i will", "let's do",
    "go ahead", "please do", "good time", "perfect", "that works",
})

NO_SIGNALS = frozenset({
    "no", "nope", "nah", "never", "not interested", "not really",
    "don't think", "do not", "don't", "not now", "not at the moment",
    "no thanks", "no thank you", "not anymore", "bought", "already bought",
    "changed my mind", "pass",
})

BUSY_SIGNALS = frozenset({
    "busy", "bad time", "not a good time", "not a great time", "not the best time",
    "call back", "call me back", "another time", "later", "driving", "in a meeting",
})

# Phrases where a "no" word does not mean no ("no problem", "why not").
NEGATION_FALSE_FRIENDS = frozenset({
    "no problem", "why not", "not a problem", "no doubt", "can't wait",
    "don't mind", "not bad",
})

# Negated forms of yes signals; removed so the yes inside them does not fire.
NEGATED_YES = frozenset({
    "i am not", "i would not", "i will not",
    "not a good time", "not a great time", "not the best time",
})

_LEADING_YES = frozenset({"yes", "yeah", "yep", "yup", "sure", "absolutely", "definitely"})
_LEADING_NO = frozenset({"no", "nope", "nah"})


def _strip_phrases(text: str, phrases: frozenset[str]) -> str:
    for phrase in phrases:
        text = re.sub(rf"\b{re.escape(phrase)}\b", " ", text)
    return text


def classify_yes_no(text: str, busy_is_no: bool = False) -> str:
    """Rule-based yes/no classification.

    Returns "yes", "no", or "unknown" when the text carries neither signal.
    Conflicting signals are settled by the clause after a "but", then by a
    leading yes/no word; otherwise the answer is "unknown".
    """
    if not text or not text.strip():
        return "unknown"
    lower = text.lower()

    _, sep, tail = lower.rpartition(" but ")
    if sep:
        after = classify_yes_no(tail, busy_is_no)
        if after != "unknown":
            return after

    lower = _strip_phrases(lower, NEGATION_FALSE_FRIENDS)
    busy = busy_is_no and match_any_keyword(lower, BUSY_SIGNALS)
    lower = _strip_phrases(lower, NEGATED_YES)

    negative = busy or match_any_keyword(lower, NO_SIGNALS)
    positive = match_any_keyword(lower, YES_SIGNALS)

    if positive and not negative:
        return "yes"
    if negative and not positive:
        return "no"
    if positive and negative:
        first = re.match(r"\s*([a-z']+)", lower)
        word = first.group(1) if first else ""
        if word in _LEADING_NO:
            return "no"
        if word in _LEADING_YES:
            return "yes"
    return "unknown"


# ── Email ──

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

_SPOKEN_EMAIL_TOKENS = [
    (r"\s+at\s+the\s+rate\s+(of\s+)?", "@"),
    (r"\s+at\s+", "@"),
    (r"\s+dot\s+", "."),
    (r"\s+underscore\s+", "_"),
    (r"\s+(dash|hyphen)\s+", "-"),
]

_EMAIL_LEAD_INS = re.compile(
    r"^((it's|it is|my email address is|my email is|email is|that's|sure|yeah|yes|okay|ok|so),?\s+)+",
    re.IGNORECASE,
)


def normalize_spoken_email(text: str) -> str:
    """Turn a speech transcript like "john dot smith at gmail dot com" into
    "john.smith@gmail.com"."""
    if not text or not text.strip():
        return ""
    cleaned = _EMAIL_LEAD_INS.sub("", text.strip().rstrip("."))
    cleaned = f" {cleaned} "
    for pattern, repl in _SPOKEN_EMAIL_TOKENS:
        cleaned = re.sub(pattern, repl, cleaned, flags=re.IGNORECASE)
    cleaned = cleaned.strip()
    local, sep, domain = cleaned.partition("@")
    if not sep:
        return cleaned
    # Spelled-out letters arrive space separated ("j o h n").
    local = re.sub(r"\s+", "", local)
    domain = re.sub(r"\s+", "", domain)
    return f"{local}@{domain}"


def extract_email(text: str) -> str:
    """Return a validated, lower-cased email address from a transcript, or ""."""
    if not text:
        return ""
    match = EMAIL_PATTERN.search(text)
    if not match:
        match = EMAIL_PATTERN.search(normalize_spoken_email(text))
    if not match:
        return ""
    email = match.group(0).lower().strip(".")
    local, _, domain = email.partition("@")
    if not local or ".." in email or domain.startswith(".") or domain.startswith("-"):
        return ""
    return email


# ── Date/time ──

_WEEKDAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}

_PARTS_OF_DAY = {"morning": 10, "afternoon": 14, "evening": 18, "noon": 12, "lunchtime": 12}

_TIME_RE = re.compile(
    r"\b(?:at\s+)?(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)?(?=\W|$)", re.IGNORECASE
)
_SLASH_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2,4}))?\b")
_NUMBER_WORDS = {
    "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6,
    "seven": 7, "eight": 8, "nine": 9, "ten": 10, "eleven": 11, "twelve": 12,
}

_BUSINESS_START = 9
_BUSINESS_END = 18


def _words_to_numbers(text: str) -> str:
    return re.sub(
        r"\b(" + "|".join(_NUMBER_WORDS) + r")\b",
        lambda m: str(_NUMBER_WORDS[m.group(1).lower()]),
        text,
        flags=re.IGNORECASE,
    )


def _parse_clock(text: str) -> tuple[int, int] | None:
    for match in _TIME_RE.finditer(text):
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        meridiem = (match.group(3) or "").lower().replace(".", "")
        # Bare numbers are only a time when introduced by "at" or given a meridiem.
        if not meridiem and not match.group(0).lower().startswith("at") and match.group(2) is None:
            continue
        if hour > 23 or minute > 59:
            continue
        if meridiem == "pm" and hour < 12:
            hour += 12
        elif meridiem == "am" and hour == 12:
            hour = 0
        elif not meridiem and 1 <= hour <= 7:
            # "at 3" on a sales call means the afternoon.
            hour += 12
        return hour, minute
    return None


def parse_appointment_time(text: str, now: datetime | None = None, tz: str = "UTC") -> str:
    """Resolve a spoken appointment request into an ISO 8601 datetime.

    Understands "tomorrow at 3pm", "friday morning", "next tuesday at 10",
    "12/5 at 2:30 pm" and similar.  Returns "" when no day can be found so the
    caller can ask again; a day without a time defaults to the start of
    business hours.
    """
    if not text or not text.strip():
        return ""
    zone = ZoneInfo(tz)
    now = now.astimezone(zone) if now else datetime.now(zone)
    lower = _words_to_numbers(text.lower())

    day: datetime | None = None
    if "day after tomorrow" in lower:
        day = now + timedelta(days=2)
    elif "tomorrow" in lower:
        day = now + timedelta(days=1)
    elif re.search(r"\b(today|this (morning|afternoon|evening)|tonight)\b", lower):
        day = now
    else:
        slash = _SLASH_DATE_RE.search(lower)
        if slash:
            month, dom = int(slash.group(1)), int(slash.group(2))
            year = int(slash.group(3)) if slash.group(3) else now.year
            if year < 100:
                year += 2000
            try:
                day = now.replace(year=year, month=month, day=dom)
            except ValueError:
                return ""
            if day.date() < now.date() and not slash.group(3):
                day = day.replace(year=day.year + 1)
            lower = lower.replace(slash.group(0), " ")
        else:
            for name, weekday in _WEEKDAYS.items():
                if re.search(rf"\b{name}\b", lower):
                    ahead = (weekday - now.weekday()) % 7
                    if ahead == 0 or re.search(rf"\bnext {name}\b", lower):
                        ahead = ahead or 7
                    day = now + timedelta(days=ahead)
                    break

    if day is None:
        return ""

    clock = _parse_clock(lower)
    if clock is None:
        for part, hour in _PARTS_OF_DAY.items():
            if part in lower or (part == "evening" and "tonight" in lower):
                clock = (hour, 0)
                break
    if clock is None:
        clock = (_BUSINESS_START, 0)

    target = day.replace(hour=clock[0], minute=clock[1], second=0, microsecond=0)
    if target <= now:
        # Requested slot already passed, use the next business morning.
        target = (now + timedelta(days=1)).replace(
            hour=_BUSINESS_START, minute=0, second=0, microsecond=0
        )
    return target.isoformat()
