import json
import logging
from dataclasses import dataclass, field

import httpx

from salescall.errors import classify_http_error
from salescall.prompts import classifier_prompt
from salescall.session import (
    APPOINTMENT_TIME,
    EMAIL,
    GOOD_TIME,
    STILL_INTERESTED,
    WANTS_APPOINTMENT,
    WANTS_SIMILAR,
)
from salescall.states import Intent, ScriptStep
from salescall.validation import classify_yes_no, extract_email, parse_appointment_time

logger = logging.getLogger(__name__)

# Field each yes/no question answers.
STEP_FIELDS = {
    ScriptStep.GREETING: GOOD_TIME,
    ScriptStep.CONFIRM_INTEREST: STILL_INTERESTED,
    ScriptStep.ARRANGE_APPOINTMENT: WANTS_APPOINTMENT,
    ScriptStep.OFFER_SIMILAR: WANTS_SIMILAR,
}

# Labels the language model may return per step.  Anything else is coerced to unknown.
STEP_LABELS = {
    ScriptStep.GREETING: ["yes", "no", "unknown"],
    ScriptStep.CONFIRM_INTEREST: ["yes", "no", "unknown"],
    ScriptStep.ARRANGE_APPOINTMENT: ["yes", "no", "unknown"],
    ScriptStep.OFFER_SIMILAR: ["yes", "no", "unknown"],
}


@dataclass
class Extraction:
    intent: Intent = Intent.UNKNOWN
    fields: dict = field(default_factory=dict)
    source: str = "rules"


class LanguageModelClassifier:
    """Constrained intent classification through the OpenAI chat completions API.

    The model only ever picks a label from the allow-list it is given; its raw
    output is never trusted beyond that.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout: float = 4.0,
        base_url: str = "https://api.openai.com/v1",
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._client = client

    async def classify(self, question: str, transcript: str, labels: list[str]) -> str:
        body = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": classifier_prompt(question, labels)},
                {"role": "user", "content": transcript},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            if self._client is not None:
                resp = await self._client.post(
                    f"{self.base_url}/chat/completions", json=body, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(f"{self.base_url}/chat/completions", json=body, headers=headers)
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
        except Exception as e:
            raise classify_http_error("openai", e) from e

        try:
            label = json.loads(content).get("intent", "")
        except (json.JSONDecodeError, AttributeError):
            logger.warning("Classifier returned non-JSON output: %r", content[:100])
            return Intent.UNKNOWN.value
        if label not in labels:
            logger.warning("Classifier label %r not in allow-list %s, coercing to unknown", label, labels)
            return Intent.UNKNOWN.value
        return label


class Extractor:
    """Turns a raw transcript at a given script step into an intent plus fields.

    A keyword/pattern rule layer runs first.  Only when it cannot decide does
    the language-model classifier get a turn.  Email and appointment times
    always come from the dedicated parsers.
    """

    def __init__(
        self,
        classifier: LanguageModelClassifier | None = None,
        question_for=None,
        timezone: str = "UTC",
    ):
        self.classifier = classifier
        self.question_for = question_for or (lambda step: step.value.replace("_", " "))
        self.timezone = timezone

    def extract_rules(self, step: ScriptStep, transcript: str, awaiting: str = "") -> Extraction:
        text = transcript or ""

        if step == ScriptStep.COLLECT_EMAIL:
            email = extract_email(text)
            if email:
                return Extraction(Intent.YES, {EMAIL: email})
            if classify_yes_no(text) == "no":
                return Extraction(Intent.NO, {})
            return Extraction(Intent.UNKNOWN, {})

        if step == ScriptStep.ARRANGE_APPOINTMENT:
            when = parse_appointment_time(text, tz=self.timezone)
            answer = classify_yes_no(text)
            if when and answer != "no":
                return Extraction(Intent.YES, {WANTS_APPOINTMENT: "yes", APPOINTMENT_TIME: when})
            if awaiting == APPOINTMENT_TIME:
                # Already agreed; only a time or an explicit refusal moves things on.
                if answer == "no":
                    return Extraction(Intent.NO, {})
                return Extraction(Intent.UNKNOWN, {})
            return self._yes_no(step, answer)

        if step in STEP_FIELDS:
            answer = classify_yes_no(text, busy_is_no=(step == ScriptStep.GREETING))
            return self._yes_no(step, answer)

        return Extraction(Intent.UNKNOWN, {})

    def _yes_no(self, step: ScriptStep, answer: str) -> Extraction:
        intent = Intent.coerce(answer)
        if intent == Intent.UNKNOWN:
            return Extraction(intent, {})
        return Extraction(intent, {STEP_FIELDS[step]: intent.value})

    async def extract(self, step: ScriptStep, transcript: str, awaiting: str = "") -> Extraction:
        """Classify ``transcript`` for ``step``.

        Raises ProviderError when the language-model fallback fails; the
        caller treats that like a low-confidence turn.
        """
        result = self.extract_rules(step, transcript, awaiting)
        if result.intent != Intent.UNKNOWN:
            return result
        if not transcript or not transcript.strip():
            return result
        if self.classifier is None or step not in STEP_LABELS or awaiting:
            return result

        labels = STEP_LABELS[step]
        label = await self.classifier.classify(self.question_for(step), transcript, labels)
        intent = Intent.coerce(label)
        logger.info("[%s] Model classified %r as %s", step.value, transcript[:60], intent.value)
        if intent == Intent.UNKNOWN:
            return Extraction(intent, {}, source="model")
        return Extraction(intent, {STEP_FIELDS[step]: intent.value}, source="model")
