"""Conversation script.

Built once at startup into an immutable ``Script`` and shared by reference.
Every prompt is a template rendered against the session's customer record.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from salescall.session import CallSession
from salescall.states import ScriptStep

UNKNOWN_CUSTOMER = "Valued Customer"
UNKNOWN_CAR = "one of our vehicles"

_QUESTIONS = {
    ScriptStep.GREETING: (
        "Hi {name}, this is {agent} from {dealership}. You recently enquired about "
        "the {car}. Is now a good time to talk?"
    ),
    ScriptStep.CONFIRM_INTEREST: "I just wanted to check, are you still interested in the {car}?",
    ScriptStep.ARRANGE_APPOINTMENT: (
        "Great! Would you like to arrange an appointment to see or test drive the {car}?"
    ),
    ScriptStep.OFFER_SIMILAR: (
        "No problem, sometimes the exact model isn't the right fit. Would you be interested "
        "in hearing about similar cars we currently have available?"
    ),
    ScriptStep.COLLECT_EMAIL: "Perfect! What's the best email address to send those similar car options to?",
}

_REPROMPTS = {
    ScriptStep.GREETING: "Sorry, I didn't quite catch that. Is this a good time for a quick chat about the {car}?",
    ScriptStep.CONFIRM_INTEREST: (
        "Just to confirm, are you still looking for the {car}, or has your situation changed?"
    ),
    ScriptStep.ARRANGE_APPOINTMENT: "Would you like to schedule a time to come in and see the {car}?",
    ScriptStep.OFFER_SIMILAR: (
        "Would you like me to send you information about similar vehicles that might interest you?"
    ),
    ScriptStep.COLLECT_EMAIL: (
        "Could you please spell out your email address so I can send you the similar car options?"
    ),
}

ASK_APPOINTMENT_TIME = "What date and time works best for you?"
REASK_APPOINTMENT_TIME = "Sorry, which day and time would suit you? For example, tomorrow at 3pm."

_CLOSINGS = {
    "appointment_scheduled": (
        "Perfect! I've noted your appointment for {appointment}. We'll send you a "
        "confirmation shortly. Thanks {name}!"
    ),
    "appointment_unconfirmed": (
        "No problem, someone from {dealership} will call you to find a time that works. Thanks {name}!"
    ),
    "email_collected": "Thanks {name}! I'll send you the details at {email} shortly. Have a great day!",
    "email_on_file": "I'll send it to your email on file, {email}. Thanks {name}!",
    "email_missing": "No problem, one of our team will follow up with those options. Thanks {name}!",
    "not_interested": (
        "No problem at all, {name}. Thank you for your time, and feel free to contact us "
        "if anything changes. Have a great day!"
    ),
    "busy": "No problem at all! I'll give you a call back at a better time. Have a great day, {name}!",
    "system_error": (
        "I'm sorry, I'm having some trouble on my end. Someone from {dealership} will "
        "follow up with you shortly. Thank you, and goodbye."
    ),
    "default": "Thank you for your time, {name}. Have a great day!",
}

# Spoken to a webhook that arrives for a call we no longer track.
STALE_CALL_GOODBYE = "Thank you for your interest. We'll follow up with you soon. Goodbye!"

CLASSIFIER_PROMPT = """You classify a customer's spoken answer during a car dealership sales call.
The customer was just asked: "{question}"
Reply with JSON only: {{"intent": one of {labels}}}.
"yes" means the customer agreed, "no" means the customer declined,
"unknown" means the answer is unclear, off-topic, or both."""


@dataclass(frozen=True)
class Script:
    agent_name: str = "Sarah"
    dealership_name: str = "Premier Auto"
    questions: Mapping = field(default_factory=lambda: MappingProxyType(dict(_QUESTIONS)))
    reprompts: Mapping = field(default_factory=lambda: MappingProxyType(dict(_REPROMPTS)))
    closings: Mapping = field(default_factory=lambda: MappingProxyType(dict(_CLOSINGS)))

    def _values(self, session: CallSession) -> dict:
        customer = session.customer
        return {
            "name": customer.name or UNKNOWN_CUSTOMER,
            "car": customer.car_model or UNKNOWN_CAR,
            "dealership": customer.dealership or self.dealership_name,
            "agent": self.agent_name,
            "email": session.extracted_data.get("email") or customer.email,
            "appointment": session.extracted_data.get("appointmentTime", ""),
        }

    def question(self, session: CallSession, step: ScriptStep) -> str:
        return self.questions[step].format(**self._values(session))

    def reprompt(self, session: CallSession, step: ScriptStep) -> str:
        return self.reprompts[step].format(**self._values(session))

    def closing(self, session: CallSession, key: str) -> str:
        template = self.closings.get(key, self.closings["default"])
        return template.format(**self._values(session))

    def question_text(self, step: ScriptStep) -> str:
        """Unrendered question, used to brief the language-model classifier."""
        return self.questions[step].replace("{", "").replace("}", "")


def classifier_prompt(question: str, labels: list[str]) -> str:
    return CLASSIFIER_PROMPT.format(question=question, labels=labels)
