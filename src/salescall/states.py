from enum import Enum

# Position in the script; a session's step may only move to a higher rank.
STEP_ORDER = {
    "greeting": 0,
    "confirm_interest": 1,
    "arrange_appointment": 2,
    "offer_similar": 3,
    "collect_email": 4,
    "ending": 5,
    "terminated": 6,
}

QUESTION_STEPS = {
    "greeting", "confirm_interest", "arrange_appointment",
    "offer_similar", "collect_email",
}


class ScriptStep(Enum):
    GREETING = "greeting"
    CONFIRM_INTEREST = "confirm_interest"
    ARRANGE_APPOINTMENT = "arrange_appointment"
    OFFER_SIMILAR = "offer_similar"
    COLLECT_EMAIL = "collect_email"
    ENDING = "ending"
    TERMINATED = "terminated"

    @property
    def rank(self) -> int:
        return STEP_ORDER[self.value]

    @property
    def asks_question(self) -> bool:
        return self.value in QUESTION_STEPS

    @property
    def is_terminal(self) -> bool:
        return self is ScriptStep.TERMINATED

    def can_move_to(self, other: "ScriptStep") -> bool:
        if self.is_terminal:
            return False
        return other is ScriptStep.TERMINATED or other.rank >= self.rank


class Intent(Enum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value) -> "Intent":
        """Map any label onto the allow-list; anything unexpected becomes UNKNOWN."""
        if isinstance(value, Intent):
            return value
        if not isinstance(value, str):
            return cls.UNKNOWN
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN
