import logging
import time
from dataclasses import dataclass, field

from salescall.states import ScriptStep

logger = logging.getLogger(__name__)

# extracted_data keys
GOOD_TIME = "goodTimeToTalk"
STILL_INTERESTED = "stillInterested"
WANTS_APPOINTMENT = "wantsAppointment"
APPOINTMENT_TIME = "appointmentTime"
WANTS_SIMILAR = "wantsSimilar"
EMAIL = "email"


@dataclass
class CustomerRecord:
    phone: str
    key: str = ""
    name: str = ""
    car_model: str = ""
    dealership: str = ""
    email: str = ""
    row: int = 0
    found: bool = False


@dataclass
class CallSession:
    call_id: str
    customer: CustomerRecord
    step: ScriptStep = ScriptStep.GREETING

    extracted_data: dict = field(default_factory=dict)
    turn_history: list = field(default_factory=list)

    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    ended_at: float = 0.0

    terminal: bool = False
    dispatched: bool = False
    outcome: str = ""

    # Turn sequence; bumped every time a new prompt is issued.
    turn_seq: int = 0
    # Re-prompts already spent on the current step.
    step_retries: int = 0
    consecutive_failures: int = 0
    # Set while the current step is waiting on a follow-up answer (e.g. the time).
    awaiting: str = ""

    # Last reply issued, replayed for duplicate/stale webhooks.
    last_prompt: str = ""
    last_audio_ref: str = ""

    def touch(self) -> None:
        self.last_activity_at = time.time()

    def add_turn(self, speaker: str, text: str, confidence: float | None = None) -> None:
        """Append to the turn history.  History is append-only."""
        entry = {
            "speaker": speaker,
            "text": text,
            "timestamp": time.time(),
            "step": self.step.value,
        }
        if confidence is not None:
            entry["confidence"] = round(confidence, 3)
        self.turn_history.append(entry)

    def record_field(self, name: str, value, correction: bool = False) -> bool:
        """Write an extracted field once.

        A later write only lands when ``correction`` is set or the stored value
        is still ``unknown`` (e.g. re-asked after a low-confidence answer).
        Returns True when the value was stored.
        """
        current = self.extracted_data.get(name)
        if current is None or current == "unknown" or correction:
            self.extracted_data[name] = value
            return True
        if current != value:
            logger.info(
                "Ignoring overwrite of %s for %s (%r -> %r)", name, self.call_id, current, value
            )
        return False

    def move_to(self, step: ScriptStep) -> None:
        if not self.step.can_move_to(step):
            raise ValueError(f"Illegal transition {self.step.value} -> {step.value}")
        if step is not self.step:
            self.step_retries = 0
            self.awaiting = ""
        self.step = step

    def terminate(self, outcome: str = "") -> bool:
        """Mark the session terminal.  Returns False when it already was."""
        if self.terminal:
            return False
        if outcome and not self.outcome:
            self.outcome = outcome
        self.step = ScriptStep.TERMINATED
        self.terminal = True
        self.ended_at = time.time()
        return True

    @property
    def duration_seconds(self) -> int:
        end = self.ended_at or time.time()
        return max(0, int(end - self.created_at))

    @property
    def customer_turns(self) -> int:
        return sum(1 for t in self.turn_history if t["speaker"] == "customer")
