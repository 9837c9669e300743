import logging
from dataclasses import dataclass

from salescall.errors import CallSystemError
from salescall.extraction import STEP_FIELDS, Extraction
from salescall.prompts import ASK_APPOINTMENT_TIME, REASK_APPOINTMENT_TIME, Script
from salescall.session import APPOINTMENT_TIME, EMAIL, WANTS_APPOINTMENT, CallSession
from salescall.states import Intent, ScriptStep

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.5
DEFAULT_MAX_REPROMPTS = 1
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3


@dataclass
class Action:
    speak: str = ""
    end_call: bool = False
    reprompt: bool = False


# (current step, intent) -> next step.  Every entry moves forward; unknown
# takes the non-committal branch rather than being read as "no".
TRANSITIONS = {
    (ScriptStep.GREETING, Intent.YES): ScriptStep.CONFIRM_INTEREST,
    (ScriptStep.GREETING, Intent.NO): ScriptStep.ENDING,
    (ScriptStep.GREETING, Intent.UNKNOWN): ScriptStep.CONFIRM_INTEREST,
    (ScriptStep.CONFIRM_INTEREST, Intent.YES): ScriptStep.ARRANGE_APPOINTMENT,
    (ScriptStep.CONFIRM_INTEREST, Intent.NO): ScriptStep.OFFER_SIMILAR,
    (ScriptStep.CONFIRM_INTEREST, Intent.UNKNOWN): ScriptStep.OFFER_SIMILAR,
    (ScriptStep.ARRANGE_APPOINTMENT, Intent.YES): ScriptStep.ENDING,
    (ScriptStep.ARRANGE_APPOINTMENT, Intent.NO): ScriptStep.OFFER_SIMILAR,
    (ScriptStep.ARRANGE_APPOINTMENT, Intent.UNKNOWN): ScriptStep.OFFER_SIMILAR,
    (ScriptStep.OFFER_SIMILAR, Intent.YES): ScriptStep.COLLECT_EMAIL,
    (ScriptStep.OFFER_SIMILAR, Intent.NO): ScriptStep.ENDING,
    (ScriptStep.OFFER_SIMILAR, Intent.UNKNOWN): ScriptStep.ENDING,
    (ScriptStep.COLLECT_EMAIL, Intent.YES): ScriptStep.ENDING,
    (ScriptStep.COLLECT_EMAIL, Intent.NO): ScriptStep.ENDING,
    (ScriptStep.COLLECT_EMAIL, Intent.UNKNOWN): ScriptStep.ENDING,
}


class StateMachine:
    """Sequences the sales script for one session at a time.

    Pure with respect to I/O: callers hand in the transcript, its confidence
    and the extractor's verdict (or the failure that prevented one) and get
    back the next thing to say.  Mutations are confined to the session.
    """

    def __init__(
        self,
        script: Script,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        max_reprompts: int = DEFAULT_MAX_REPROMPTS,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
    ):
        self.script = script
        self.confidence_threshold = confidence_threshold
        self.max_reprompts = max_reprompts
        self.max_consecutive_failures = max_consecutive_failures

    def next_step(self, step: ScriptStep, intent: Intent) -> ScriptStep:
        return TRANSITIONS[(step, intent)]

    def start(self, session: CallSession) -> Action:
        action = Action(speak=self.script.question(session, ScriptStep.GREETING))
        self._say(session, action)
        return action

    def process(
        self,
        session: CallSession,
        transcript: str,
        confidence: float,
        extraction: Extraction | None = None,
        failure: Exception | None = None,
    ) -> Action:
        if session.terminal:
            raise CallSystemError(f"Session {session.call_id} is terminal", session.call_id)

        session.touch()
        session.add_turn("customer", transcript or "", confidence)

        if failure is not None:
            logger.warning("[%s] Turn failure for %s: %s", session.step.value, session.call_id, failure)
            if self.fail(session, failure):
                return self._system_error(session)

        low_confidence = failure is not None or extraction is None or (
            not (transcript or "").strip() or confidence < self.confidence_threshold
        )
        if low_confidence:
            intent, fields = Intent.UNKNOWN, {}
        else:
            intent, fields = extraction.intent, extraction.fields

        if intent == Intent.UNKNOWN and session.step_retries < self.max_reprompts:
            session.step_retries += 1
            logger.info(
                "[%s] Re-prompting %s (%s, confidence=%.2f)",
                session.step.value, session.call_id,
                "low confidence" if low_confidence else "unclear answer", confidence,
            )
            action = Action(speak=self._reprompt_text(session), reprompt=True)
            self._say(session, action)
            return action

        for name, value in fields.items():
            session.record_field(name, value)

        action = self._transition(session, intent, fields)
        self._say(session, action)
        return action

    def fail(self, session: CallSession, error: Exception) -> bool:
        """Count a failure against the session.  True when the limit is reached."""
        if session.terminal:
            return False
        session.consecutive_failures += 1
        return session.consecutive_failures >= self.max_consecutive_failures

    def record_success(self, session: CallSession) -> None:
        session.consecutive_failures = 0

    def abort(self, session: CallSession) -> Action:
        """Terminate with the apology closing (outcome system_error)."""
        if session.terminal:
            return Action(speak=session.last_prompt, end_call=True)
        action = self._system_error(session)
        self._say(session, action)
        return action

    # ── internals ──

    def _transition(self, session: CallSession, intent: Intent, fields: dict) -> Action:
        step = session.step

        if step == ScriptStep.ARRANGE_APPOINTMENT:
            if session.awaiting == APPOINTMENT_TIME:
                if APPOINTMENT_TIME in fields:
                    return self._finish(session, "appointment_scheduled")
                if intent == Intent.NO:
                    session.record_field(WANTS_APPOINTMENT, "no", correction=True)
                    return self._advance(session, ScriptStep.OFFER_SIMILAR)
                session.record_field(APPOINTMENT_TIME, "unknown")
                return self._finish(session, "appointment_unconfirmed")
            if intent == Intent.YES and APPOINTMENT_TIME not in fields:
                session.awaiting = APPOINTMENT_TIME
                session.step_retries = 0
                return Action(speak=ASK_APPOINTMENT_TIME)

        if intent == Intent.UNKNOWN and step in STEP_FIELDS:
            session.record_field(STEP_FIELDS[step], "unknown")

        target = self.next_step(step, intent)
        if target != ScriptStep.ENDING:
            return self._advance(session, target)

        return self._finish(session, self._closing_key(session, step, intent))

    def _closing_key(self, session: CallSession, step: ScriptStep, intent: Intent) -> str:
        if step == ScriptStep.GREETING:
            return "busy"
        if step == ScriptStep.ARRANGE_APPOINTMENT:
            return "appointment_scheduled"
        if step == ScriptStep.COLLECT_EMAIL:
            if intent == Intent.YES:
                return "email_collected"
            if session.customer.email:
                session.record_field(EMAIL, session.customer.email)
                return "email_on_file"
            return "email_missing"
        return "not_interested"

    def _advance(self, session: CallSession, target: ScriptStep) -> Action:
        logger.info("[%s] -> %s for %s", session.step.value, target.value, session.call_id)
        session.move_to(target)
        return Action(speak=self.script.question(session, target))

    def _finish(self, session: CallSession, closing_key: str, outcome: str = "") -> Action:
        session.move_to(ScriptStep.ENDING)
        text = self.script.closing(session, closing_key)
        session.terminate(outcome)
        logger.info("Call %s reached end of script (%s)", session.call_id, closing_key)
        return Action(speak=text, end_call=True)

    def _system_error(self, session: CallSession) -> Action:
        logger.error(
            "Terminating %s after %d consecutive failures", session.call_id, session.consecutive_failures
        )
        session.outcome = "system_error"
        return self._finish(session, "system_error", "system_error")

    def _reprompt_text(self, session: CallSession) -> str:
        if session.awaiting == APPOINTMENT_TIME:
            return REASK_APPOINTMENT_TIME
        return self.script.reprompt(session, session.step)

    def _say(self, session: CallSession, action: Action) -> None:
        if action.speak:
            session.add_turn("system", action.speak)
            session.last_prompt = action.speak
