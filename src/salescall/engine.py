"""Per-call orchestration.

Each telephony webhook becomes one call into ``ConversationEngine``.  The
engine takes the call's lock, runs speech-to-text, the extractor and the
state machine, synthesizes the next prompt and hands back a ``Reply``.  When
a call finishes it schedules exactly one dispatch job.
"""

import asyncio
import logging
from collections import deque

from salescall.dispatcher import DispatchResult, NotificationDispatcher
from salescall.errors import (
    LowConfidenceInput,
    ProviderError,
    StaleTurnError,
    TransientProviderError,
    UnknownSessionError,
)
from salescall.extraction import Extractor
from salescall.prompts import STALE_CALL_GOODBYE
from salescall.record_store import RecordStore
from salescall.session import CallSession, CustomerRecord
from salescall.session_store import SessionStore
from salescall.speech import SpeechAdapter
from salescall.state_machine import Action, StateMachine
from salescall.twiml import Reply

logger = logging.getLogger(__name__)

# Provider call-status values that mean the call is over.
FINAL_CALL_STATUSES = {"completed", "busy", "no-answer", "failed", "canceled"}
# Final statuses for calls that never reached the call-answered webhook.
UNANSWERED_CALL_STATUSES = {"busy", "no-answer", "failed", "canceled"}

# How many never-connected call ids are remembered for de-duplication.
UNANSWERED_MEMORY = 1000


class ConversationEngine:
    def __init__(
        self,
        store: SessionStore,
        machine: StateMachine,
        extractor: Extractor,
        speech: SpeechAdapter,
        dispatcher: NotificationDispatcher,
        record_store: RecordStore,
        *,
        voice_profile: dict | None = None,
        extractor_timeout: float = 4.0,
        lookup_timeout: float = 5.0,
        sweep_interval: float = 30.0,
    ):
        self.store = store
        self.machine = machine
        self.extractor = extractor
        self.speech = speech
        self.dispatcher = dispatcher
        self.record_store = record_store
        self.voice_profile = voice_profile
        self.extractor_timeout = extractor_timeout
        self.lookup_timeout = lookup_timeout
        self.sweep_interval = sweep_interval
        self._sweeper: asyncio.Task | None = None
        self._unanswered_seen: set[str] = set()
        self._unanswered_order: deque[str] = deque()
        if dispatcher.on_complete is None:
            dispatcher.on_complete = self._on_dispatched

    # ── call answered ──

    async def handle_answered(self, call_id: str, phone: str) -> Reply:
        """Create the session (once) and greet the customer.

        A repeated delivery for a live call replays the prompt already issued
        instead of starting the script again.
        """

        async def factory() -> CallSession:
            customer = await self._lookup_customer(phone)
            return CallSession(call_id=call_id, customer=customer)

        session, created = await self.store.get_or_create(call_id, factory)
        async with self.store.lock(call_id):
            if session.last_prompt:
                logger.info("Duplicate call-answered webhook for %s, replaying last prompt", call_id)
                return self._replay(session)
            if session.terminal:
                return Reply(prompt_text=STALE_CALL_GOODBYE, hangup=True)
            action = self.machine.start(session)
            reply, degraded = await self._speak(session, action)
            if not degraded:
                self.machine.record_success(session)
            return reply

    async def _lookup_customer(self, phone: str) -> CustomerRecord:
        try:
            customer = await asyncio.wait_for(self.record_store.get_customer(phone), timeout=self.lookup_timeout)
        except (ProviderError, asyncio.TimeoutError) as e:
            logger.warning("Customer lookup for %s failed, continuing with defaults: %s", phone, e)
            return CustomerRecord(phone=phone)
        if customer is None:
            logger.info("Unknown customer %s, using default script values", phone)
            return CustomerRecord(phone=phone)
        return customer

    # ── speech turn ──

    def _active(self, call_id: str) -> CallSession:
        session = self.store.get(call_id)
        if session is None or session.terminal:
            raise UnknownSessionError(call_id)
        return session

    async def advance(
        self,
        call_id: str,
        raw_transcript: str,
        confidence: float,
        expected_turn: int | None = None,
    ) -> Action:
        """Apply one customer answer to the call and return what to say next.

        Raises UnknownSessionError for a missing or finished call and
        StaleTurnError when ``expected_turn`` has already been processed.
        """
        session = self._active(call_id)
        async with self.store.lock(call_id):
            if session.terminal:
                raise UnknownSessionError(call_id)
            if not self.store.advance_turn(session, expected_turn):
                raise StaleTurnError(call_id, expected_turn, session.turn_seq)
            action, failure = await self._advance_locked(session, raw_transcript, confidence)
            if session.terminal:
                await self._schedule_dispatch(session)
            elif failure is None:
                self.machine.record_success(session)
            return action

    async def handle_gather(
        self,
        call_id: str,
        speech_result: str = "",
        confidence: float = 0.0,
        recording_url: str = "",
        turn: int | None = None,
    ) -> Reply:
        """Full speech-turn webhook: transcribe if needed, advance, synthesize."""
        try:
            session = self._active(call_id)
        except UnknownSessionError:
            logger.info("Speech turn for unknown or finished call %s, closing politely", call_id)
            return Reply(prompt_text=STALE_CALL_GOODBYE, hangup=True)

        async with self.store.lock(call_id):
            if session.terminal:
                return self._replay(session)
            if not self.store.advance_turn(session, turn):
                return self._replay(session)

            try:
                failure = None
                transcript, conf = speech_result or "", confidence
                if not transcript.strip() and recording_url:
                    stt = await self.speech.transcribe(recording_url)
                    transcript, conf, failure = stt.text, stt.confidence, stt.error

                action, failure = await self._advance_locked(session, transcript, conf, failure)
                if session.terminal and not action.speak:
                    # Call ended while this turn was in flight.
                    logger.info("Call %s ended mid-turn, discarding prompt", call_id)
                    await self._schedule_dispatch(session)
                    return Reply(hangup=True, turn=session.turn_seq)

                reply, degraded = await self._speak(session, action)
            except Exception:
                logger.exception("Unexpected error on turn for %s, ending call", call_id)
                if session.terminal:
                    await self._schedule_dispatch(session)
                    return Reply(hangup=True, turn=session.turn_seq)
                reply, _ = await self._speak(session, self.machine.abort(session))
                return reply

            if failure is None and not degraded and not session.terminal:
                self.machine.record_success(session)
            return reply

    async def _advance_locked(
        self,
        session: CallSession,
        transcript: str,
        confidence: float,
        failure: ProviderError | None = None,
    ) -> tuple[Action, ProviderError | None]:
        extraction = None
        if failure is None:
            try:
                self._check_confidence(transcript, confidence)
                extraction = await asyncio.wait_for(
                    self.extractor.extract(session.step, transcript, session.awaiting),
                    timeout=self.extractor_timeout,
                )
            except LowConfidenceInput as e:
                logger.info("[%s] %s for %s, skipping extraction", session.step.value, e, session.call_id)
            except ProviderError as e:
                failure = e
            except asyncio.TimeoutError:
                failure = TransientProviderError("extractor", f"timed out after {self.extractor_timeout:.1f}s")

        if session.terminal:
            return Action(end_call=True), failure

        action = self.machine.process(session, transcript, confidence, extraction, failure)
        return action, failure

    def _check_confidence(self, transcript: str, confidence: float) -> None:
        threshold = self.machine.confidence_threshold
        if not transcript.strip() or confidence < threshold:
            raise LowConfidenceInput(0.0 if not transcript.strip() else confidence, threshold)

    async def _speak(self, session: CallSession, action: Action) -> tuple[Reply, bool]:
        """Synthesize ``action`` and build the reply.  Also returns whether TTS was degraded."""
        synth = await self.speech.synthesize(action.speak, self.voice_profile)
        degraded = synth.degraded
        if degraded and self.machine.fail(session, synth.error):
            action = self.machine.abort(session)
            synth = await self.speech.synthesize(action.speak, self.voice_profile)

        session.last_audio_ref = synth.audio_ref
        ending = action.end_call or session.terminal
        if ending:
            await self._schedule_dispatch(session)
        reply = Reply(
            prompt_audio_ref=synth.audio_ref,
            prompt_text=action.speak,
            expect_more_input=not ending,
            hangup=ending,
            turn=session.turn_seq,
        )
        return reply, degraded

    @staticmethod
    def _replay(session: CallSession) -> Reply:
        return Reply(
            prompt_audio_ref=session.last_audio_ref,
            prompt_text=session.last_prompt or STALE_CALL_GOODBYE,
            expect_more_input=not session.terminal,
            hangup=session.terminal,
            turn=session.turn_seq,
        )

    # ── call ended ──

    async def handle_call_ended(self, call_id: str, status: str = "completed", phone: str = "") -> bool:
        """Provider says the call is over.  Returns True when it ended a live call.

        The session is marked terminal straight away so a turn still in
        flight discards its prompt; dispatch waits for that turn to finish.
        A call that never connected (busy, no answer, failed) has no session
        yet; one is built for it and reported once.
        """
        session = self.store.get(call_id)
        if session is None:
            if status in UNANSWERED_CALL_STATUSES:
                return await self._report_unanswered(call_id, status, phone)
            logger.info("Call-ended signal for unknown call %s (%s), ignoring", call_id, status)
            return False

        step = session.step.value
        ended_now = session.terminate(self._end_outcome(session, status))
        if ended_now:
            logger.info("Call %s ended by provider (%s) at step %s", call_id, status, step)
        async with self.store.lock(call_id):
            await self._schedule_dispatch(session)
        return ended_now

    async def _report_unanswered(self, call_id: str, status: str, phone: str) -> bool:
        if call_id in self._unanswered_seen:
            return False
        self._unanswered_seen.add(call_id)
        self._unanswered_order.append(call_id)
        if len(self._unanswered_order) > UNANSWERED_MEMORY:
            self._unanswered_seen.discard(self._unanswered_order.popleft())

        customer = await self._lookup_customer(phone)
        session = CallSession(call_id=call_id, customer=customer)
        session.terminate(self._end_outcome(session, status))
        logger.info("Call %s to %s never connected (%s), reporting %s", call_id, phone, status, session.outcome)
        await self._schedule_dispatch(session)
        return True

    @staticmethod
    def _end_outcome(session: CallSession, status: str) -> str:
        if status == "failed":
            return "call_failed"
        if status in ("busy", "no-answer", "canceled") or session.customer_turns == 0:
            return "no_response"
        return "customer_hangup"

    # ── dispatch + sweeping ──

    async def _schedule_dispatch(self, session: CallSession) -> None:
        if session.dispatched:
            return
        session.dispatched = True
        await self.dispatcher.schedule(session)

    def _on_dispatched(self, session: CallSession, result: DispatchResult) -> None:
        if result.ok:
            self.store.discard(session.call_id)

    async def sweep_once(self, now: float | None = None) -> int:
        """Evict idle sessions; any never dispatched go out as ``abandoned``."""
        abandoned = 0
        for session in self.store.sweep(now):
            if session.dispatched:
                continue
            session.terminate("abandoned")
            logger.warning("Session %s abandoned at %s, dispatching", session.call_id, session.step.value)
            await self._schedule_dispatch(session)
            abandoned += 1
        return abandoned

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Session sweep failed")

    def start(self) -> None:
        self.dispatcher.start()
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.dispatcher.stop()
