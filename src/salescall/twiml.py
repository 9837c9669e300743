"""Render the engine's semantic reply as Twilio voice markup."""

from dataclasses import dataclass

from twilio.twiml.voice_response import Gather, VoiceResponse

VOICE = "Polly.Joanna"
LANGUAGE = "en-US"


@dataclass
class Reply:
    prompt_audio_ref: str = ""
    # Spoken with <Say> when there is no audio to play.
    prompt_text: str = ""
    expect_more_input: bool = False
    hangup: bool = False
    # Turn sequence the next speech webhook must echo back.
    turn: int = 0


def _speak(verb, reply: Reply) -> None:
    if reply.prompt_audio_ref:
        verb.play(reply.prompt_audio_ref)
    elif reply.prompt_text:
        verb.say(reply.prompt_text, voice=VOICE, language=LANGUAGE)


def render(
    reply: Reply,
    action_url: str = "",
    capture: str = "speech",
    input_timeout: int = 6,
) -> str:
    """Build the markup document for one reply.

    ``capture="speech"`` lets the provider transcribe and post ``SpeechResult``;
    ``capture="record"`` records the answer and posts ``RecordingUrl`` for our
    own speech-to-text.  Either way the action fires even on silence.
    """
    response = VoiceResponse()

    if reply.expect_more_input and not reply.hangup:
        if capture == "record":
            _speak(response, reply)
            response.record(
                action=action_url,
                method="POST",
                timeout=3,
                max_length=20,
                play_beep=False,
                trim="trim-silence",
            )
        else:
            gather = Gather(
                input="speech",
                action=action_url,
                method="POST",
                timeout=input_timeout,
                speech_timeout="auto",
                speech_model="phone_call",
                language=LANGUAGE,
                action_on_empty_result=True,
            )
            _speak(gather, reply)
            response.append(gather)
        return str(response)

    _speak(response, reply)
    response.hangup()
    return str(response)
