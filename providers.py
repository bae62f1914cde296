"""Wire messages for the model, synthesis and render providers.

Builders return plain dicts (Transport.send JSON-encodes them). Parsers turn
inbound frames into small event tuples and raise ProtocolError on anything
that is not the JSON shape the provider is documented to send.
"""

import json
from enum import Enum, auto
from urllib.parse import urlencode

from audio_codec import MODEL_MIME_TYPE
from config import SessionConfig
from errors import ProtocolError

# Render control command: drop whatever audio the renderer has buffered
RENDER_CLEAR_COMMAND = "SKIP"


class ModelEvent(Enum):
    SETUP_COMPLETE = auto()
    INTERRUPTED = auto()
    TEXT = auto()
    TURN_COMPLETE = auto()


def _load_json(raw, provider: str) -> dict:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"{provider}: non UTF-8 frame: {e}") from e
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"{provider}: invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"{provider}: expected a JSON object, got {type(data).__name__}")
    return data


# ── Model (Gemini Live) ──────────────────────────────────────────

def model_endpoint(config: SessionConfig, api_key: str) -> str:
    return f"{config.model_url}?{urlencode({'key': api_key})}"


def model_setup_message(config: SessionConfig) -> dict:
    return {
        "setup": {
            "model": f"models/{config.model_name}",
            "generation_config": {
                "response_modalities": ["TEXT"],
            },
            "system_instruction": {
                "parts": [{"text": config.system_instruction}],
            },
        }
    }


def model_greeting_message(prompt: str) -> dict:
    return {
        "clientContent": {
            "turns": [{"role": "user", "parts": [{"text": prompt}]}],
            "turnComplete": True,
        }
    }


def model_audio_message(b64_audio: str) -> dict:
    return {
        "realtimeInput": {
            "mediaChunks": [{"mimeType": MODEL_MIME_TYPE, "data": b64_audio}],
        }
    }


def parse_model_message(raw) -> list[tuple[ModelEvent, str | None]]:
    """Return events in handling order: setup, interruption, text parts, turn end."""
    data = _load_json(raw, "model")
    events = []
    if "setupComplete" in data:
        events.append((ModelEvent.SETUP_COMPLETE, None))

    content = data.get("serverContent")
    if content is None:
        return events
    if not isinstance(content, dict):
        raise ProtocolError("model: serverContent is not an object")

    if content.get("interrupted"):
        events.append((ModelEvent.INTERRUPTED, None))

    turn = content.get("modelTurn") or {}
    if not isinstance(turn, dict):
        raise ProtocolError("model: modelTurn is not an object")
    parts = turn.get("parts") or []
    if not isinstance(parts, list):
        raise ProtocolError("model: modelTurn.parts is not a list")
    for part in parts:
        if isinstance(part, dict) and part.get("text"):
            events.append((ModelEvent.TEXT, part["text"]))

    if content.get("turnComplete"):
        events.append((ModelEvent.TURN_COMPLETE, None))
    return events


# ── Synthesis (ElevenLabs stream-input) ──────────────────────────

def synthesis_endpoint(config: SessionConfig, voice_id: str) -> str:
    query = urlencode({
        "model_id": config.synthesis_model,
        "output_format": config.synthesis_output_format,
        "optimize_streaming_latency": config.synthesis_latency,
    })
    return f"{config.synthesis_url.format(voice_id=voice_id)}?{query}"


def synthesis_init_message(config: SessionConfig, api_key: str) -> dict:
    return {
        "text": " ",
        "voice_settings": dict(config.voice_settings),
        "generation_config": {
            "chunk_length_schedule": list(config.chunk_length_schedule),
        },
        "xi_api_key": api_key,
        "try_trigger_generation": False,
    }


def synthesis_text_message(text: str) -> dict:
    return {"text": text + " ", "try_trigger_generation": True}


def synthesis_flush_message() -> dict:
    return {"text": ""}


def parse_synthesis_message(raw) -> tuple[str | None, bool]:
    """Return (base64 audio or None, is_final)."""
    data = _load_json(raw, "synthesis")
    audio = data.get("audio")
    if audio is not None and not isinstance(audio, str):
        raise ProtocolError("synthesis: audio is not a base64 string")
    return audio or None, bool(data.get("isFinal"))


# ── Render (Simli) ───────────────────────────────────────────────

def render_init_message(config: SessionConfig, api_key: str) -> dict:
    return {
        "apiKey": api_key,
        "faceId": config.face_id,
        "handleSilence": True,
        "maxSessionLength": config.render_max_session_length,
        "maxIdleTime": config.render_max_idle_time,
    }
