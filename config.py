"""Provider endpoints, tuning constants and credential loading."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from audio_codec import CAPTURE_SAMPLE_RATE, MODEL_SAMPLE_RATE

# Model provider (Gemini Live)
MODEL_NAME = "gemini-2.0-flash-exp"
MODEL_URL = ("wss://generativelanguage.googleapis.com/ws/"
             "google.ai.generativelanguage.v1alpha.GenerativeService.BidiGenerateContent")

# Synthesis provider (ElevenLabs streaming input)
SYNTHESIS_URL = "wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream-input"
SYNTHESIS_MODEL = "eleven_multilingual_v2"
SYNTHESIS_OUTPUT_FORMAT = "pcm_16000"
SYNTHESIS_LATENCY = 4
VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.8,
    "use_speaker_boost": True,
}
CHUNK_LENGTH_SCHEDULE = [50, 90, 120, 150, 200]

# Render provider (Simli)
RENDER_URL = "wss://api.simli.ai/startWebRTCSession"
RENDER_FACE_ID = "e0d70631-9035-4d2b-8438-ea06a9af2767"
RENDER_MAX_SESSION_LENGTH = 3600  # seconds
RENDER_MAX_IDLE_TIME = 600  # seconds

SYSTEM_INSTRUCTION = (
    "You are a friendly and helpful AI assistant. Keep your responses concise "
    "and conversational - ideally 1-2 sentences."
)
GREETING_PROMPT = "Introduce yourself."

# Timing
RECONNECT_DELAY = 0.1  # seconds before an automatic reconnect attempt
RECOVERY_DELAY = 0.1  # seconds between barge-in cleanup and resuming synthesis
MAX_RECONNECT_ATTEMPTS = 3
MAX_PROTOCOL_FAILURES = 3  # consecutive malformed messages before a stream is dropped

TRANSCRIPT_SIZE = 10
AUDIO_QUEUE_SIZE = 100  # captured frames waiting to be sent to the model

# Environment variable -> Credentials field. Order is the validation order.
CREDENTIAL_ENV = {
    "GEMINI_API_KEY": "model_api_key",
    "SIMLI_API_KEY": "render_api_key",
    "ELEVENLABS_API_KEY": "synthesis_api_key",
    "ELEVENLABS_VOICE_ID": "synthesis_voice_id",
}

# Fallback key files, checked when the environment variable is unset
_CREDENTIAL_FILES = {
    "GEMINI_API_KEY": [Path.home() / ".config" / "gemini" / "api_key"],
    "SIMLI_API_KEY": [Path.home() / ".config" / "simli" / "api_key"],
    "ELEVENLABS_API_KEY": [Path.home() / ".config" / "elevenlabs" / "api_key"],
    "ELEVENLABS_VOICE_ID": [Path.home() / ".config" / "elevenlabs" / "voice_id"],
}


@dataclass(frozen=True)
class Credentials:
    """Opaque provider credentials supplied at session start."""
    model_api_key: str | None = None
    synthesis_api_key: str | None = None
    synthesis_voice_id: str | None = None
    render_api_key: str | None = None

    def missing(self) -> list[str]:
        """Environment variable names of every absent credential."""
        return [env for env, attr in CREDENTIAL_ENV.items()
                if not (getattr(self, attr) or "").strip()]

    @classmethod
    def from_env(cls, environ=None) -> "Credentials":
        environ = os.environ if environ is None else environ
        values = {attr: _lookup(env, environ) for env, attr in CREDENTIAL_ENV.items()}
        return cls(**values)


def _lookup(env: str, environ) -> str | None:
    value = environ.get(env)
    if value:
        return value
    for path in _CREDENTIAL_FILES.get(env, []):
        if path.exists():
            return path.read_text().strip() or None
    return None


@dataclass
class SessionConfig:
    """Per-session tuning. Defaults mirror the module constants."""
    model_name: str = MODEL_NAME
    model_url: str = MODEL_URL
    system_instruction: str = SYSTEM_INSTRUCTION
    greeting_prompt: str = GREETING_PROMPT
    synthesis_url: str = SYNTHESIS_URL
    synthesis_model: str = SYNTHESIS_MODEL
    synthesis_output_format: str = SYNTHESIS_OUTPUT_FORMAT
    synthesis_latency: int = SYNTHESIS_LATENCY
    voice_settings: dict = field(default_factory=lambda: dict(VOICE_SETTINGS))
    chunk_length_schedule: list = field(default_factory=lambda: list(CHUNK_LENGTH_SCHEDULE))
    render_url: str = RENDER_URL
    face_id: str = RENDER_FACE_ID
    render_max_session_length: int = RENDER_MAX_SESSION_LENGTH
    render_max_idle_time: int = RENDER_MAX_IDLE_TIME
    capture_sample_rate: int = CAPTURE_SAMPLE_RATE
    model_sample_rate: int = MODEL_SAMPLE_RATE
    reconnect_delay: float = RECONNECT_DELAY
    recovery_delay: float = RECOVERY_DELAY
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    max_protocol_failures: int = MAX_PROTOCOL_FAILURES
    transcript_size: int = TRANSCRIPT_SIZE
    audio_queue_size: int = AUDIO_QUEUE_SIZE
    log_dir: Path | None = None  # JSONL session log directory, disabled when None


def get_credentials() -> Credentials:
    """Load credentials from the environment and fallback key files."""
    return Credentials.from_env()


def is_available() -> bool:
    """Check that every provider credential is configured."""
    return not get_credentials().missing()
