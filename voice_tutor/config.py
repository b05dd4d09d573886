"""Configuration from .env file."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o-mini"  # Category assessment + pivot questions
    OPENAI_REPLY_MODEL: str = "gpt-4o-mini"  # Streamed spoken replies
    # Optional: stream replies from a line-delimited HTTP endpoint instead of OpenAI.
    REPLY_ENDPOINT: str | None = None
    LOG_LEVEL: str = "INFO"

    ELEVENLABS_API_KEY: str | None = None
    ELEVENLABS_BASE_URL: str = "https://api.elevenlabs.io"
    ELEVENLABS_VOICE_ID: str = "21m00Tcm4TlvDq8ikWAM"
    ELEVENLABS_MODEL_ID: str = "eleven_multilingual_v2"
    ELEVENLABS_STABILITY: float = 0.5
    ELEVENLABS_SIMILARITY_BOOST: float = 0.75

    DEEPGRAM_API_KEY: str | None = None
    DEEPGRAM_URL: str = "wss://api.deepgram.com/v1/listen"
    DEEPGRAM_MODEL: str = "nova-3"

    # Turn taking
    SILENCE_THRESHOLD_MS: int = 2000  # Quiet time before an utterance is finalized
    FIRST_CHUNK_MAX_CHARS: int = 60  # Early cut for the first spoken chunk
    FIRST_CHUNK_BREAK_ON_COMMA: bool = True

    # Knowledge tracking
    CONFIDENCE_THRESHOLD: float = 0.7
    PIVOT_QUEUE_SIZE: int = 5
    ASSESSMENT_HISTORY_WINDOW: int = 10  # Messages shown to each category assessor

    DATA_DIR: str = "data"
    # If true, the CLI writes every synthesized chunk to data/audio/.
    SAVE_TTS_AUDIO: bool = False

    class Config:
        env_file = ".env"


settings = Settings()
