from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

class Settings(BaseSettings):
	gemini_api_key: str | None = Field(default=None, validation_alias="GEMINI_API_KEY")
	# Provider can be "vertex" (Vertex AI Express) or "ai_studio" (Generative Language API)
	gemini_provider: str = Field(default="ai_studio", validation_alias="GEMINI_PROVIDER")
	gemini_model: str = Field(default="gemini-2.5-flash", validation_alias="GEMINI_MODEL")
	gemini_timeout_seconds: float = Field(default=60.0, validation_alias="GEMINI_TIMEOUT_SECONDS")
	# Vertex configuration
	vertex_region: str = Field(default="us-central1", validation_alias="GEMINI_VERTEX_REGION")
	vertex_project: str | None = Field(default=None, validation_alias="GEMINI_VERTEX_PROJECT")

	# OpenRouter fallback configuration (optional)
	openrouter_api_key: str | None = Field(default=None, validation_alias="OPENROUTER_API_KEY")
	openrouter_model: str = Field(default="x-ai/grok-4-fast:free", validation_alias="OPENROUTER_MODEL")
	openrouter_base_url: str = Field(default="https://openrouter.ai/api/v1/chat/completions", validation_alias="OPENROUTER_BASE_URL")
	openrouter_referer: str = Field(default="https://localhost", validation_alias="OPENROUTER_HTTP_REFERER")
	openrouter_title: str = Field(default="Speaking Assessment", validation_alias="OPENROUTER_TITLE")

	# Google Cloud Speech-to-Text (credentials come from GOOGLE_APPLICATION_CREDENTIALS)
	speech_encoding: str = Field(default="WEBM_OPUS", validation_alias="SPEECH_ENCODING")
	speech_sample_rate_hertz: int = Field(default=48000, validation_alias="SPEECH_SAMPLE_RATE_HERTZ")
	speech_model: str = Field(default="default", validation_alias="SPEECH_MODEL")

	# Grading pipeline
	grading_concurrency: int = Field(default=4, validation_alias="GRADING_CONCURRENCY")
	transcription_timeout_seconds: float = Field(default=60.0, validation_alias="TRANSCRIPTION_TIMEOUT_SECONDS")
	evaluation_timeout_seconds: float = Field(default=90.0, validation_alias="EVALUATION_TIMEOUT_SECONDS")
	# Submissions left pending/evaluating longer than this are failed by the sweeper
	stale_grading_minutes: int = Field(default=30, validation_alias="STALE_GRADING_MINUTES")
	sweep_interval_seconds: int = Field(default=600, validation_alias="SWEEP_INTERVAL_SECONDS")

	# Audio artifacts
	audio_storage_dir: str = Field(default="uploaded_audios", validation_alias="AUDIO_STORAGE_DIR")
	max_audio_bytes: int = Field(default=25 * 1024 * 1024, validation_alias="MAX_AUDIO_BYTES")

	# Auth configuration
	jwt_secret_key: str = Field(default="change-me", validation_alias="JWT_SECRET_KEY")
	jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
	access_token_expire_minutes: int = Field(default=120, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")
	# Seed user
	seed_username: str | None = Field(default=None, validation_alias="SEED_USERNAME")
	seed_password_plain: str | None = Field(default=None, validation_alias="SEED_PASSWORD")

	# Database
	database_url: str | None = Field(default=None, validation_alias="DATABASE_URL")

	log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

	# pydantic-settings v2 style config
	model_config = SettingsConfigDict(env_file=".env", extra="ignore")

settings = Settings()
