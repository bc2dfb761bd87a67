"""FastAPI dependency providers for the pipeline's collaborators.

Each provider returns a process-wide instance; tests swap them through
``app.dependency_overrides``.
"""

from __future__ import annotations
from functools import lru_cache

from .db import SessionLocal
from .gate import DbNotificationSink, EnrollmentGate, NotificationSink
from .services.evaluation import SpeakingEvaluator
from .services.grading import GradingPipeline
from .services.transcription import SpeechTranscriber
from .storage import LocalAudioStore


@lru_cache(maxsize=1)
def get_enrollment_gate() -> EnrollmentGate:
	return EnrollmentGate()


@lru_cache(maxsize=1)
def get_audio_store() -> LocalAudioStore:
	return LocalAudioStore()


@lru_cache(maxsize=1)
def get_notifier() -> NotificationSink:
	return DbNotificationSink()


@lru_cache(maxsize=1)
def get_grading_pipeline() -> GradingPipeline:
	return GradingPipeline(
		SessionLocal,
		get_audio_store(),
		SpeechTranscriber(),
		SpeakingEvaluator(),
		get_notifier(),
	)
