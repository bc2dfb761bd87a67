"""
Transcription Service
=====================

Turns one recorded answer into text with Google Cloud Speech-to-Text. Every
failure (unreadable audio, provider error, timeout) surfaces as
``TranscriptionFailed`` for that single answer only.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from google.cloud import speech_v1p1beta1 as speech

from ..errors import TranscriptionFailed
from ..settings import settings


logger = logging.getLogger(__name__)

# Test language -> BCP-47 recognition language
LANGUAGE_CODES = {
	"ar": "ar-SA",
	"uz": "uz-UZ",
	"en": "en-US",
	"ru": "ru-RU",
}

# Synchronous recognize() only accepts about a minute of audio
SYNC_RECOGNIZE_LIMIT_SECONDS = 55.0


@dataclass(frozen=True)
class Transcript:
	text: str
	duration_seconds: Optional[float] = None


class Transcriber(Protocol):
	async def transcribe(
		self,
		audio: bytes,
		*,
		language: str,
		duration_hint: Optional[float] = None,
	) -> Transcript:
		...


def language_code_for(language: str) -> str:
	language = (language or "en").strip()
	if "-" in language:
		return language
	return LANGUAGE_CODES.get(language.lower(), "en-US")


def dedupe_transcript(text: str) -> str:
	"""Collapse repeated 1-3 word phrases and extra whitespace.

	Recognition results sometimes repeat a phrase across segment boundaries.
	"""
	s = re.sub(r"\s+", " ", text or "").strip()
	if not s:
		return s
	patterns = [
		(r"\b(\w+\s+\w+\s+\w+)(?:\s+\1\b)+", r"\1"),
		(r"\b(\w+\s+\w+)(?:\s+\1\b)+", r"\1"),
		(r"\b(\w+)(?:\s+\1\b)+", r"\1"),
	]
	for pat, rep in patterns:
		s = re.sub(pat, rep, s, flags=re.IGNORECASE)
	return re.sub(r"\s+", " ", s).strip()


def _seconds(value) -> Optional[float]:
	if value is None:
		return None
	if hasattr(value, "total_seconds"):
		return float(value.total_seconds())
	seconds = getattr(value, "seconds", None)
	if seconds is None:
		return None
	return float(seconds) + float(getattr(value, "nanos", 0)) / 1e9


class SpeechTranscriber:
	def __init__(self, client=None, *, timeout: Optional[float] = None) -> None:
		self._client = client
		self.timeout = timeout if timeout is not None else settings.transcription_timeout_seconds

	def _get_client(self):
		if self._client is None:
			try:
				self._client = speech.SpeechAsyncClient()
			except (GoogleAuthError, GoogleAPIError, ValueError) as exc:
				raise TranscriptionFailed(f"speech client unavailable: {exc}") from exc
		return self._client

	def _config(self, language: str) -> speech.RecognitionConfig:
		return speech.RecognitionConfig(
			encoding=speech.RecognitionConfig.AudioEncoding[settings.speech_encoding],
			sample_rate_hertz=settings.speech_sample_rate_hertz,
			language_code=language_code_for(language),
			model=settings.speech_model,
			enable_automatic_punctuation=True,
			enable_word_time_offsets=True,
		)

	async def transcribe(
		self,
		audio: bytes,
		*,
		language: str,
		duration_hint: Optional[float] = None,
	) -> Transcript:
		if not audio:
			raise TranscriptionFailed("empty audio payload")
		client = self._get_client()
		config = self._config(language)
		recognition_audio = speech.RecognitionAudio(content=audio)
		try:
			response = await asyncio.wait_for(
				self._recognize(client, config, recognition_audio, duration_hint),
				timeout=self.timeout,
			)
		except asyncio.TimeoutError as exc:
			raise TranscriptionFailed(f"timed out after {self.timeout:.0f}s") from exc
		except GoogleAPIError as exc:
			# InvalidArgument covers corrupt or unsupported audio
			raise TranscriptionFailed(f"speech provider error: {exc}") from exc

		parts = []
		duration: Optional[float] = None
		for result in response.results:
			if result.alternatives:
				parts.append(result.alternatives[0].transcript)
			end = _seconds(getattr(result, "result_end_time", None))
			if end is not None:
				duration = end if duration is None else max(duration, end)
		if duration is None:
			duration = _seconds(getattr(response, "total_billed_time", None)) or None
		text = dedupe_transcript(" ".join(parts))
		return Transcript(text=text, duration_seconds=duration)

	async def _recognize(self, client, config, audio, duration_hint: Optional[float]):
		if duration_hint is not None and duration_hint > SYNC_RECOGNIZE_LIMIT_SECONDS:
			operation = await client.long_running_recognize(config=config, audio=audio, timeout=self.timeout)
			return await operation.result(timeout=self.timeout)
		return await client.recognize(config=config, audio=audio, timeout=self.timeout)
