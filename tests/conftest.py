import asyncio
import os
from types import SimpleNamespace
from typing import Dict, Iterable, List, Optional, Sequence

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("OPENROUTER_API_KEY", "")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from speaking_pipeline.db import Base
from speaking_pipeline.errors import EvaluationFailed, TranscriptionFailed
from speaking_pipeline.models import (
	SpeakingAnswer,
	SpeakingQuestion,
	SpeakingSubmission,
	SpeakingTest,
	SpeakingTestSection,
)
from speaking_pipeline.services.evaluation import EvaluationResult
from speaking_pipeline.services.transcription import Transcript
from speaking_pipeline.storage import LocalAudioStore


# ----------------------------------------------------------------------------
# database
# ----------------------------------------------------------------------------

@pytest.fixture
def engine(tmp_path):
	# A file database: the API tests run request handlers and background grading
	# on separate connections
	eng = create_engine(
		f"sqlite:///{tmp_path / 'speaking.db'}",
		connect_args={"check_same_thread": False},
		future=True,
	)
	Base.metadata.create_all(bind=eng)
	yield eng
	eng.dispose()


@pytest.fixture
def session_factory(engine):
	return sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


@pytest.fixture
def db(session_factory):
	session = session_factory()
	try:
		yield session
	finally:
		session.close()


@pytest.fixture
def store(tmp_path):
	return LocalAudioStore(str(tmp_path / "audio"))


def seed_test(
	db,
	layout: Sequence[int] = (2, 1),
	*,
	title: str = "Oral exam",
	language: str = "en",
	is_demo: bool = True,
	is_published: bool = True,
	course_id: Optional[str] = None,
	instructor_id: Optional[str] = None,
	pass_score: int = 60,
	max_points: float = 100.0,
):
	"""Create a test with one section per ``layout`` entry holding that many questions.

	Returns the test and its question ids in test order.
	"""
	test = SpeakingTest(
		title=title,
		language=language,
		is_demo=is_demo,
		is_published=is_published,
		course_id=course_id,
		instructor_id=instructor_id,
		pass_score=pass_score,
	)
	db.add(test)
	db.flush()
	question_ids: List[str] = []
	for s_idx, count in enumerate(layout, start=1):
		section = SpeakingTestSection(
			speaking_test_id=test.id,
			section_number=s_idx,
			title=f"Part {s_idx}",
			preparation_time=5,
			speaking_time=30,
		)
		db.add(section)
		db.flush()
		for q_idx in range(1, count + 1):
			question = SpeakingQuestion(
				section_id=section.id,
				question_number=q_idx,
				question_text=f"Question {s_idx}.{q_idx}",
				key_facts_plus="family, hobbies",
				max_points=max_points,
			)
			db.add(question)
			db.flush()
			question_ids.append(question.id)
	db.commit()
	return test, question_ids


def seed_submission(db, store, test, answers: Dict[str, bytes], *, username: str = "learner"):
	"""Store ``answers`` (question id -> audio) as a pending submission."""
	submission = SpeakingSubmission(speaking_test_id=test.id, username=username)
	db.add(submission)
	db.flush()
	for question_id, audio in answers.items():
		db.add(
			SpeakingAnswer(
				submission_id=submission.id,
				question_id=question_id,
				audio_ref=store.save(audio, "webm"),
				duration_seconds=12.0,
			)
		)
	db.commit()
	return submission


# ----------------------------------------------------------------------------
# capture device fakes
# ----------------------------------------------------------------------------

class FakeStream:
	def __init__(self, data: bytes = b"audio", mime_type: str = "audio/webm") -> None:
		self.data = data
		self.mime_type = mime_type
		self.started = 0
		self.stopped = 0
		self.released = 0

	def start(self) -> None:
		self.started += 1

	def stop(self) -> bytes:
		self.stopped += 1
		return self.data

	def release(self) -> None:
		self.released += 1


class FakeDevice:
	def __init__(self, *, deny: bool = False, data: bytes = b"audio") -> None:
		self.deny = deny
		self.data = data
		self.streams: List[FakeStream] = []

	async def open(self) -> FakeStream:
		if self.deny:
			raise PermissionError("Permission denied by user")
		stream = FakeStream(self.data)
		self.streams.append(stream)
		return stream

	@property
	def live_streams(self) -> int:
		return sum(1 for s in self.streams if not s.released)


class FakeClock:
	def __init__(self, now: float = 100.0) -> None:
		self.now = now

	def __call__(self) -> float:
		return self.now


@pytest.fixture
def device():
	return FakeDevice()


# ----------------------------------------------------------------------------
# provider fakes
# ----------------------------------------------------------------------------

class FakeTranscriber:
	"""Echoes the audio bytes back as the transcript."""

	def __init__(self, *, fail_on: Iterable[bytes] = (), delay: float = 0.0) -> None:
		self.fail_on = set(fail_on)
		self.delay = delay
		self.calls: List[bytes] = []
		self.active = 0
		self.max_active = 0

	async def transcribe(self, audio: bytes, *, language: str, duration_hint: Optional[float] = None) -> Transcript:
		self.calls.append(audio)
		self.active += 1
		self.max_active = max(self.max_active, self.active)
		try:
			if self.delay:
				await asyncio.sleep(self.delay)
			if audio in self.fail_on:
				raise TranscriptionFailed("speech provider error: 503")
			return Transcript(text=audio.decode(), duration_seconds=9.5)
		finally:
			self.active -= 1


class FakeEvaluator:
	"""Scores a transcript from a lookup table; unknown transcripts score 50."""

	def __init__(self, scores: Optional[Dict[str, float]] = None, *, fail_on: Iterable[str] = (), crash_on: Iterable[str] = ()) -> None:
		self.scores = scores or {}
		self.fail_on = set(fail_on)
		self.crash_on = set(crash_on)
		self.calls: List[str] = []

	async def evaluate(self, question_text, transcript, language, key_facts_plus=None, key_facts_minus=None):
		self.calls.append(transcript)
		if transcript in self.fail_on:
			raise EvaluationFailed("timed out after 90s")
		if transcript in self.crash_on:
			raise RuntimeError("unexpected provider payload")
		score = self.scores.get(transcript, 50.0)
		return EvaluationResult(score=score, feedback=f"Scored {score:.0f}", fluency=7, grammar=6)


class RecordingNotifier:
	def __init__(self) -> None:
		self.notified: List[str] = []

	def submission_evaluated(self, db, submission) -> None:
		self.notified.append(submission.id)


def rows(**kwargs):
	return SimpleNamespace(**kwargs)
