from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from .db import Base


def _uuid() -> str:
	return uuid.uuid4().hex


SUBMISSION_PENDING = "pending"
SUBMISSION_EVALUATING = "evaluating"
SUBMISSION_EVALUATED = "evaluated"
SUBMISSION_FAILED = "failed"

ANSWER_PENDING = "pending"
ANSWER_EVALUATED = "evaluated"
ANSWER_FAILED = "failed"

EVALUATOR_AI = "ai"
EVALUATOR_HUMAN = "human"


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	# "student" or "instructor"
	role = Column(String(20), default="student", nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class CourseEnrollment(Base):
	__tablename__ = "course_enrollments"
	username = Column(String(128), primary_key=True)
	course_id = Column(String(64), primary_key=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SpeakingTestEnrollment(Base):
	__tablename__ = "test_enrollments"
	# Unlock record for a standalone speaking test; "approved" grants access
	username = Column(String(128), primary_key=True)
	speaking_test_id = Column(String(64), ForeignKey("speaking_tests.id", ondelete="CASCADE"), primary_key=True)
	status = Column(String(20), default="pending", nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Notification(Base):
	__tablename__ = "notifications"
	id = Column(String(64), primary_key=True, default=_uuid)
	username = Column(String(128), nullable=False, index=True)
	type = Column(String(64), nullable=False)
	title = Column(String(255), nullable=False)
	message = Column(Text, nullable=False)
	related_id = Column(String(64), nullable=True)
	is_read = Column(Boolean, default=False, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class SpeakingTest(Base):
	__tablename__ = "speaking_tests"
	id = Column(String(64), primary_key=True, default=_uuid)
	# Null for standalone tests
	course_id = Column(String(64), nullable=True, index=True)
	instructor_id = Column(String(128), nullable=True)
	title = Column(String(255), nullable=False)
	description = Column(Text, nullable=True)
	instructions = Column(Text, nullable=True)
	duration_minutes = Column(Integer, default=60, nullable=False)
	pass_score = Column(Integer, default=60, nullable=False)
	total_score = Column(Integer, default=100, nullable=False)
	language = Column(String(10), default="en", nullable=False)
	is_demo = Column(Boolean, default=False, nullable=False)
	is_published = Column(Boolean, default=False, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	sections = relationship("SpeakingTestSection", back_populates="test", cascade="all, delete-orphan")


class SpeakingTestSection(Base):
	__tablename__ = "speaking_test_sections"
	__table_args__ = (UniqueConstraint("speaking_test_id", "section_number", name="uq_section_number"),)
	id = Column(String(64), primary_key=True, default=_uuid)
	speaking_test_id = Column(String(64), ForeignKey("speaking_tests.id", ondelete="CASCADE"), nullable=False, index=True)
	section_number = Column(Integer, nullable=False)
	title = Column(String(255), nullable=False)
	instructions = Column(Text, nullable=True)
	preparation_time = Column(Integer, default=30, nullable=False)
	speaking_time = Column(Integer, default=60, nullable=False)
	image_url = Column(Text, nullable=True)
	parent_section_id = Column(String(64), ForeignKey("speaking_test_sections.id"), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	test = relationship("SpeakingTest", back_populates="sections")
	questions = relationship("SpeakingQuestion", back_populates="section", cascade="all, delete-orphan")


class SpeakingQuestion(Base):
	__tablename__ = "speaking_questions"
	__table_args__ = (UniqueConstraint("section_id", "question_number", name="uq_question_number"),)
	id = Column(String(64), primary_key=True, default=_uuid)
	section_id = Column(String(64), ForeignKey("speaking_test_sections.id", ondelete="CASCADE"), nullable=False, index=True)
	question_number = Column(Integer, nullable=False)
	question_text = Column(Text, nullable=False)
	image_url = Column(Text, nullable=True)
	question_audio_url = Column(Text, nullable=True)
	# Overrides of the section timing; null means inherit
	preparation_time = Column(Integer, nullable=True)
	speaking_time = Column(Integer, nullable=True)
	key_facts_plus = Column(Text, nullable=True)
	key_facts_minus = Column(Text, nullable=True)
	key_facts_plus_label = Column(Text, nullable=True)
	key_facts_minus_label = Column(Text, nullable=True)
	max_points = Column(Float, default=100.0, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	section = relationship("SpeakingTestSection", back_populates="questions")


class SpeakingSubmission(Base):
	__tablename__ = "speaking_submissions"
	id = Column(String(64), primary_key=True, default=_uuid)
	speaking_test_id = Column(String(64), ForeignKey("speaking_tests.id", ondelete="CASCADE"), nullable=False, index=True)
	username = Column(String(128), nullable=False, index=True)
	status = Column(String(20), default=SUBMISSION_PENDING, nullable=False, index=True)
	total_score = Column(Float, nullable=True)
	max_score = Column(Float, nullable=True)
	is_passed = Column(Boolean, nullable=True)
	needs_review = Column(Boolean, default=False, nullable=False)
	feedback = Column(Text, nullable=True)
	submitted_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	# Start of the latest grading run; the stale sweeper measures from here
	grading_started_at = Column(DateTime, nullable=True)
	evaluated_at = Column(DateTime, nullable=True)

	test = relationship("SpeakingTest")
	answers = relationship("SpeakingAnswer", back_populates="submission", cascade="all, delete-orphan")


class SpeakingAnswer(Base):
	__tablename__ = "speaking_answers"
	__table_args__ = (UniqueConstraint("submission_id", "question_id", name="uq_answer_question"),)
	id = Column(String(64), primary_key=True, default=_uuid)
	submission_id = Column(String(64), ForeignKey("speaking_submissions.id", ondelete="CASCADE"), nullable=False, index=True)
	question_id = Column(String(64), ForeignKey("speaking_questions.id", ondelete="CASCADE"), nullable=False)
	# Opaque storage reference, never a URL or path
	audio_ref = Column(String(128), nullable=False)
	mime_type = Column(String(64), default="audio/webm", nullable=False)
	transcription = Column(Text, nullable=True)
	score = Column(Float, nullable=True)
	feedback = Column(Text, nullable=True)
	duration_seconds = Column(Float, nullable=True)
	grading_status = Column(String(20), default=ANSWER_PENDING, nullable=False)
	failure_reason = Column(String(64), nullable=True)
	needs_review = Column(Boolean, default=False, nullable=False)
	evaluated_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	submission = relationship("SpeakingSubmission", back_populates="answers")
	question = relationship("SpeakingQuestion")
	evaluations = relationship(
		"SpeakingEvaluation",
		back_populates="answer",
		cascade="all, delete-orphan",
		order_by="SpeakingEvaluation.created_at",
	)


class SpeakingEvaluation(Base):
	__tablename__ = "speaking_evaluations"
	# Append-only: re-grading adds rows, nothing here is updated in place
	id = Column(String(64), primary_key=True, default=_uuid)
	answer_id = Column(String(64), ForeignKey("speaking_answers.id", ondelete="CASCADE"), nullable=False, index=True)
	evaluation_type = Column(String(20), nullable=False)
	evaluator_id = Column(String(128), nullable=True)
	score = Column(Float, nullable=False)
	fluency = Column(Float, default=0.0, nullable=False)
	pronunciation = Column(Float, default=0.0, nullable=False)
	vocabulary = Column(Float, default=0.0, nullable=False)
	grammar = Column(Float, default=0.0, nullable=False)
	relevance = Column(Float, default=0.0, nullable=False)
	feedback = Column(Text, nullable=True)
	detailed_analysis = Column(Text, nullable=True)  # JSON string snapshot
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	answer = relationship("SpeakingAnswer", back_populates="evaluations")
