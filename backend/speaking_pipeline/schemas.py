from __future__ import annotations
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


# ============================================================================
# TEST PAYLOAD (what the learner's client receives)
# ============================================================================

class SpeakingTestInfo(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: str
	title: str
	course_id: Optional[str] = None
	description: Optional[str] = None
	instructions: Optional[str] = None
	duration_minutes: int = 60
	pass_score: int = 60
	total_score: int = 100
	language: str = "en"
	is_demo: bool = False
	is_published: bool = False


class SectionPayload(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: str
	section_number: int
	title: str
	instructions: Optional[str] = None
	preparation_time: int = 30
	speaking_time: int = 60
	image_url: Optional[str] = None
	parent_section_id: Optional[str] = None


class QuestionPayload(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: str
	section_id: str
	question_number: int
	question_text: str
	image_url: Optional[str] = None
	question_audio_url: Optional[str] = None
	preparation_time: Optional[int] = None
	speaking_time: Optional[int] = None
	key_facts_plus_label: Optional[str] = None
	key_facts_minus_label: Optional[str] = None
	max_points: float = 100.0


class SpeakingTestPayload(BaseModel):
	"""Flat sections (with parent ids) and flat questions; the client rebuilds the tree."""

	test: SpeakingTestInfo
	sections: List[SectionPayload]
	questions: List[QuestionPayload]


# ============================================================================
# SUBMISSION WIRE FORMAT
# ============================================================================

class AnswerRecord(BaseModel):
	"""One entry of the ``answers`` form field; correlated with ``audioFiles`` by position."""

	model_config = ConfigDict(populate_by_name=True)

	question_id: str = Field(validation_alias=AliasChoices("questionId", "question_id"))
	duration_seconds: Optional[float] = Field(
		default=None,
		ge=0,
		validation_alias=AliasChoices("durationSeconds", "duration_seconds"),
	)


# ============================================================================
# READ MODEL
# ============================================================================

class QuestionResult(BaseModel):
	question_id: str
	answer_id: str
	score: Optional[float] = None
	feedback: Optional[str] = None
	grading_status: str
	needs_review: bool = False
	failure_reason: Optional[str] = None
	transcription: Optional[str] = None
	duration_seconds: Optional[float] = None


class SubmissionResult(BaseModel):
	id: str
	test_id: str
	username: str
	status: str
	total_score: Optional[float] = None
	max_score: Optional[float] = None
	is_passed: Optional[bool] = None
	needs_review: bool = False
	submitted_at: datetime
	evaluated_at: Optional[datetime] = None
	per_question: List[QuestionResult] = Field(default_factory=list)


class SubmissionSummary(BaseModel):
	id: str
	test_id: str
	username: str
	status: str
	total_score: Optional[float] = None
	max_score: Optional[float] = None
	needs_review: bool = False
	submitted_at: datetime


# ============================================================================
# REVIEW
# ============================================================================

class RubricScores(BaseModel):
	fluency: float = Field(default=0.0, ge=0, le=10)
	pronunciation: float = Field(default=0.0, ge=0, le=10)
	vocabulary: float = Field(default=0.0, ge=0, le=10)
	grammar: float = Field(default=0.0, ge=0, le=10)
	relevance: float = Field(default=0.0, ge=0, le=10)


class HumanEvaluationRequest(BaseModel):
	# Overall score on the 0-100 evaluation scale
	score: float = Field(ge=0, le=100)
	feedback: Optional[str] = None
	rubric: Optional[RubricScores] = None


class RegradeRequest(BaseModel):
	only_failed: bool = True


class EvaluationOut(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: str
	answer_id: str
	evaluation_type: str
	evaluator_id: Optional[str] = None
	score: float
	fluency: float
	pronunciation: float
	vocabulary: float
	grammar: float
	relevance: float
	feedback: Optional[str] = None
	detailed_analysis: Optional[Dict] = None
	created_at: datetime
