"""
Grading pipeline
================

Takes a stored submission through transcription and evaluation and aggregates
the result.

Answers of one submission are graded concurrently, bounded by a semaphore so
provider rate limits are respected. Each answer's outcome is written as soon as
it is known. Aggregation runs only after every answer task has finished
(``asyncio.gather`` is the barrier), and ``finalize_submission`` itself refuses
to aggregate while any answer is still pending.

Failure policy:
- a failed answer keeps ``score = NULL`` and is flagged ``needs_review``;
- failed and unanswered questions stay in ``max_score`` and add nothing to
  ``total_score``;
- the submission becomes ``evaluated`` only when every answer holds an
  evaluation, otherwise it ends ``failed`` with ``needs_review`` set.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..errors import EvaluationFailed, GradingInProgress, MalformedQuestionTree, TranscriptionFailed
from ..gate import NotificationSink
from ..models import (
	ANSWER_EVALUATED,
	ANSWER_FAILED,
	ANSWER_PENDING,
	EVALUATOR_AI,
	EVALUATOR_HUMAN,
	SUBMISSION_EVALUATED,
	SUBMISSION_EVALUATING,
	SUBMISSION_FAILED,
	SUBMISSION_PENDING,
	SpeakingAnswer,
	SpeakingEvaluation,
	SpeakingQuestion,
	SpeakingSubmission,
	SpeakingTest,
	SpeakingTestSection,
)
from ..schemas import QuestionResult, SubmissionResult
from ..settings import settings
from ..storage import LocalAudioStore
from ..tree import QuestionTree
from .evaluation import EvaluationResult, Evaluator
from .transcription import Transcriber


logger = logging.getLogger(__name__)

FAILURE_TRANSCRIPTION = "transcription_failed"
FAILURE_EVALUATION = "evaluation_failed"
FAILURE_INTERNAL = "grading_error"
FAILURE_INTERRUPTED = "grading_interrupted"


# ============================================================================
# QUERIES
# ============================================================================

def load_question_tree(db: Session, test: SpeakingTest) -> QuestionTree:
	sections = db.query(SpeakingTestSection).filter(SpeakingTestSection.speaking_test_id == test.id).all()
	questions = (
		db.query(SpeakingQuestion)
		.join(SpeakingTestSection, SpeakingQuestion.section_id == SpeakingTestSection.id)
		.filter(SpeakingTestSection.speaking_test_id == test.id)
		.all()
	)
	return QuestionTree.build(test.id, sections, questions)


def _test_max_score(db: Session, test_id: str) -> float:
	rows = (
		db.query(SpeakingQuestion.max_points)
		.join(SpeakingTestSection, SpeakingQuestion.section_id == SpeakingTestSection.id)
		.filter(SpeakingTestSection.speaking_test_id == test_id)
		.all()
	)
	return float(sum(r[0] for r in rows))


def _points(overall: float, max_points: float) -> float:
	return round(overall * (max_points or 0.0) / 100.0, 2)


# ============================================================================
# AGGREGATION & PERSISTENCE
# ============================================================================

def finalize_submission(db: Session, submission: SpeakingSubmission) -> str:
	"""Aggregate a submission whose answers have all reached a terminal state.

	Returns the (possibly unchanged) submission status. The caller commits.
	"""
	answers = list(submission.answers)
	if any(a.grading_status == ANSWER_PENDING for a in answers):
		return submission.status
	test = submission.test
	max_score = _test_max_score(db, test.id)
	total = sum(a.score for a in answers if a.grading_status == ANSWER_EVALUATED and a.score is not None)
	failed = [a for a in answers if a.grading_status == ANSWER_FAILED]

	submission.total_score = round(total, 2)
	submission.max_score = round(max_score, 2)
	if max_score > 0 and test.total_score:
		submission.is_passed = total * test.total_score >= test.pass_score * max_score
	else:
		submission.is_passed = False
	submission.needs_review = bool(failed)
	submission.status = SUBMISSION_FAILED if failed else SUBMISSION_EVALUATED
	submission.evaluated_at = datetime.utcnow()
	logger.info(
		"Submission %s %s: %.2f/%.2f (%d answer(s), %d failed)",
		submission.id,
		submission.status,
		submission.total_score,
		submission.max_score,
		len(answers),
		len(failed),
	)
	return submission.status


def _append_evaluation(
	db: Session,
	answer: SpeakingAnswer,
	result: EvaluationResult,
	*,
	evaluation_type: str,
	evaluator_id: Optional[str] = None,
) -> SpeakingEvaluation:
	evaluation = SpeakingEvaluation(
		answer_id=answer.id,
		evaluation_type=evaluation_type,
		evaluator_id=evaluator_id,
		score=result.score,
		feedback=result.feedback or None,
		detailed_analysis=json.dumps(result.analysis(), ensure_ascii=False),
		**result.rubric,
	)
	db.add(evaluation)
	answer.score = _points(result.score, answer.question.max_points)
	answer.feedback = result.feedback or None
	answer.grading_status = ANSWER_EVALUATED
	answer.failure_reason = None
	answer.needs_review = False
	answer.evaluated_at = datetime.utcnow()
	return evaluation


def mark_answer_failed(answer: SpeakingAnswer, reason: str) -> None:
	answer.score = None
	answer.grading_status = ANSWER_FAILED
	answer.failure_reason = reason
	answer.needs_review = True
	answer.evaluated_at = None


def record_human_evaluation(
	db: Session,
	answer: SpeakingAnswer,
	*,
	evaluator_id: str,
	score: float,
	feedback: Optional[str] = None,
	rubric: Optional[Dict[str, float]] = None,
) -> SpeakingEvaluation:
	"""Append an instructor's evaluation and re-aggregate the submission."""
	result = EvaluationResult(score=score, feedback=feedback, **(rubric or {}))
	evaluation = _append_evaluation(db, answer, result, evaluation_type=EVALUATOR_HUMAN, evaluator_id=evaluator_id)
	db.flush()
	finalize_submission(db, answer.submission)
	db.commit()
	return evaluation


def _mark_pending(submission: SpeakingSubmission, answer_ids: Optional[Iterable[str]] = None) -> List[SpeakingAnswer]:
	selected = set(answer_ids) if answer_ids is not None else None
	marked = []
	for answer in submission.answers:
		if selected is not None and answer.id not in selected:
			continue
		answer.grading_status = ANSWER_PENDING
		answer.failure_reason = None
		marked.append(answer)
	submission.status = SUBMISSION_EVALUATING
	submission.grading_started_at = datetime.utcnow()
	return marked


def claim_for_grading(db: Session, submission: SpeakingSubmission, answer_ids: Iterable[str]) -> List[SpeakingAnswer]:
	"""Take a finished submission back into grading. The caller commits.

	The status switch is a conditional UPDATE, so of two overlapping claims only
	one succeeds; the other raises GradingInProgress.
	"""
	claimed = (
		db.query(SpeakingSubmission)
		.filter(SpeakingSubmission.id == submission.id)
		.filter(SpeakingSubmission.status.notin_([SUBMISSION_PENDING, SUBMISSION_EVALUATING]))
		.update({SpeakingSubmission.status: SUBMISSION_EVALUATING}, synchronize_session=False)
	)
	if not claimed:
		db.rollback()
		raise GradingInProgress(f"Submission {submission.id} is already being graded")
	return _mark_pending(submission, answer_ids)


def submission_result(db: Session, submission: SpeakingSubmission) -> SubmissionResult:
	answers = list(submission.answers)
	try:
		tree = load_question_tree(db, submission.test)
		answers.sort(key=lambda a: tree.position(a.question_id) if a.question_id in tree else len(tree))
	except MalformedQuestionTree:
		logger.warning("Could not order answers of submission %s", submission.id, exc_info=True)
	return SubmissionResult(
		id=submission.id,
		test_id=submission.speaking_test_id,
		username=submission.username,
		status=submission.status,
		total_score=submission.total_score,
		max_score=submission.max_score,
		is_passed=submission.is_passed,
		needs_review=submission.needs_review,
		submitted_at=submission.submitted_at,
		evaluated_at=submission.evaluated_at,
		per_question=[
			QuestionResult(
				question_id=a.question_id,
				answer_id=a.id,
				score=a.score,
				feedback=a.feedback,
				grading_status=a.grading_status,
				needs_review=a.needs_review,
				failure_reason=a.failure_reason,
				transcription=a.transcription,
				duration_seconds=a.duration_seconds,
			)
			for a in answers
		],
	)


# ============================================================================
# PIPELINE
# ============================================================================

@dataclass(frozen=True)
class AnswerJob:
	answer_id: str
	audio_ref: str
	question_text: str
	language: str
	key_facts_plus: Optional[str] = None
	key_facts_minus: Optional[str] = None
	transcription: Optional[str] = None
	duration_hint: Optional[float] = None


@dataclass(frozen=True)
class AnswerOutcome:
	answer_id: str
	transcription: Optional[str] = None
	duration_seconds: Optional[float] = None
	evaluation: Optional[EvaluationResult] = None
	failure_reason: Optional[str] = None
	detail: Optional[str] = None

	@property
	def ok(self) -> bool:
		return self.evaluation is not None


class GradingPipeline:
	def __init__(
		self,
		session_factory: Callable[[], Session],
		store: LocalAudioStore,
		transcriber: Transcriber,
		evaluator: Evaluator,
		notifier: Optional[NotificationSink] = None,
		*,
		concurrency: Optional[int] = None,
	) -> None:
		self._session_factory = session_factory
		self.store = store
		self.transcriber = transcriber
		self.evaluator = evaluator
		self.notifier = notifier
		self.concurrency = max(1, concurrency or settings.grading_concurrency)

	async def grade_submission(self, submission_id: str, answer_ids: Optional[Iterable[str]] = None) -> Optional[str]:
		"""Grade the given answers (all by default) and finalize the submission."""
		with self._session_factory() as db:
			submission = db.get(SpeakingSubmission, submission_id)
			if submission is None:
				logger.warning("Submission %s not found; nothing to grade", submission_id)
				return None
			language = submission.test.language
			jobs: List[AnswerJob] = []
			for answer in _mark_pending(submission, answer_ids):
				question = answer.question
				jobs.append(
					AnswerJob(
						answer_id=answer.id,
						audio_ref=answer.audio_ref,
						question_text=question.question_text,
						language=language,
						key_facts_plus=question.key_facts_plus,
						key_facts_minus=question.key_facts_minus,
						transcription=answer.transcription,
						duration_hint=answer.duration_seconds,
					)
				)
			submission.status = SUBMISSION_EVALUATING
			db.commit()
		logger.info("Grading %d answer(s) of submission %s", len(jobs), submission_id)

		semaphore = asyncio.Semaphore(self.concurrency)
		results = await asyncio.gather(*(self._run(job, semaphore) for job in jobs), return_exceptions=True)
		for job, result in zip(jobs, results):
			if isinstance(result, BaseException):
				logger.error("Persisting outcome of answer %s failed: %r", job.answer_id, result)
				await asyncio.to_thread(
					self._persist,
					AnswerOutcome(answer_id=job.answer_id, failure_reason=FAILURE_INTERNAL, detail=repr(result)),
				)

		with self._session_factory() as db:
			submission = db.get(SpeakingSubmission, submission_id)
			status = finalize_submission(db, submission)
			db.commit()
			if status == SUBMISSION_EVALUATED and self.notifier is not None:
				self.notifier.submission_evaluated(db, submission)
		return status

	async def _run(self, job: AnswerJob, semaphore: asyncio.Semaphore) -> AnswerOutcome:
		async with semaphore:
			try:
				outcome = await self._grade_answer(job)
			except Exception as exc:
				logger.exception("Unexpected error while grading answer %s", job.answer_id)
				outcome = AnswerOutcome(answer_id=job.answer_id, transcription=job.transcription, failure_reason=FAILURE_INTERNAL, detail=str(exc))
		await asyncio.to_thread(self._persist, outcome)
		return outcome

	async def _grade_answer(self, job: AnswerJob) -> AnswerOutcome:
		transcription = job.transcription
		duration = job.duration_hint
		if transcription is None:
			try:
				try:
					audio = await asyncio.to_thread(self.store.load, job.audio_ref)
				except (OSError, ValueError) as exc:
					raise TranscriptionFailed(f"audio unavailable: {exc}") from exc
				transcript = await self.transcriber.transcribe(audio, language=job.language, duration_hint=duration)
			except TranscriptionFailed as exc:
				logger.warning("Answer %s: %s", job.answer_id, exc)
				return AnswerOutcome(answer_id=job.answer_id, duration_seconds=duration, failure_reason=FAILURE_TRANSCRIPTION, detail=exc.reason)
			transcription = transcript.text
			if transcript.duration_seconds is not None:
				duration = transcript.duration_seconds
		try:
			result = await self.evaluator.evaluate(
				job.question_text,
				transcription,
				job.language,
				job.key_facts_plus,
				job.key_facts_minus,
			)
		except EvaluationFailed as exc:
			logger.warning("Answer %s: %s", job.answer_id, exc)
			return AnswerOutcome(
				answer_id=job.answer_id,
				transcription=transcription,
				duration_seconds=duration,
				failure_reason=FAILURE_EVALUATION,
				detail=exc.reason,
			)
		return AnswerOutcome(answer_id=job.answer_id, transcription=transcription, duration_seconds=duration, evaluation=result)

	def _persist(self, outcome: AnswerOutcome) -> None:
		with self._session_factory() as db:
			answer = db.get(SpeakingAnswer, outcome.answer_id)
			if answer is None:
				logger.warning("Answer %s disappeared before its outcome was stored", outcome.answer_id)
				return
			if outcome.transcription is not None:
				answer.transcription = outcome.transcription
			if outcome.duration_seconds is not None:
				answer.duration_seconds = round(outcome.duration_seconds, 2)
			if outcome.evaluation is not None:
				_append_evaluation(db, answer, outcome.evaluation, evaluation_type=EVALUATOR_AI)
			else:
				mark_answer_failed(answer, outcome.failure_reason or FAILURE_INTERNAL)
			db.commit()
