"""
Instructor Review
=================

Lets instructors find submissions that need attention, re-run AI grading,
record their own scores and listen to the stored audio.

Human and AI evaluations are appended to an answer's history; the newest one
sets the answer's score, and the submission is re-aggregated on every change.
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException
from fastapi.responses import FileResponse
from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..db import get_db
from ..dependencies import get_audio_store, get_grading_pipeline, get_notifier
from ..errors import GradingInProgress
from ..gate import NotificationSink
from ..models import (
	ANSWER_FAILED,
	ANSWER_PENDING,
	SUBMISSION_EVALUATED,
	SUBMISSION_EVALUATING,
	SUBMISSION_PENDING,
	SpeakingAnswer,
	SpeakingEvaluation,
	SpeakingSubmission,
	SpeakingTest,
)
from ..schemas import EvaluationOut, HumanEvaluationRequest, RegradeRequest, SubmissionResult, SubmissionSummary
from ..services.grading import GradingPipeline, claim_for_grading, record_human_evaluation, submission_result
from ..storage import LocalAudioStore
from .auth import User, require_instructor
from .submissions import summarize


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/review", tags=["review"])


def _owned_by(user: User):
	# Tests without an instructor are shared by every instructor
	return or_(SpeakingTest.instructor_id == user.username, SpeakingTest.instructor_id.is_(None))


def _ensure_owner(test: SpeakingTest, user: User) -> None:
	if test.instructor_id not in (None, user.username):
		raise HTTPException(status_code=403, detail="This test belongs to another instructor")


def _submission_or_404(db: Session, submission_id: str, user: User) -> SpeakingSubmission:
	submission = db.get(SpeakingSubmission, submission_id)
	if submission is None:
		raise HTTPException(status_code=404, detail="Submission not found")
	_ensure_owner(submission.test, user)
	return submission


def _answer_or_404(db: Session, answer_id: str, user: User) -> SpeakingAnswer:
	answer = db.get(SpeakingAnswer, answer_id)
	if answer is None:
		raise HTTPException(status_code=404, detail="Answer not found")
	_ensure_owner(answer.submission.test, user)
	return answer


def _evaluation_out(row: SpeakingEvaluation) -> EvaluationOut:
	analysis = None
	if row.detailed_analysis:
		try:
			analysis = json.loads(row.detailed_analysis)
		except ValueError:
			logger.warning("Evaluation %s has unreadable analysis", row.id)
	return EvaluationOut(
		id=row.id,
		answer_id=row.answer_id,
		evaluation_type=row.evaluation_type,
		evaluator_id=row.evaluator_id,
		score=row.score,
		fluency=row.fluency,
		pronunciation=row.pronunciation,
		vocabulary=row.vocabulary,
		grammar=row.grammar,
		relevance=row.relevance,
		feedback=row.feedback,
		detailed_analysis=analysis,
		created_at=row.created_at,
	)


@router.get("/submissions", response_model=List[SubmissionSummary])
def list_submissions(
	needs_review: Optional[bool] = None,
	test_id: Optional[str] = None,
	user: User = Depends(require_instructor),
	db: Session = Depends(get_db),
):
	query = db.query(SpeakingSubmission).join(SpeakingTest, SpeakingSubmission.speaking_test_id == SpeakingTest.id)
	query = query.filter(_owned_by(user))
	if needs_review is not None:
		query = query.filter(SpeakingSubmission.needs_review == needs_review)
	if test_id:
		query = query.filter(SpeakingSubmission.speaking_test_id == test_id)
	return [summarize(s) for s in query.order_by(SpeakingSubmission.submitted_at.desc()).all()]


@router.post("/submissions/{submission_id}/regrade", response_model=SubmissionResult, status_code=202)
def regrade_submission(
	submission_id: str,
	background_tasks: BackgroundTasks,
	req: Optional[RegradeRequest] = Body(default=None),
	user: User = Depends(require_instructor),
	db: Session = Depends(get_db),
	pipeline: GradingPipeline = Depends(get_grading_pipeline),
):
	submission = _submission_or_404(db, submission_id, user)
	if submission.status in (SUBMISSION_PENDING, SUBMISSION_EVALUATING):
		raise HTTPException(status_code=409, detail="Grading is already in progress")
	if req is None or req.only_failed:
		answer_ids = [a.id for a in submission.answers if a.grading_status == ANSWER_FAILED]
	else:
		answer_ids = [a.id for a in submission.answers]
	if not answer_ids:
		raise HTTPException(status_code=409, detail="Nothing to re-grade")
	# Committed before scheduling: overlapping re-grades and human scores see the answers as pending
	try:
		claim_for_grading(db, submission, answer_ids)
	except GradingInProgress as exc:
		raise HTTPException(status_code=409, detail="Grading is already in progress") from exc
	db.commit()
	logger.info("%s requested re-grading of %d answer(s) in %s", user.username, len(answer_ids), submission.id)
	background_tasks.add_task(pipeline.grade_submission, submission.id, answer_ids)
	return submission_result(db, submission)


@router.post("/answers/{answer_id}/evaluations", response_model=EvaluationOut, status_code=201)
def add_human_evaluation(
	answer_id: str,
	req: HumanEvaluationRequest,
	user: User = Depends(require_instructor),
	db: Session = Depends(get_db),
	notifier: NotificationSink = Depends(get_notifier),
):
	answer = _answer_or_404(db, answer_id, user)
	if answer.grading_status == ANSWER_PENDING:
		raise HTTPException(status_code=409, detail="This answer is still being graded")
	submission = answer.submission
	was_evaluated = submission.status == SUBMISSION_EVALUATED
	row = record_human_evaluation(
		db,
		answer,
		evaluator_id=user.username,
		score=req.score,
		feedback=req.feedback,
		rubric=req.rubric.model_dump() if req.rubric else None,
	)
	logger.info("%s scored answer %s: %.1f", user.username, answer.id, req.score)
	if submission.status == SUBMISSION_EVALUATED and not was_evaluated:
		notifier.submission_evaluated(db, submission)
	return _evaluation_out(row)


@router.get("/answers/{answer_id}/evaluations", response_model=List[EvaluationOut])
def list_evaluations(answer_id: str, user: User = Depends(require_instructor), db: Session = Depends(get_db)):
	answer = _answer_or_404(db, answer_id, user)
	return [_evaluation_out(row) for row in answer.evaluations]


@router.get("/answers/{answer_id}/audio")
def get_answer_audio(
	answer_id: str,
	user: User = Depends(require_instructor),
	db: Session = Depends(get_db),
	store: LocalAudioStore = Depends(get_audio_store),
):
	answer = _answer_or_404(db, answer_id, user)
	if not store.exists(answer.audio_ref):
		raise HTTPException(status_code=404, detail="Audio is no longer available")
	return FileResponse(store.path(answer.audio_ref), media_type=answer.mime_type)
