from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import SpeakingSubmission
from ..schemas import SubmissionResult, SubmissionSummary
from ..services.grading import submission_result
from .auth import User, get_current_user


router = APIRouter(prefix="/speaking-submissions", tags=["speaking-submissions"])


def summarize(submission: SpeakingSubmission) -> SubmissionSummary:
	return SubmissionSummary(
		id=submission.id,
		test_id=submission.speaking_test_id,
		username=submission.username,
		status=submission.status,
		total_score=submission.total_score,
		max_score=submission.max_score,
		needs_review=submission.needs_review,
		submitted_at=submission.submitted_at,
	)


@router.get("/mine", response_model=List[SubmissionSummary])
def my_submissions(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	rows = (
		db.query(SpeakingSubmission)
		.filter(SpeakingSubmission.username == user.username)
		.order_by(SpeakingSubmission.submitted_at.desc())
		.all()
	)
	return [summarize(r) for r in rows]


@router.get("/{submission_id}", response_model=SubmissionResult)
def get_submission(submission_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	submission = db.get(SpeakingSubmission, submission_id)
	# Someone else's submission looks the same as a missing one
	if submission is None or (submission.username != user.username and not user.is_instructor):
		raise HTTPException(status_code=404, detail="Submission not found")
	return submission_result(db, submission)
