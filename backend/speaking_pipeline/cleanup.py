from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .gate import NotificationSink
from .models import ANSWER_PENDING, SUBMISSION_EVALUATED, SUBMISSION_EVALUATING, SUBMISSION_PENDING, SpeakingSubmission
from .services.grading import FAILURE_INTERRUPTED, finalize_submission, mark_answer_failed
from .settings import settings


logger = logging.getLogger(__name__)


def fail_stale_gradings(db: Session, older_than: Optional[timedelta] = None, notifier: Optional[NotificationSink] = None) -> int:
	"""Finalize submissions whose grading never finished (e.g. the process restarted mid-run).

	Unfinished answers are marked failed so the submission reaches a terminal status.
	Returns the number of submissions finalized.
	"""
	if older_than is None:
		older_than = timedelta(minutes=settings.stale_grading_minutes)
	threshold = datetime.utcnow() - older_than
	stale = (
		db.query(SpeakingSubmission)
		.filter(SpeakingSubmission.status.in_([SUBMISSION_PENDING, SUBMISSION_EVALUATING]))
		.filter(func.coalesce(SpeakingSubmission.grading_started_at, SpeakingSubmission.submitted_at) < threshold)
		.all()
	)
	finalized = 0
	for submission in stale:
		for answer in submission.answers:
			if answer.grading_status == ANSWER_PENDING:
				mark_answer_failed(answer, FAILURE_INTERRUPTED)
		status = finalize_submission(db, submission)
		db.commit()
		logger.warning("Stale submission %s finalized as %s", submission.id, status)
		if status == SUBMISSION_EVALUATED and notifier is not None:
			notifier.submission_evaluated(db, submission)
		finalized += 1
	return finalized
