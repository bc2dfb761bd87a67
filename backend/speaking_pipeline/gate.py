"""Narrow contracts to collaborators: the enrollment gate and the notification sink."""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .models import CourseEnrollment, Notification, SpeakingSubmission, SpeakingTest, SpeakingTestEnrollment


logger = logging.getLogger(__name__)


class EnrollmentGate:
	"""Decides whether a learner may attempt a test."""

	def is_authorized(self, db: Session, username: str, test: SpeakingTest) -> bool:
		if test.is_demo:
			return True
		if not test.is_published:
			return False
		if test.course_id:
			row = db.get(CourseEnrollment, (username, test.course_id))
			return row is not None
		row = db.get(SpeakingTestEnrollment, (username, test.id))
		return row is not None and row.status == "approved"


class NotificationSink(Protocol):
	def submission_evaluated(self, db: Session, submission: SpeakingSubmission) -> None:
		...


class DbNotificationSink:
	"""Writes an in-app notification row. Never raises."""

	def submission_evaluated(self, db: Session, submission: SpeakingSubmission) -> None:
		try:
			test = submission.test
			title = test.title if test is not None else "Speaking test"
			score = submission.total_score or 0
			max_score = submission.max_score or 0
			db.add(
				Notification(
					username=submission.username,
					type="speaking_test_evaluated",
					title=f"{title}: results are ready",
					message=f"Your speaking test has been evaluated: {score:.0f}/{max_score:.0f}.",
					related_id=submission.id,
				)
			)
			db.commit()
		except SQLAlchemyError:
			db.rollback()
			logger.warning("Could not record notification for submission %s", submission.id, exc_info=True)
