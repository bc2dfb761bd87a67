from __future__ import annotations
from typing import Optional


class SpeakingPipelineError(Exception):
	"""Base class for every error raised by the speaking pipeline."""


class AudioPermissionDenied(SpeakingPipelineError):
	"""The capture device refused access. The learner may retry."""


class RecorderBusy(SpeakingPipelineError):
	"""A capture session is already armed or recording."""


class MalformedQuestionTree(SpeakingPipelineError):
	"""The section/question tree of a test cannot be ordered safely."""


class NotAuthorized(SpeakingPipelineError):
	"""The learner may not attempt this test."""


class NoAnswersRecorded(SpeakingPipelineError):
	"""A submission needs at least one recorded answer."""


class SubmissionFailed(SpeakingPipelineError):
	def __init__(self, message: str, *, retryable: bool, status_code: Optional[int] = None) -> None:
		super().__init__(message)
		self.retryable = retryable
		self.status_code = status_code


class TranscriptionFailed(SpeakingPipelineError):
	def __init__(self, reason: str) -> None:
		super().__init__(f"Transcription failed: {reason}")
		self.reason = reason


class EvaluationFailed(SpeakingPipelineError):
	def __init__(self, reason: str) -> None:
		super().__init__(f"Evaluation failed: {reason}")
		self.reason = reason


class GradingInProgress(SpeakingPipelineError):
	"""Another grading run already owns this submission."""
