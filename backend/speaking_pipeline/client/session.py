from __future__ import annotations
import logging
from typing import Optional

from ..schemas import SpeakingTestPayload, SubmissionResult
from ..tree import QuestionTree
from .api import SpeakingApiClient
from .assembler import assemble
from .navigation import NavigationController
from .recorder import Recorder


logger = logging.getLogger(__name__)


class SpeakingTestSession:
	"""One learner attempt: load, navigate/record, submit.

	The server refuses the test (NotAuthorized) before anything is built, and a
	malformed tree raises MalformedQuestionTree here, before the learner starts.
	Recordings live in the recorder, so a failed submit can simply be retried.
	"""

	def __init__(
		self,
		api: SpeakingApiClient,
		payload: SpeakingTestPayload,
		recorder: Recorder,
		*,
		tick_seconds: float = 1.0,
	) -> None:
		self.api = api
		self.payload = payload
		self.recorder = recorder
		self.tree = QuestionTree.build(payload.test.id, payload.sections, payload.questions)
		self.navigation = NavigationController(self.tree, recorder, tick_seconds=tick_seconds)
		self.result: Optional[SubmissionResult] = None

	@classmethod
	async def open(
		cls,
		api: SpeakingApiClient,
		test_id: str,
		recorder: Recorder,
		*,
		tick_seconds: float = 1.0,
	) -> "SpeakingTestSession":
		payload = await api.fetch_test(test_id)
		return cls(api, payload, recorder, tick_seconds=tick_seconds)

	@property
	def test_id(self) -> str:
		return self.payload.test.id

	@property
	def submitted(self) -> bool:
		return self.result is not None

	async def submit(self) -> SubmissionResult:
		self.navigation.halt()
		bundle = assemble(self.tree, self.recorder.recordings)
		logger.info("Submitting %d answer(s) for test %s", len(bundle), self.test_id)
		self.result = await self.api.submit(self.test_id, bundle)
		return self.result

	def close(self) -> None:
		self.recorder.close()
