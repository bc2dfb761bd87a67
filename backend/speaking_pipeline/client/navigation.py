from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from ..tree import QuestionNode, QuestionTree, SectionNode
from .countdown import Countdown
from .recorder import Recorder


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progress:
	answered: int
	total: int

	@property
	def ratio(self) -> float:
		return self.answered / self.total if self.total else 0.0

	def __str__(self) -> str:
		return f"{self.answered}/{self.total}"


class NavigationController:
	"""Walks the flattened section/question order of a test.

	The cursor is a (section_index, question_index) pair over the sections that
	hold questions. Moving the cursor always stops an in-flight recording and
	any running preparation countdown first.
	"""

	def __init__(self, tree: QuestionTree, recorder: Recorder, *, tick_seconds: float = 1.0) -> None:
		self.tree = tree
		self.recorder = recorder
		self._tick_seconds = tick_seconds
		self._sections: List[SectionNode] = [s for s in tree.sections if s.questions]
		self.section_index = 0
		self.question_index = 0
		self._preparation: Optional[Countdown] = None
		self._pending_start: Optional[asyncio.Task] = None

	# ------------------------------------------------------------------
	# cursor
	# ------------------------------------------------------------------

	@property
	def current_section(self) -> SectionNode:
		return self._sections[self.section_index]

	@property
	def current_question(self) -> QuestionNode:
		return self.current_section.questions[self.question_index]

	@property
	def position(self) -> int:
		"""One-based number of the current question across the whole test."""
		return self.tree.position(self.current_question.id) + 1

	@property
	def total_questions(self) -> int:
		return len(self.tree)

	@property
	def can_go_previous(self) -> bool:
		return self.section_index > 0 or self.question_index > 0

	@property
	def can_go_next(self) -> bool:
		return not self.is_last

	@property
	def is_last(self) -> bool:
		return (
			self.section_index == len(self._sections) - 1
			and self.question_index == len(self.current_section.questions) - 1
		)

	@property
	def can_submit(self) -> bool:
		return self.is_last

	def next(self) -> bool:
		"""Advance; returns False (and does nothing) at the last question."""
		if self.is_last:
			return False
		self._leave_current()
		if self.question_index < len(self.current_section.questions) - 1:
			self.question_index += 1
		else:
			self.section_index += 1
			self.question_index = 0
		return True

	def previous(self) -> bool:
		if not self.can_go_previous:
			return False
		self._leave_current()
		if self.question_index > 0:
			self.question_index -= 1
		else:
			self.section_index -= 1
			self.question_index = len(self.current_section.questions) - 1
		return True

	def go_to(self, question_id: str) -> None:
		if question_id not in self.tree:
			raise KeyError(question_id)
		if question_id == self.current_question.id:
			return
		self._leave_current()
		for s_idx, section in enumerate(self._sections):
			for q_idx, question in enumerate(section.questions):
				if question.id == question_id:
					self.section_index = s_idx
					self.question_index = q_idx
					return

	def halt(self) -> None:
		"""Stop preparation and any in-flight recording without moving."""
		self._leave_current()

	def _leave_current(self) -> None:
		self._cancel_preparation()
		if self.recorder.is_recording:
			logger.debug("Navigating away from %s while recording; stopping", self.recorder.question_id)
			self.recorder.stop_recording()

	# ------------------------------------------------------------------
	# timers and recording
	# ------------------------------------------------------------------

	@property
	def preparing(self) -> bool:
		return self._preparation is not None and self._preparation.running

	@property
	def preparation_left(self) -> Optional[int]:
		if self._preparation is None:
			return None
		return self._preparation.remaining

	def begin_preparation(self) -> None:
		"""Count down the preparation time, then start recording automatically."""
		self._cancel_preparation()
		question = self.current_question
		if question.preparation_seconds <= 0:
			self._spawn_recording(question)
			return
		self._preparation = Countdown(
			question.preparation_seconds,
			on_expire=lambda: self._spawn_recording(question),
			tick_seconds=self._tick_seconds,
		)
		self._preparation.start()

	def _spawn_recording(self, question: QuestionNode) -> None:
		self._preparation = None
		self._pending_start = asyncio.get_running_loop().create_task(
			self.recorder.start_recording(question.id, question.speaking_seconds)
		)
		self._pending_start.add_done_callback(_log_recording_failure)

	async def start_recording(self) -> None:
		self._cancel_preparation()
		question = self.current_question
		await self.recorder.start_recording(question.id, question.speaking_seconds)

	def stop_recording(self):
		return self.recorder.stop_recording()

	def _cancel_preparation(self) -> None:
		if self._preparation is not None:
			self._preparation.cancel()
			self._preparation = None
		if self._pending_start is not None:
			if not self._pending_start.done():
				self._pending_start.cancel()
			self._pending_start = None

	# ------------------------------------------------------------------
	# progress
	# ------------------------------------------------------------------

	def is_answered(self, question_id: str) -> bool:
		return question_id in self.recorder.recordings

	@property
	def progress(self) -> Progress:
		answered = sum(1 for q in self.tree.questions if q.id in self.recorder.recordings)
		return Progress(answered=answered, total=len(self.tree))


def _log_recording_failure(task) -> None:
	if task.cancelled():
		return
	exc = task.exception()
	if exc is not None:
		logger.warning("Automatic recording start failed: %s", exc)
