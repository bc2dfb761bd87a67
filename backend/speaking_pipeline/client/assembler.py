from __future__ import annotations
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Tuple

from ..errors import NoAnswersRecorded
from ..tree import QuestionTree
from .recorder import RecordedAnswer


_EXTENSIONS = {
	"audio/webm": "webm",
	"audio/ogg": "ogg",
	"audio/wav": "wav",
	"audio/x-wav": "wav",
	"audio/mpeg": "mp3",
	"audio/mp4": "m4a",
}


@dataclass(frozen=True)
class AudioPart:
	filename: str
	content: bytes
	mime_type: str


@dataclass
class SubmissionBundle:
	"""Answer records and audio parts, correlated by position."""

	answers: List[Dict[str, Any]] = field(default_factory=list)
	parts: List[AudioPart] = field(default_factory=list)

	def __len__(self) -> int:
		return len(self.answers)

	@property
	def question_ids(self) -> List[str]:
		return [a["questionId"] for a in self.answers]

	def form_fields(self) -> Dict[str, str]:
		return {"answers": json.dumps(self.answers)}

	def files(self) -> List[Tuple[str, Tuple[str, bytes, str]]]:
		# A list, not a dict: repeated "audioFiles" keys keep their order
		return [("audioFiles", (p.filename, p.content, p.mime_type)) for p in self.parts]


def assemble(tree: QuestionTree, recordings: Mapping[str, RecordedAnswer]) -> SubmissionBundle:
	"""Package one record and one audio part per recorded question, in test order.

	Questions without a recording are left out. Raises NoAnswersRecorded when
	nothing was recorded.
	"""
	bundle = SubmissionBundle()
	for question in tree.questions:
		recorded = recordings.get(question.id)
		if recorded is None:
			continue
		index = len(bundle.parts)
		ext = _EXTENSIONS.get(recorded.mime_type.split(";")[0].strip(), "webm")
		bundle.answers.append(
			{"questionId": question.id, "durationSeconds": recorded.duration_seconds}
		)
		bundle.parts.append(
			AudioPart(filename=f"answer_{index}.{ext}", content=recorded.audio, mime_type=recorded.mime_type)
		)
	if not bundle.answers:
		raise NoAnswersRecorded("Record at least one answer before submitting")
	return bundle
