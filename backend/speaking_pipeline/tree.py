"""
Question tree for a speaking test.

Sections reference their parent through ``parent_section_id`` and questions
reference their section through ``section_id``. Both ORM rows and API payload
models carry these attributes, so the tree is built from either. Ordering comes
only from ``section_number`` and ``question_number``; the order in which rows
arrive is irrelevant.

Traversal is depth-first: a section comes before its child sections, siblings
are ordered by ``section_number`` and the questions of one section by
``question_number``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .errors import MalformedQuestionTree


@dataclass
class QuestionNode:
	id: str
	section_id: str
	number: int
	text: str
	preparation_seconds: int
	speaking_seconds: int
	max_points: float = 100.0
	image_url: Optional[str] = None
	audio_url: Optional[str] = None


@dataclass
class SectionNode:
	id: str
	number: int
	title: str
	preparation_seconds: int
	speaking_seconds: int
	parent_id: Optional[str] = None
	image_url: Optional[str] = None
	children: List["SectionNode"] = field(default_factory=list)
	questions: List[QuestionNode] = field(default_factory=list)


class QuestionTree:
	def __init__(self, test_id: str, roots: List[SectionNode]) -> None:
		self.test_id = test_id
		self.roots = roots
		self.sections: List[SectionNode] = []
		self.questions: List[QuestionNode] = []
		for root in roots:
			self._walk(root)
		self._question_index: Dict[str, int] = {q.id: i for i, q in enumerate(self.questions)}

	def _walk(self, section: SectionNode) -> None:
		self.sections.append(section)
		self.questions.extend(section.questions)
		for child in section.children:
			self._walk(child)

	def __len__(self) -> int:
		return len(self.questions)

	def __contains__(self, question_id: object) -> bool:
		return question_id in self._question_index

	def question(self, question_id: str) -> QuestionNode:
		return self.questions[self._question_index[question_id]]

	def position(self, question_id: str) -> int:
		"""Zero-based position of a question in traversal order."""
		return self._question_index[question_id]

	@property
	def max_points(self) -> float:
		return sum(q.max_points for q in self.questions)

	@classmethod
	def build(cls, test_id: str, sections: Iterable[Any], questions: Iterable[Any]) -> "QuestionTree":
		"""Resolve the parent chain, validate and order.

		Raises:
			MalformedQuestionTree: duplicate ordering numbers, orphan sections or
				questions, parent cycles, or a test without questions.
		"""
		nodes: Dict[str, SectionNode] = {}
		seen_numbers: Dict[int, str] = {}
		for row in sections:
			number = int(row.section_number)
			if number in seen_numbers:
				raise MalformedQuestionTree(
					f"Duplicate section number {number} in test {test_id}"
				)
			seen_numbers[number] = row.id
			nodes[row.id] = SectionNode(
				id=row.id,
				number=number,
				title=row.title,
				preparation_seconds=int(row.preparation_time),
				speaking_seconds=int(row.speaking_time),
				parent_id=getattr(row, "parent_section_id", None),
				image_url=getattr(row, "image_url", None),
			)

		roots: List[SectionNode] = []
		for node in nodes.values():
			if node.parent_id is None:
				roots.append(node)
				continue
			parent = nodes.get(node.parent_id)
			if parent is None:
				raise MalformedQuestionTree(
					f"Section {node.id} references unknown parent section {node.parent_id}"
				)
			parent.children.append(node)
		_reject_cycles(nodes)

		question_numbers: Dict[str, set] = {}
		for row in questions:
			section = nodes.get(row.section_id)
			if section is None:
				raise MalformedQuestionTree(
					f"Question {row.id} references section {row.section_id} outside test {test_id}"
				)
			number = int(row.question_number)
			used = question_numbers.setdefault(section.id, set())
			if number in used:
				raise MalformedQuestionTree(
					f"Duplicate question number {number} in section {section.number}"
				)
			used.add(number)
			prep = getattr(row, "preparation_time", None)
			speak = getattr(row, "speaking_time", None)
			max_points = getattr(row, "max_points", None)
			section.questions.append(
				QuestionNode(
					id=row.id,
					section_id=section.id,
					number=number,
					text=row.question_text,
					preparation_seconds=int(prep) if prep is not None else section.preparation_seconds,
					speaking_seconds=int(speak) if speak is not None else section.speaking_seconds,
					max_points=float(max_points) if max_points is not None else 100.0,
					image_url=getattr(row, "image_url", None),
					audio_url=getattr(row, "question_audio_url", None),
				)
			)

		for node in nodes.values():
			node.children.sort(key=lambda s: s.number)
			node.questions.sort(key=lambda q: q.number)
		roots.sort(key=lambda s: s.number)

		tree = cls(test_id, roots)
		if not tree.questions:
			raise MalformedQuestionTree(f"Test {test_id} has no questions")
		return tree


def _reject_cycles(nodes: Dict[str, SectionNode]) -> None:
	for start in nodes.values():
		seen = {start.id}
		parent_id = start.parent_id
		while parent_id is not None:
			if parent_id in seen:
				raise MalformedQuestionTree(f"Section {start.id} is part of a parent cycle")
			seen.add(parent_id)
			parent_id = nodes[parent_id].parent_id
