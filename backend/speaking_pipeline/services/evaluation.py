"""
Evaluation Service
==================

Scores one transcript against its question's rubric with Gemini in JSON mode.

Model output is never trusted: ``parse_evaluation`` runs it through a strict
pydantic model that fills missing fields with zero/empty values and clamps
every number into its declared range before anything reaches the database.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import EvaluationFailed
from ..gemini_client import GeminiClient, GeminiError
from ..settings import settings


logger = logging.getLogger(__name__)

RUBRIC_FIELDS = ("fluency", "pronunciation", "vocabulary", "grammar", "relevance")

LANGUAGE_NAMES: Dict[str, str] = {
	"ar": "Arabic",
	"uz": "Uzbek",
	"en": "English",
	"ru": "Russian",
}

SYSTEM_PROMPT = (
	"You are an expert language teacher. Evaluate student speaking performances fairly "
	"but thoroughly. Provide constructive feedback. Return JSON only."
)


def _clamp(value: Any, low: float, high: float) -> float:
	try:
		number = float(value)
	except (TypeError, ValueError):
		return 0.0
	if math.isnan(number) or math.isinf(number):
		return 0.0
	return max(low, min(high, number))


def _string_list(value: Any) -> List[str]:
	if not isinstance(value, list):
		return []
	result: List[str] = []
	for item in value:
		if item is None:
			continue
		text = str(item).strip()
		if text:
			result.append(text)
	return result


class EvaluationResult(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	score: float = 0.0
	feedback: str = ""
	fluency: float = 0.0
	pronunciation: float = 0.0
	vocabulary: float = 0.0
	grammar: float = 0.0
	relevance: float = 0.0
	key_points_covered: List[str] = Field(default_factory=list, alias="keyPointsCovered")
	key_points_missed: List[str] = Field(default_factory=list, alias="keyPointsMissed")
	strengths: List[str] = Field(default_factory=list)
	improvements: List[str] = Field(default_factory=list)

	@field_validator("score", mode="before")
	@classmethod
	def _clamp_score(cls, v: Any) -> float:
		return _clamp(v, 0.0, 100.0)

	@field_validator(*RUBRIC_FIELDS, mode="before")
	@classmethod
	def _clamp_rubric(cls, v: Any) -> float:
		return _clamp(v, 0.0, 10.0)

	@field_validator("feedback", mode="before")
	@classmethod
	def _text(cls, v: Any) -> str:
		if v is None:
			return ""
		return str(v).strip()

	@field_validator("key_points_covered", "key_points_missed", "strengths", "improvements", mode="before")
	@classmethod
	def _lists(cls, v: Any) -> List[str]:
		return _string_list(v)

	@property
	def rubric(self) -> Dict[str, float]:
		return {name: getattr(self, name) for name in RUBRIC_FIELDS}

	def analysis(self) -> Dict[str, Any]:
		"""Structured analysis stored with the evaluation record."""
		return {
			**self.rubric,
			"keyPointsCovered": self.key_points_covered,
			"keyPointsMissed": self.key_points_missed,
			"strengths": self.strengths,
			"improvements": self.improvements,
		}


def _extract_json_block(text: str) -> Dict[str, Any]:
	"""Parse a JSON object out of model output, tolerating surrounding prose or fences."""
	try:
		data = json.loads(text)
	except (TypeError, ValueError):
		data = None
		match = re.search(r"\{[\s\S]*\}", text or "")
		if match:
			try:
				data = json.loads(match.group(0))
			except ValueError:
				data = None
	if not isinstance(data, dict):
		raise ValueError("Model output is not a JSON object")
	return data


def parse_evaluation(raw: Any) -> EvaluationResult:
	"""Validate provider output; raises EvaluationFailed only when it is not a JSON object."""
	if isinstance(raw, dict):
		data = raw
	else:
		try:
			data = _extract_json_block(raw)
		except ValueError as exc:
			raise EvaluationFailed(f"unparseable model output: {exc}") from exc
	# Some models nest the rubric the way the read model does
	nested = data.get("detailedAnalysis")
	if isinstance(nested, dict):
		data = {**nested, **{k: v for k, v in data.items() if k != "detailedAnalysis"}}
	return EvaluationResult.model_validate(data)


def build_evaluation_prompt(
	question_text: str,
	transcript: str,
	language: str,
	key_facts_plus: Optional[str] = None,
	key_facts_minus: Optional[str] = None,
) -> str:
	language_name = LANGUAGE_NAMES.get(language, language)
	prompt = f"""You are an expert language teacher evaluating a student's spoken answer in {language_name}.

**Question:** {question_text}

**Student's Transcribed Answer:** {transcript}
"""
	if key_facts_plus:
		prompt += f"\n**Key Points the student SHOULD mention:** {key_facts_plus}"
	if key_facts_minus:
		prompt += f"\n**Points the student SHOULD NOT mention (negative factors):** {key_facts_minus}"
	prompt += f"""

Please evaluate the student's answer on these criteria (each 0-10):
1. **Fluency** - How smoothly and naturally they speak
2. **Pronunciation** - Clarity and accuracy of pronunciation
3. **Vocabulary** - Range and appropriateness of vocabulary used
4. **Grammar** - Grammatical accuracy
5. **Relevance** - How well they answered the question

Provide:
- Overall score (0-100)
- Detailed feedback in {language_name} (for the student)
- Key points covered (list)
- Key points missed (list)
- Strengths (list of 2-3 points)
- Areas for improvement (list of 2-3 points)

Return STRICT JSON only, no markdown, following exactly this schema:
{{
  "score": number (0-100),
  "feedback": "string in {language_name}",
  "fluency": number (0-10),
  "pronunciation": number (0-10),
  "vocabulary": number (0-10),
  "grammar": number (0-10),
  "relevance": number (0-10),
  "keyPointsCovered": ["point1", "point2"],
  "keyPointsMissed": ["point1", "point2"],
  "strengths": ["strength1", "strength2"],
  "improvements": ["improvement1", "improvement2"]
}}"""
	return prompt


class Evaluator(Protocol):
	async def evaluate(
		self,
		question_text: str,
		transcript: str,
		language: str,
		key_facts_plus: Optional[str] = None,
		key_facts_minus: Optional[str] = None,
	) -> EvaluationResult:
		...


class SpeakingEvaluator:
	def __init__(
		self,
		client_factory: Callable[[], GeminiClient] = GeminiClient,
		*,
		timeout: Optional[float] = None,
	) -> None:
		self._client_factory = client_factory
		self.timeout = timeout if timeout is not None else settings.evaluation_timeout_seconds

	async def evaluate(
		self,
		question_text: str,
		transcript: str,
		language: str,
		key_facts_plus: Optional[str] = None,
		key_facts_minus: Optional[str] = None,
	) -> EvaluationResult:
		if not (transcript or "").strip():
			return EvaluationResult(feedback="No speech was detected in the recording.")
		prompt = build_evaluation_prompt(question_text, transcript, language, key_facts_plus, key_facts_minus)
		try:
			client = self._client_factory()
		except ValueError as exc:
			raise EvaluationFailed(f"model client unavailable: {exc}") from exc
		try:
			raw = await asyncio.wait_for(client.generate_json(prompt, system=SYSTEM_PROMPT), timeout=self.timeout)
		except asyncio.TimeoutError as exc:
			raise EvaluationFailed(f"timed out after {self.timeout:.0f}s") from exc
		except GeminiError as exc:
			raise EvaluationFailed(str(exc)) from exc
		finally:
			await client.aclose()
		return parse_evaluation(raw)
