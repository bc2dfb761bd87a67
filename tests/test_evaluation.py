import asyncio
import json

import httpx
import pytest

from speaking_pipeline.errors import EvaluationFailed
from speaking_pipeline.gemini_client import GeminiClient, GeminiError
from speaking_pipeline.services.evaluation import SpeakingEvaluator, build_evaluation_prompt, parse_evaluation
from speaking_pipeline.settings import settings


GOOD_REPLY = {
	"score": 78,
	"feedback": "Clear answer with good examples.",
	"fluency": 8,
	"pronunciation": 7.5,
	"vocabulary": 7,
	"grammar": 6,
	"relevance": 9,
	"keyPointsCovered": ["family"],
	"keyPointsMissed": ["hobbies"],
	"strengths": ["confident delivery"],
	"improvements": ["past tense"],
}


# ----------------------------------------------------------------------------
# parsing
# ----------------------------------------------------------------------------

def test_parse_clamps_out_of_range_values():
	result = parse_evaluation({"score": 140, "fluency": -3, "grammar": "11", "relevance": "n/a"})
	assert result.score == 100
	assert result.fluency == 0
	assert result.grammar == 10
	assert result.relevance == 0
	assert result.feedback == ""
	assert result.strengths == []


def test_parse_accepts_fenced_json_with_nested_analysis():
	raw = "Here you go:\n```json\n" + json.dumps(
		{"score": 64, "feedback": "ok", "detailedAnalysis": {"fluency": 6, "keyPointsCovered": ["a", None, " "]}}
	) + "\n```"
	result = parse_evaluation(raw)
	assert result.score == 64
	assert result.fluency == 6
	assert result.key_points_covered == ["a"]


def test_parse_rejects_non_object_output():
	with pytest.raises(EvaluationFailed, match="unparseable"):
		parse_evaluation("I cannot grade this answer.")
	with pytest.raises(EvaluationFailed):
		parse_evaluation("[1, 2, 3]")


def test_analysis_uses_camel_case_keys():
	analysis = parse_evaluation(GOOD_REPLY).analysis()
	assert analysis["keyPointsMissed"] == ["hobbies"]
	assert analysis["pronunciation"] == 7.5


def test_prompt_mentions_language_and_key_facts():
	prompt = build_evaluation_prompt("Describe your town", "I live in Tashkent", "uz", "size, history", "weather")
	assert "Uzbek" in prompt
	assert "size, history" in prompt
	assert "SHOULD NOT mention" in prompt
	assert "I live in Tashkent" in prompt


# ----------------------------------------------------------------------------
# evaluator
# ----------------------------------------------------------------------------

class FakeClient:
	def __init__(self, reply=None, *, hang=False, error=None):
		self.reply = reply
		self.hang = hang
		self.error = error
		self.closed = False
		self.prompts = []

	async def generate_json(self, prompt, *, system=None, temperature=0.2):
		self.prompts.append((system, prompt))
		if self.hang:
			await asyncio.sleep(10)
		if self.error is not None:
			raise self.error
		return self.reply

	async def aclose(self):
		self.closed = True


def test_evaluator_returns_validated_result():
	client = FakeClient(json.dumps(GOOD_REPLY))
	evaluator = SpeakingEvaluator(lambda: client, timeout=1)
	result = asyncio.run(evaluator.evaluate("Tell me about your family", "I have two sisters", "en", "family"))
	assert result.score == 78
	assert result.rubric["relevance"] == 9
	assert client.closed
	system, prompt = client.prompts[0]
	assert "JSON" in system and "two sisters" in prompt


def test_evaluator_times_out():
	client = FakeClient(hang=True)
	evaluator = SpeakingEvaluator(lambda: client, timeout=0.05)
	with pytest.raises(EvaluationFailed, match="timed out"):
		asyncio.run(evaluator.evaluate("Q", "Some answer", "en"))
	assert client.closed


def test_evaluator_wraps_provider_errors():
	evaluator = SpeakingEvaluator(lambda: FakeClient(error=GeminiError("503 from upstream")), timeout=1)
	with pytest.raises(EvaluationFailed, match="503"):
		asyncio.run(evaluator.evaluate("Q", "Some answer", "en"))


def test_evaluator_without_api_key_fails_the_answer():
	def factory():
		raise ValueError("GEMINI_API_KEY is not configured")

	with pytest.raises(EvaluationFailed, match="not configured"):
		asyncio.run(SpeakingEvaluator(factory).evaluate("Q", "Some answer", "en"))


def test_silent_recording_scores_zero_without_model_call():
	def factory():
		raise AssertionError("model must not be called")

	result = asyncio.run(SpeakingEvaluator(factory).evaluate("Q", "   ", "en"))
	assert result.score == 0
	assert "No speech" in result.feedback


# ----------------------------------------------------------------------------
# gemini client
# ----------------------------------------------------------------------------

@pytest.fixture
def no_fallback(monkeypatch):
	monkeypatch.setattr(settings, "openrouter_api_key", None)
	monkeypatch.setattr(settings, "gemini_provider", "ai_studio")


def test_gemini_json_mode_request(no_fallback):
	seen = {}

	def handler(request):
		seen["key"] = request.url.params.get("key")
		seen["body"] = json.loads(request.content)
		return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": '{"score": 5}'}]}}]})

	async def scenario():
		client = GeminiClient("k-123", transport=httpx.MockTransport(handler))
		try:
			return await client.generate_json("grade this", system="be strict")
		finally:
			await client.aclose()

	assert asyncio.run(scenario()) == '{"score": 5}'
	assert seen["key"] == "k-123"
	assert seen["body"]["generationConfig"]["responseMimeType"] == "application/json"
	assert seen["body"]["systemInstruction"]["parts"][0]["text"] == "be strict"


def test_gemini_failure_without_fallback_raises(no_fallback):
	def handler(request):
		return httpx.Response(500, text="upstream down")

	async def scenario():
		client = GeminiClient("k-123", transport=httpx.MockTransport(handler))
		try:
			await client.generate_json("grade this")
		finally:
			await client.aclose()

	with pytest.raises(GeminiError):
		asyncio.run(scenario())


def test_gemini_falls_back_to_openrouter(monkeypatch):
	monkeypatch.setattr(settings, "openrouter_api_key", "or-key")
	monkeypatch.setattr(settings, "gemini_provider", "ai_studio")
	hosts = []

	def handler(request):
		hosts.append(request.url.host)
		if request.url.host == "generativelanguage.googleapis.com":
			return httpx.Response(429, text="quota")
		assert json.loads(request.content)["response_format"] == {"type": "json_object"}
		return httpx.Response(200, json={"choices": [{"message": {"content": '{"score": 70}'}}]})

	async def scenario():
		client = GeminiClient("k-123", transport=httpx.MockTransport(handler))
		try:
			return await client.generate_json("grade this")
		finally:
			await client.aclose()

	assert asyncio.run(scenario()) == '{"score": 70}'
	assert hosts == ["generativelanguage.googleapis.com", "openrouter.ai"]
