"""Thin async client for Gemini ``generateContent`` with an optional OpenRouter fallback."""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import httpx

from .settings import settings


logger = logging.getLogger(__name__)

AI_STUDIO_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
VERTEX_URL = (
	"https://{region}-aiplatform.googleapis.com/v1/projects/{project}"
	"/locations/{region}/publishers/google/models/{model}:generateContent"
)


class GeminiError(RuntimeError):
	"""Neither Gemini nor the configured fallback produced a usable reply."""


def gemini_endpoint(model: str, provider: Optional[str] = None) -> str:
	provider = provider or settings.gemini_provider
	if provider == "vertex":
		return VERTEX_URL.format(
			region=settings.vertex_region,
			project=settings.vertex_project or "placeholder-project",
			model=model,
		)
	return AI_STUDIO_URL.format(model=model)


def _candidate_text(data: Any) -> str:
	"""First text part of the first Gemini candidate."""
	return data["candidates"][0]["content"]["parts"][0]["text"]


def _choice_text(data: Any) -> str:
	"""Message content of the first chat-completions choice."""
	return data["choices"][0]["message"]["content"]


class GeminiClient:
	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		timeout: Optional[float] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise ValueError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		# AI Studio takes the key as a query parameter, Vertex as a header
		self._key_in_query = settings.gemini_provider != "vertex"
		self.url = base_url or gemini_endpoint(self.model)
		self.fallback_key = settings.openrouter_api_key or None
		self._http = httpx.AsyncClient(
			timeout=timeout if timeout is not None else settings.gemini_timeout_seconds,
			transport=transport,
		)

	async def aclose(self) -> None:
		await self._http.aclose()

	async def generate_json(self, prompt: str, *, system: Optional[str] = None, temperature: float = 0.2) -> str:
		"""Ask for a single JSON object. The reply text comes back unparsed."""
		body: Dict[str, Any] = {
			"contents": [{"role": "user", "parts": [{"text": prompt}]}],
			"generationConfig": {"responseMimeType": "application/json", "temperature": temperature},
		}
		messages: List[Dict[str, str]] = []
		if system:
			body["systemInstruction"] = {"parts": [{"text": system}]}
			messages.append({"role": "system", "content": system})
		messages.append({"role": "user", "content": prompt})
		return await self._complete(body, messages, json_mode=True)

	async def _complete(self, body: Dict[str, Any], messages: List[Dict[str, str]], *, json_mode: bool = False) -> str:
		try:
			return await self._ask_gemini(body)
		except GeminiError as primary:
			if not self.fallback_key:
				raise
			logger.warning("Gemini failed (%s); retrying through OpenRouter", primary)
			return await self._ask_openrouter(messages, primary, json_mode=json_mode)

	async def _ask_gemini(self, body: Dict[str, Any]) -> str:
		if self._key_in_query:
			params, headers = {"key": self.api_key}, {}
		else:
			params, headers = {}, {"x-goog-api-key": self.api_key}
		try:
			r = await self._http.post(self.url, params=params, headers=headers, json=body)
			r.raise_for_status()
		except httpx.HTTPError as exc:
			raise GeminiError(f"Gemini call failed: {exc}") from exc
		try:
			return _candidate_text(r.json())
		except (ValueError, KeyError, IndexError, TypeError) as exc:
			raise GeminiError(f"Unexpected Gemini response: {r.text[:500]}") from exc

	async def _ask_openrouter(
		self,
		messages: List[Dict[str, str]],
		primary: Exception,
		*,
		json_mode: bool = False,
	) -> str:
		headers = {
			"Authorization": f"Bearer {self.fallback_key}",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		body: Dict[str, Any] = {"model": settings.openrouter_model, "messages": messages}
		if json_mode:
			body["response_format"] = {"type": "json_object"}
		try:
			r = await self._http.post(settings.openrouter_base_url, headers=headers, json=body)
			r.raise_for_status()
			return _choice_text(r.json())
		except (httpx.HTTPError, ValueError, KeyError, IndexError, TypeError) as exc:
			raise GeminiError(f"Gemini failed ({primary}) and the OpenRouter fallback failed too: {exc}") from exc
