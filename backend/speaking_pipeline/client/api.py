from __future__ import annotations
import logging
from typing import Optional

import httpx

from ..errors import NotAuthorized, SubmissionFailed
from ..schemas import SpeakingTestPayload, SubmissionResult
from .assembler import SubmissionBundle


logger = logging.getLogger(__name__)


class SpeakingApiClient:
	"""HTTP transport between the test-taking client and the grading server."""

	def __init__(
		self,
		base_url: str,
		*,
		token: Optional[str] = None,
		timeout: float = 60.0,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		headers = {"Authorization": f"Bearer {token}"} if token else {}
		self._client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

	async def aclose(self) -> None:
		await self._client.aclose()

	async def fetch_test(self, test_id: str) -> SpeakingTestPayload:
		try:
			r = await self._client.get(f"/speaking-tests/{test_id}")
		except httpx.RequestError as exc:
			raise SubmissionFailed(f"Could not load test: {exc}", retryable=True) from exc
		self._raise_for_status(r, "load test")
		return SpeakingTestPayload.model_validate(r.json())

	async def submit(self, test_id: str, bundle: SubmissionBundle) -> SubmissionResult:
		try:
			r = await self._client.post(
				f"/speaking-tests/{test_id}/submit",
				data=bundle.form_fields(),
				files=bundle.files(),
			)
		except httpx.RequestError as exc:
			logger.warning("Submission transport error for test %s: %s", test_id, exc)
			raise SubmissionFailed(f"Network error while submitting: {exc}", retryable=True) from exc
		self._raise_for_status(r, "submit")
		return SubmissionResult.model_validate(r.json())

	@staticmethod
	def _raise_for_status(r: httpx.Response, action: str) -> None:
		if r.status_code < 400:
			return
		detail = _detail(r)
		if r.status_code in (401, 403):
			raise NotAuthorized(detail or f"Not allowed to {action}")
		raise SubmissionFailed(
			f"Server rejected {action} ({r.status_code}): {detail}",
			retryable=r.status_code >= 500 or r.status_code in (408, 429),
			status_code=r.status_code,
		)


def _detail(r: httpx.Response) -> str:
	try:
		data = r.json()
	except ValueError:
		return r.text[:200]
	if isinstance(data, dict):
		return str(data.get("detail") or data.get("message") or "")
	return str(data)
