from __future__ import annotations
import re
import uuid
from pathlib import Path
from typing import Optional

from .settings import settings


_REF_PATTERN = re.compile(r"^[0-9a-f]{32}(\.[a-z0-9]{1,8})?$")


class LocalAudioStore:
	"""Audio artifacts on the local filesystem, addressed by opaque references."""

	def __init__(self, root: Optional[str] = None) -> None:
		self.root = Path(root or settings.audio_storage_dir)
		self.root.mkdir(parents=True, exist_ok=True)

	def save(self, data: bytes, suffix: str = "webm") -> str:
		suffix = re.sub(r"[^a-z0-9]", "", (suffix or "").lower())[:8] or "bin"
		ref = f"{uuid.uuid4().hex}.{suffix}"
		path = self.root / ref
		with path.open("wb") as buffer:
			buffer.write(data)
		return ref

	def path(self, ref: str) -> Path:
		if not _REF_PATTERN.match(ref or ""):
			raise ValueError(f"Invalid audio reference: {ref!r}")
		return self.root / ref

	def load(self, ref: str) -> bytes:
		return self.path(ref).read_bytes()

	def exists(self, ref: str) -> bool:
		try:
			return self.path(ref).is_file()
		except ValueError:
			return False

	def delete(self, ref: str) -> None:
		self.path(ref).unlink(missing_ok=True)
