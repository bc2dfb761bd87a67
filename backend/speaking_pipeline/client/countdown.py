from __future__ import annotations
import asyncio
from typing import Callable, Optional


class Countdown:
	"""Tick-driven countdown.

	``on_tick(remaining)`` fires once per tick and ``on_expire()`` exactly once
	when the counter reaches zero. After ``cancel()`` neither fires again.
	"""

	def __init__(
		self,
		seconds: int,
		*,
		on_expire: Callable[[], None],
		on_tick: Optional[Callable[[int], None]] = None,
		tick_seconds: float = 1.0,
	) -> None:
		self.seconds = max(0, int(seconds))
		self.remaining = self.seconds
		self.tick_seconds = tick_seconds
		self.expired = False
		self._on_expire = on_expire
		self._on_tick = on_tick
		self._task: Optional[asyncio.Task] = None
		self._cancelled = False

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done()

	def start(self) -> None:
		if self._task is not None or self._cancelled:
			raise RuntimeError("Countdown already started")
		self._task = asyncio.get_running_loop().create_task(self._run())

	async def _run(self) -> None:
		while self.remaining > 0:
			await asyncio.sleep(self.tick_seconds)
			if self._cancelled:
				return
			self.remaining -= 1
			if self._on_tick is not None:
				self._on_tick(self.remaining)
		if self._cancelled:
			return
		self.expired = True
		self._on_expire()

	def cancel(self) -> None:
		self._cancelled = True
		task = self._task
		if task is None or task.done():
			return
		try:
			current = asyncio.current_task()
		except RuntimeError:
			current = None
		# on_expire may cancel its own countdown
		if task is not current:
			task.cancel()
