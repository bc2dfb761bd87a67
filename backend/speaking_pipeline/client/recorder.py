"""
Timer/Recorder Unit
===================

Owns the capture device for one test-taking session. A capture stream is
acquired per recording and released on every way out of it: a normal stop,
timer expiry, cancellation, navigation away, or teardown. Only one stream is
held at a time.

States::

	idle --> acquiring --(permission granted)--> armed --> recording --> finalizing --> idle
	idle --> acquiring --(permission denied)--> error --(retry)--> armed

The device side is abstracted by ``CaptureDevice``/``CaptureStream`` so the
same state machine drives a browser bridge, a local sound card, or a fake in
tests.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol

from ..errors import AudioPermissionDenied, RecorderBusy
from .countdown import Countdown


logger = logging.getLogger(__name__)


class CaptureStream(Protocol):
	mime_type: str

	def start(self) -> None:
		...

	def stop(self) -> bytes:
		"""Stop capturing and return the encoded audio."""
		...

	def release(self) -> None:
		"""Stop every track of the underlying media stream."""
		...


class CaptureDevice(Protocol):
	async def open(self) -> CaptureStream:
		"""Request the microphone. Raises PermissionError when refused."""
		...


class RecorderState(str, Enum):
	IDLE = "idle"
	ACQUIRING = "acquiring"
	ARMED = "armed"
	RECORDING = "recording"
	FINALIZING = "finalizing"
	ERROR = "error"


@dataclass(frozen=True)
class RecordedAnswer:
	question_id: str
	audio: bytes
	duration_seconds: float
	mime_type: str = "audio/webm"


class Recorder:
	def __init__(
		self,
		device: CaptureDevice,
		*,
		tick_seconds: float = 1.0,
		clock: Callable[[], float] = time.monotonic,
		on_tick: Optional[Callable[[str, int], None]] = None,
		on_finished: Optional[Callable[[RecordedAnswer], None]] = None,
	) -> None:
		self._device = device
		self._tick_seconds = tick_seconds
		self._clock = clock
		self._on_tick = on_tick
		self._on_finished = on_finished
		self.state = RecorderState.IDLE
		self.last_error: Optional[AudioPermissionDenied] = None
		self.recordings: Dict[str, RecordedAnswer] = {}
		self.question_id: Optional[str] = None
		self._stream: Optional[CaptureStream] = None
		self._countdown: Optional[Countdown] = None
		self._started_at: Optional[float] = None

	async def __aenter__(self) -> "Recorder":
		return self

	async def __aexit__(self, exc_type, exc, tb) -> None:
		self.close()

	@property
	def is_recording(self) -> bool:
		return self.state is RecorderState.RECORDING

	@property
	def time_left(self) -> Optional[int]:
		if self._countdown is None:
			return None
		return self._countdown.remaining

	async def acquire_microphone(self) -> None:
		if self.state not in (RecorderState.IDLE, RecorderState.ERROR):
			raise RecorderBusy(f"Capture session already {self.state.value}")
		previous = self.state
		# Claimed before the await so an overlapping caller sees the session as busy
		self.state = RecorderState.ACQUIRING
		try:
			stream = await self._device.open()
		except (PermissionError, AudioPermissionDenied) as exc:
			self.state = RecorderState.ERROR
			self.last_error = AudioPermissionDenied(str(exc) or "Microphone permission denied")
			logger.info("Microphone permission denied: %s", exc)
			raise self.last_error from exc
		except BaseException:
			self.state = previous
			raise
		if self.state is not RecorderState.ACQUIRING:
			# Closed while the device was opening
			stream.release()
			raise RecorderBusy("Capture session closed while acquiring the microphone")
		self._stream = stream
		self.last_error = None
		self.state = RecorderState.ARMED

	async def check_microphone(self) -> bool:
		"""Acquire and immediately release the microphone."""
		if self.state is not RecorderState.IDLE and self.state is not RecorderState.ERROR:
			raise RecorderBusy(f"Capture session already {self.state.value}")
		try:
			await self.acquire_microphone()
		except AudioPermissionDenied:
			return False
		self._release()
		self.state = RecorderState.IDLE
		return True

	async def start_recording(self, question_id: str, time_limit: Optional[int] = None) -> None:
		if self.state is RecorderState.RECORDING:
			if self.question_id == question_id:
				return
			# At most one recording: finish the other question's take first
			self.stop_recording()
		if self.state is not RecorderState.ARMED:
			await self.acquire_microphone()
		try:
			self._stream.start()
		except Exception:
			self._release()
			self.state = RecorderState.IDLE
			raise
		self.question_id = question_id
		self._started_at = self._clock()
		self.state = RecorderState.RECORDING
		if time_limit:
			self._countdown = Countdown(
				time_limit,
				on_expire=self._on_time_up,
				on_tick=self._tick,
				tick_seconds=self._tick_seconds,
			)
			self._countdown.start()

	def _tick(self, remaining: int) -> None:
		if self._on_tick is not None and self.question_id is not None:
			self._on_tick(self.question_id, remaining)

	def _on_time_up(self) -> None:
		logger.debug("Speaking time up for question %s", self.question_id)
		self.stop_recording()

	def stop_recording(self) -> Optional[RecordedAnswer]:
		"""Finish the current take. A no-op returning None when not recording."""
		if self.state is not RecorderState.RECORDING:
			return None
		self.state = RecorderState.FINALIZING
		self._stop_countdown()
		question_id = self.question_id
		duration = max(0.0, self._clock() - (self._started_at or self._clock()))
		stream = self._stream
		try:
			audio = stream.stop()
		finally:
			self._release()
			self.question_id = None
			self._started_at = None
			self.state = RecorderState.IDLE
		answer = RecordedAnswer(
			question_id=question_id,
			audio=audio,
			duration_seconds=round(duration, 2),
			mime_type=getattr(stream, "mime_type", "audio/webm"),
		)
		# Re-recording replaces the previous take
		self.recordings[question_id] = answer
		if self._on_finished is not None:
			self._on_finished(answer)
		return answer

	def cancel(self) -> None:
		"""Drop the in-flight take without producing an artifact."""
		if self.state not in (RecorderState.RECORDING, RecorderState.ARMED):
			return
		self._stop_countdown()
		stream = self._stream
		try:
			if self.state is RecorderState.RECORDING and stream is not None:
				stream.stop()
		finally:
			self._release()
			self.question_id = None
			self._started_at = None
			self.state = RecorderState.IDLE

	def discard(self, question_id: str) -> None:
		self.recordings.pop(question_id, None)

	def close(self) -> None:
		"""Teardown: keep the current take and release the device."""
		if self.state is RecorderState.RECORDING:
			self.stop_recording()
		else:
			self._stop_countdown()
			self._release()
			if self.state in (RecorderState.ARMED, RecorderState.ACQUIRING):
				self.state = RecorderState.IDLE

	def _stop_countdown(self) -> None:
		if self._countdown is not None:
			self._countdown.cancel()
			self._countdown = None

	def _release(self) -> None:
		stream, self._stream = self._stream, None
		if stream is None:
			return
		try:
			stream.release()
		except Exception:
			logger.warning("Failed to release capture stream", exc_info=True)
