"""Readiness polling for preview workloads.

The poller samples the workload status at a fixed interval until every
desired replica is available and none is unavailable. Without a timeout it
waits indefinitely and relies on the surrounding job timeout; with one it
raises ReadinessTimeout. Cancelling the awaiting task stops it immediately.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum

from preview_deploy.backends.base import WorkloadBackend
from preview_deploy.errors import ReadinessTimeout
from preview_deploy.models import ReadinessSnapshot, WorkloadDescriptor

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0


class PollerState(Enum):
	WAITING = "waiting"
	READY = "ready"


class ReadinessPoller:
	"""Blocks until a workload reports ready."""

	def __init__(
		self,
		backend: WorkloadBackend,
		interval: float = DEFAULT_INTERVAL,
		timeout: float | None = None,
	) -> None:
		self._backend = backend
		self._interval = interval
		self._timeout = timeout
		self.state = PollerState.WAITING
		self.polls = 0

	async def wait_until_ready(
		self,
		descriptor: WorkloadDescriptor,
		timeout: float | None = None,
	) -> ReadinessSnapshot:
		"""Poll until ready.

		Args:
			descriptor: The workload to watch.
			timeout: Seconds before giving up; overrides the constructor value.
				None or 0 waits indefinitely.

		Raises:
			ReadinessTimeout: If the deadline passes first.
		"""
		self.state = PollerState.WAITING
		self.polls = 0
		limit = timeout if timeout is not None else self._timeout
		loop = asyncio.get_running_loop()
		deadline = loop.time() + limit if limit else None

		while True:
			snapshot = await self._backend.read_status(descriptor)
			self.polls += 1
			if snapshot.is_ready:
				self.state = PollerState.READY
				logger.info(
					"Deployment %s ready (%d available) after %d poll(s)",
					descriptor.name, snapshot.available_replicas, self.polls,
				)
				return snapshot

			logger.debug(
				"Deployment %s not ready: status=%s available=%d unavailable=%d",
				descriptor.name, snapshot.has_status,
				snapshot.available_replicas, snapshot.unavailable_replicas,
			)
			delay = self._interval
			if deadline is not None:
				remaining = deadline - loop.time()
				if remaining <= 0:
					raise ReadinessTimeout(
						f"Deployment {descriptor.name} not ready after {limit:.0f}s "
						f"({self.polls} polls)"
					)
				delay = min(delay, remaining)
			await asyncio.sleep(delay)
