"""Preview deployment reconciler.

Decides between create and update, sequences the cluster and status
backends, and owns the deployment record contract:

- a record is created (in progress) only once reconciliation starts;
- on update, records left from earlier runs are retired before the new one
  is created, so at most one active record exists per ref;
- the record ends in exactly one terminal state per run, success with the
  environment URL or failure when anything goes wrong after it exists.

Task cancellation (e.g. a job timeout) is not intercepted, so a cancelled run
leaves the record in progress rather than claiming failure or success.
"""

from __future__ import annotations

import logging

from preview_deploy.backends.base import StatusBackend, WorkloadBackend
from preview_deploy.config import PreviewConfig
from preview_deploy.errors import (
	ClosedSourceError,
	ConfigurationError,
	PreviewError,
	ReconciliationFailure,
)
from preview_deploy.manifest import ManifestResolver
from preview_deploy.models import (
	ApplyMode,
	DeploymentState,
	DesiredState,
	ReconcileResult,
	SourceRef,
	WorkloadDescriptor,
)
from preview_deploy.readiness import ReadinessPoller

logger = logging.getLogger(__name__)


class Reconciler:
	"""Runs one reconciliation for one pull request."""

	def __init__(
		self,
		config: PreviewConfig,
		source: SourceRef,
		resolver: ManifestResolver | None,
		workloads: WorkloadBackend,
		statuses: StatusBackend,
		poller: ReadinessPoller | None = None,
	) -> None:
		self._config = config
		self._source = source
		self._resolver = resolver
		self._workloads = workloads
		self._statuses = statuses
		self._poller = poller or ReadinessPoller(
			workloads,
			interval=config.readiness.interval,
			timeout=config.readiness.timeout or None,
		)

	def environment_url(self, descriptor: WorkloadDescriptor) -> str:
		return f"https://{descriptor.name}.{self._config.preview.domain}"

	def _resolve(self) -> tuple[WorkloadDescriptor, DesiredState]:
		if self._resolver is None:
			raise ConfigurationError("No manifest input configured")
		return self._resolver.resolve()

	async def run(self) -> ReconcileResult:
		"""Tear down when the PR is closed, otherwise apply."""
		descriptor, desired = self._resolve()

		logger.debug("Checking if PR #%d is closed", self._source.pull_number)
		if await self._statuses.is_source_closed(self._source):
			if not self._config.preview.teardown_on_close:
				raise ClosedSourceError("Can not deploy closed pr")
			return await self.teardown(descriptor)
		return await self.apply(descriptor, desired)

	async def deploy(self) -> ReconcileResult:
		"""Apply, refusing closed PRs."""
		descriptor, desired = self._resolve()

		logger.debug("Checking if PR #%d is closed", self._source.pull_number)
		if await self._statuses.is_source_closed(self._source):
			raise ClosedSourceError("Can not deploy closed pr")
		return await self.apply(descriptor, desired)

	async def apply(self, descriptor: WorkloadDescriptor, desired: DesiredState) -> ReconcileResult:
		record_id: int | None = None
		try:
			logger.debug("Checking if deployment %s exists", descriptor.name)
			if await self._workloads.exists(descriptor):
				logger.info("Updating existing deployment %s", descriptor.name)
				logger.debug("Deleting existing deployment records for %s", self._source.ref)
				await self._statuses.delete_records(self._source)
				record_id = await self._statuses.create_record(self._source)
				await self._push_update(descriptor, desired)
				action = "updated"
			else:
				logger.info("Creating new deployment %s", descriptor.name)
				record_id = await self._statuses.create_record(self._source)
				await self._push_create(descriptor, desired)
				action = "created"

			logger.info("Waiting for deployment %s to be ready", descriptor.name)
			await self._poller.wait_until_ready(descriptor)

			url = self.environment_url(descriptor)
			await self._statuses.set_status(record_id, DeploymentState.SUCCESS, "Success", url)
		except Exception as exc:
			if record_id is None:
				raise
			await self._mark_failed(record_id)
			raise ReconciliationFailure(record_id, exc) from exc

		logger.info("Deployment %s available at %s", descriptor.name, url)
		return ReconcileResult(
			action=action, descriptor=descriptor, record_id=record_id, environment_url=url,
		)

	async def teardown(self, descriptor: WorkloadDescriptor) -> ReconcileResult:
		logger.info("Deleting service %s", descriptor.name)
		await self._workloads.delete_exposure(descriptor)

		logger.info("Deleting deployment %s", descriptor.name)
		await self._workloads.delete(descriptor)

		logger.debug("Deleting deployment records for %s", self._source.ref)
		await self._statuses.delete_records(self._source)
		return ReconcileResult(action="torn_down", descriptor=descriptor)

	async def _push_create(self, descriptor: WorkloadDescriptor, desired: DesiredState) -> None:
		if desired.mode is ApplyMode.DECLARATIVE:
			await self._workloads.apply_many(desired.objects)
			return
		await self._workloads.create(descriptor, desired.workload)
		await self._workloads.create_exposure(descriptor, self._config.preview.target_port)

	async def _push_update(self, descriptor: WorkloadDescriptor, desired: DesiredState) -> None:
		if desired.mode is ApplyMode.DECLARATIVE:
			await self._workloads.apply_many(desired.objects)
			return
		# Exposure objects are immutable once created; only the workload is replaced.
		await self._workloads.update(descriptor, desired.workload)

	async def _mark_failed(self, record_id: int) -> None:
		logger.debug("Setting deployment %d status to failure", record_id)
		try:
			await self._statuses.set_status(record_id, DeploymentState.FAILURE, "Failed")
		except PreviewError as exc:
			logger.error("Could not mark deployment %d as failed: %s", record_id, exc)
