"""Abstract base classes for the cluster and status backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from preview_deploy.models import (
	DeploymentState,
	Lookup,
	ReadinessSnapshot,
	SourceRef,
	WorkloadDescriptor,
)


class WorkloadBackend(ABC):
	"""Capability surface over a cluster API for one named workload."""

	@abstractmethod
	async def lookup(self, descriptor: WorkloadDescriptor) -> Lookup:
		"""Read the workload. Absence is a Lookup, not an exception."""

	async def exists(self, descriptor: WorkloadDescriptor) -> bool:
		return (await self.lookup(descriptor)).found

	@abstractmethod
	async def create(self, descriptor: WorkloadDescriptor, body: dict[str, Any]) -> dict[str, Any]:
		"""Create the workload. Fails if it already exists."""

	@abstractmethod
	async def update(self, descriptor: WorkloadDescriptor, body: dict[str, Any]) -> dict[str, Any]:
		"""Replace the workload. Raises NotFoundError if absent."""

	@abstractmethod
	async def create_exposure(self, descriptor: WorkloadDescriptor, port: int) -> dict[str, Any]:
		"""Create the network-exposure object for the workload."""

	@abstractmethod
	async def delete(self, descriptor: WorkloadDescriptor) -> None:
		"""Delete the workload. Deleting an absent workload is not an error."""

	@abstractmethod
	async def delete_exposure(self, descriptor: WorkloadDescriptor) -> None:
		"""Delete the exposure object. Deleting an absent one is not an error."""

	@abstractmethod
	async def read_status(self, descriptor: WorkloadDescriptor) -> ReadinessSnapshot:
		"""Sample the workload's replica status."""

	@abstractmethod
	async def apply_many(self, objects: list[dict[str, Any]]) -> list[dict[str, Any]]:
		"""Upsert each object independently; raise ApplyError after trying all."""

	async def close(self) -> None:
		"""Release any held connections."""


class StatusBackend(ABC):
	"""Capability surface over a deployment-tracking API."""

	@abstractmethod
	async def is_source_closed(self, source: SourceRef) -> bool:
		"""True only when the pull request is closed or merged."""

	@abstractmethod
	async def create_record(self, source: SourceRef) -> int:
		"""Create a record and mark it in progress. Returns its id."""

	@abstractmethod
	async def set_status(
		self,
		record_id: int,
		state: DeploymentState,
		description: str,
		environment_url: str | None = None,
	) -> None:
		"""Write a full state transition for a record."""

	@abstractmethod
	async def list_records(self, source: SourceRef) -> list[int]:
		"""Ids of all non-deleted records for the ref."""

	@abstractmethod
	async def delete_records(self, source: SourceRef) -> None:
		"""Mark every record for the ref inactive, then delete it."""

	async def close(self) -> None:
		"""Release any held connections."""
