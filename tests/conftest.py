"""Shared pytest fixtures, factories, and in-memory backends for preview-deploy tests."""

from __future__ import annotations

import copy
from typing import Any

import pytest

from preview_deploy.backends.base import StatusBackend, WorkloadBackend
from preview_deploy.config import (
	ClusterConfig,
	GitHubConfig,
	PreviewConfig,
	PreviewSettings,
	ReadinessConfig,
)
from preview_deploy.errors import NotFoundError, PreviewError
from preview_deploy.models import (
	DeploymentRecord,
	DeploymentState,
	Lookup,
	ReadinessSnapshot,
	SourceRef,
	WorkloadDescriptor,
)

TEMPLATE = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  labels:
    team: web
spec:
  replicas: 1
  template:
    spec:
      containers:
        - name: app
          image: __IMAGE__
          ports:
            - containerPort: 80
"""

READY = ReadinessSnapshot(has_status=True, available_replicas=1, unavailable_replicas=0)


def make_config(**overrides: Any) -> PreviewConfig:
	"""Create a complete PreviewConfig, overridable per section via kwargs."""
	defaults: dict[str, Any] = {
		"cluster": ClusterConfig(server="https://k8s.example.com", token="kube-token"),
		"github": GitHubConfig(
			token="gh-token", repository="acme/web", head_ref="feature/login", pull_number=42,
		),
		"preview": PreviewSettings(domain="preview.example.com", prefix="preview", image="acme/web:abc123"),
		"readiness": ReadinessConfig(interval=0.01, timeout=0.0),
	}
	defaults.update(overrides)
	return PreviewConfig(**defaults)


def make_source(**overrides: Any) -> SourceRef:
	defaults: dict[str, Any] = {
		"repository": "acme/web",
		"pull_number": 42,
		"ref": "feature/login",
		"environment": "qa",
	}
	defaults.update(overrides)
	return SourceRef(**defaults)


@pytest.fixture()
def config() -> PreviewConfig:
	return make_config()


@pytest.fixture()
def source() -> SourceRef:
	return make_source()


@pytest.fixture()
def descriptor() -> WorkloadDescriptor:
	return WorkloadDescriptor(name="preview-42", namespace="preview")


class FakeWorkloadBackend(WorkloadBackend):
	"""In-memory cluster that records every call in `calls`."""

	def __init__(self, snapshots: list[ReadinessSnapshot] | None = None) -> None:
		self.workloads: dict[str, dict[str, Any]] = {}
		self.exposures: dict[str, int] = {}
		self.applied: dict[str, dict[str, Any]] = {}
		self.snapshots = list(snapshots) if snapshots is not None else [READY]
		self.calls: list[tuple[str, str]] = []
		self.fail_on: dict[str, Exception] = {}

	def _record(self, op: str, name: str) -> None:
		self.calls.append((op, name))
		if op in self.fail_on:
			raise self.fail_on[op]

	async def lookup(self, descriptor: WorkloadDescriptor) -> Lookup:
		self._record("lookup", descriptor.name)
		body = self.workloads.get(descriptor.name)
		return Lookup.of(body) if body is not None else Lookup.absent()

	async def create(self, descriptor: WorkloadDescriptor, body: dict[str, Any]) -> dict[str, Any]:
		self._record("create", descriptor.name)
		if descriptor.name in self.workloads:
			raise PreviewError(f"deployment {descriptor.name} already exists")
		self.workloads[descriptor.name] = copy.deepcopy(body)
		return body

	async def update(self, descriptor: WorkloadDescriptor, body: dict[str, Any]) -> dict[str, Any]:
		self._record("update", descriptor.name)
		if descriptor.name not in self.workloads:
			raise NotFoundError(f"deployment {descriptor.name} not found")
		self.workloads[descriptor.name] = copy.deepcopy(body)
		return body

	async def create_exposure(self, descriptor: WorkloadDescriptor, port: int) -> dict[str, Any]:
		self._record("create_exposure", descriptor.name)
		self.exposures[descriptor.name] = port
		return {"kind": "Service", "metadata": {"name": descriptor.name}}

	async def delete(self, descriptor: WorkloadDescriptor) -> None:
		self._record("delete", descriptor.name)
		self.workloads.pop(descriptor.name, None)

	async def delete_exposure(self, descriptor: WorkloadDescriptor) -> None:
		self._record("delete_exposure", descriptor.name)
		self.exposures.pop(descriptor.name, None)

	async def read_status(self, descriptor: WorkloadDescriptor) -> ReadinessSnapshot:
		self._record("read_status", descriptor.name)
		if len(self.snapshots) > 1:
			return self.snapshots.pop(0)
		return self.snapshots[0]

	async def apply_many(self, objects: list[dict[str, Any]]) -> list[dict[str, Any]]:
		for obj in objects:
			name = obj["metadata"]["name"]
			self._record("apply", f"{obj['kind']}/{name}")
			self.applied[f"{obj['kind']}/{name}"] = obj
			if obj["kind"] == "Deployment":
				self.workloads[name] = obj
		return objects


class FakeStatusBackend(StatusBackend):
	"""In-memory deployment-record store that records every call in `calls`."""

	def __init__(self, closed: bool = False) -> None:
		self.closed = closed
		self.records: dict[int, DeploymentRecord] = {}
		self.history: dict[int, list[DeploymentState]] = {}
		self.calls: list[tuple[str, Any]] = []
		self.fail_on: dict[str, Exception] = {}
		self._next_id = 100

	def _record(self, op: str, arg: Any) -> None:
		self.calls.append((op, arg))
		if op in self.fail_on:
			raise self.fail_on[op]

	def active(self, ref: str) -> list[DeploymentRecord]:
		return [
			r for r in self.records.values()
			if r.ref == ref and r.state is not DeploymentState.INACTIVE
		]

	async def is_source_closed(self, source: SourceRef) -> bool:
		self._record("is_source_closed", source.pull_number)
		return self.closed

	async def create_record(self, source: SourceRef) -> int:
		self._record("create_record", source.ref)
		record_id = self._next_id
		self._next_id += 1
		self.records[record_id] = DeploymentRecord(
			id=record_id, ref=source.ref, environment=source.environment,
		)
		self.history[record_id] = [DeploymentState.PENDING]
		await self.set_status(record_id, DeploymentState.IN_PROGRESS, "In progress")
		return record_id

	async def set_status(
		self,
		record_id: int,
		state: DeploymentState,
		description: str,
		environment_url: str | None = None,
	) -> None:
		self._record(f"set_status:{state.value}", record_id)
		record = self.records[record_id]
		record.state = state
		record.description = description
		record.environment_url = environment_url
		self.history[record_id].append(state)

	async def list_records(self, source: SourceRef) -> list[int]:
		return [r.id for r in self.records.values() if r.ref == source.ref]

	async def delete_records(self, source: SourceRef) -> None:
		self._record("delete_records", source.ref)
		for record_id in await self.list_records(source):
			await self.set_status(record_id, DeploymentState.INACTIVE, "Destroying")
			del self.records[record_id]


@pytest.fixture()
def workloads() -> FakeWorkloadBackend:
	return FakeWorkloadBackend()


@pytest.fixture()
def statuses() -> FakeStatusBackend:
	return FakeStatusBackend()
