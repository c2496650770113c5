"""Data models for preview deployments."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel


class DeploymentState(str, Enum):
	"""States a deployment record can report to the source-control host."""

	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	SUCCESS = "success"
	FAILURE = "failure"
	INACTIVE = "inactive"

	@property
	def is_terminal(self) -> bool:
		return self in (DeploymentState.SUCCESS, DeploymentState.FAILURE)


class ApplyMode(str, Enum):
	"""How a DesiredState is pushed to the cluster.

	REPLACE creates or replaces the single workload and creates the exposure
	object on first creation. DECLARATIVE upserts every object in the set.
	"""

	REPLACE = "replace"
	DECLARATIVE = "declarative"


@dataclass(frozen=True)
class WorkloadDescriptor:
	"""Stable identity of the workload for the whole PR lifecycle."""

	name: str
	namespace: str = "preview"


@dataclass(frozen=True)
class SourceRef:
	"""The pull request and git ref a reconciliation is scoped to."""

	repository: str
	pull_number: int
	ref: str
	environment: str = "qa"


@dataclass
class DesiredState:
	"""Declarative objects that should exist for a workload."""

	workload: dict[str, Any]
	objects: list[dict[str, Any]] = field(default_factory=list)
	mode: ApplyMode = ApplyMode.REPLACE

	def __post_init__(self) -> None:
		if not self.objects:
			self.objects = [self.workload]


@dataclass
class DeploymentRecord:
	id: int
	ref: str
	environment: str
	state: DeploymentState = DeploymentState.PENDING
	description: str = ""
	environment_url: str | None = None


@dataclass(frozen=True)
class ReadinessSnapshot:
	"""Point-in-time view of workload replica counts."""

	has_status: bool = False
	available_replicas: int = 0
	unavailable_replicas: int = 0

	@property
	def is_ready(self) -> bool:
		return (
			self.has_status
			and self.unavailable_replicas == 0
			and self.available_replicas > 0
		)


@dataclass(frozen=True)
class Lookup:
	"""Result of an existence check: found with the object, or absent."""

	found: bool
	obj: dict[str, Any] | None = None

	@classmethod
	def absent(cls) -> Lookup:
		return cls(found=False)

	@classmethod
	def of(cls, obj: dict[str, Any]) -> Lookup:
		return cls(found=True, obj=obj)


@dataclass
class ReconcileResult:
	"""Outcome of a single reconciler run."""

	action: str  # created/updated/torn_down
	descriptor: WorkloadDescriptor
	record_id: int | None = None
	environment_url: str | None = None


# ---------------------------------------------------------------------------
# API payload schemas
# ---------------------------------------------------------------------------

class PullRequestSchema(BaseModel, extra="ignore"):
	number: int
	state: str
	merged: bool | None = None


class DeploymentSchema(BaseModel, extra="ignore"):
	id: int
	ref: str
	environment: str = ""
	description: str | None = None


class DeploymentStatusSchema(BaseModel, extra="ignore"):
	state: str
	environment_url: str | None = None


class WorkloadStatusSchema(BaseModel, extra="ignore"):
	"""The subset of a Deployment's `status` block the poller consumes."""

	availableReplicas: int | None = None
	unavailableReplicas: int | None = None
	readyReplicas: int | None = None
	replicas: int | None = None
