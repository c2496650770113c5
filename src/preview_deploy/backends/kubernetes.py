"""Kubernetes backend -- talks to the cluster REST API with an async httpx client.

Workloads are apps/v1 Deployments; the exposure object is a core/v1 Service
with the same name. apply_many() upserts arbitrary namespaced objects the way
`kubectl apply` does, keeping the last-applied annotation current.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import logging
import ssl
from typing import Any

import httpx

from preview_deploy.backends.base import WorkloadBackend
from preview_deploy.config import ClusterConfig
from preview_deploy.errors import (
	ApplyError,
	ConfigurationError,
	PreviewError,
	classify_http_error,
)
from preview_deploy.models import (
	Lookup,
	ReadinessSnapshot,
	WorkloadDescriptor,
	WorkloadStatusSchema,
)

logger = logging.getLogger(__name__)

LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"
MERGE_PATCH = "application/merge-patch+json"

_CLUSTER_SCOPED_KINDS = frozenset({
	"Namespace", "Node", "PersistentVolume", "StorageClass",
	"ClusterRole", "ClusterRoleBinding", "CustomResourceDefinition",
	"PriorityClass", "IngressClass",
})


# Kinds whose resource name is not a regular English plural.
_IRREGULAR_PLURALS = {
	"Endpoints": "endpoints",
	"PodSecurityPolicy": "podsecuritypolicies",
}


def _plural(kind: str) -> str:
	if kind in _IRREGULAR_PLURALS:
		return _IRREGULAR_PLURALS[kind]
	lower = kind.lower()
	if lower.endswith("s"):
		return lower + "es"
	if lower.endswith("y"):
		return lower[:-1] + "ies"
	return lower + "s"


def resource_path(api_version: str, kind: str, namespace: str, name: str | None = None) -> str:
	"""REST path for an object (or its collection when name is None)."""
	if not api_version or not kind:
		raise ConfigurationError("Object is missing apiVersion or kind")
	prefix = "/api/v1" if api_version == "v1" else f"/apis/{api_version}"
	if kind in _CLUSTER_SCOPED_KINDS:
		path = f"{prefix}/{_plural(kind)}"
	else:
		path = f"{prefix}/namespaces/{namespace}/{_plural(kind)}"
	return f"{path}/{name}" if name else path


def stamp_last_applied(obj: dict[str, Any]) -> dict[str, Any]:
	"""Copy obj with the last-applied annotation replaced by obj itself."""
	body = copy.deepcopy(obj)
	annotations = body.setdefault("metadata", {}).setdefault("annotations", {})
	annotations.pop(LAST_APPLIED_ANNOTATION, None)
	if not annotations:
		del body["metadata"]["annotations"]
	snapshot = json.dumps(body, separators=(",", ":"), sort_keys=True)
	body["metadata"].setdefault("annotations", {})[LAST_APPLIED_ANNOTATION] = snapshot
	return body


def _object_key(obj: Any) -> str:
	"""`Kind/name` label for an object, tolerating malformed documents."""
	if not isinstance(obj, dict):
		return "?/?"
	metadata = obj.get("metadata")
	name = metadata.get("name") if isinstance(metadata, dict) else None
	return f"{obj.get('kind') or '?'}/{name or '?'}"


def _tls_verify(cluster: ClusterConfig) -> ssl.SSLContext | bool:
	if not cluster.verify_tls:
		return False
	ca = cluster.certificate_authority.strip()
	if not ca:
		return True
	if not ca.startswith("-----BEGIN"):
		try:
			ca = base64.b64decode(ca, validate=True).decode("utf-8")
		except (binascii.Error, UnicodeDecodeError) as exc:
			raise ConfigurationError("cluster certificate is neither PEM nor base64 PEM") from exc
	return ssl.create_default_context(cadata=ca)


class KubernetesBackend(WorkloadBackend):
	"""Manage one preview workload and its Service in a namespace."""

	def __init__(
		self,
		cluster: ClusterConfig,
		service_port: int = 80,
		service_type: str = "NodePort",
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self._cluster = cluster
		self._service_port = service_port
		self._service_type = service_type
		self._transport = transport
		self._client: httpx.AsyncClient | None = None

	@property
	def namespace(self) -> str:
		return self._cluster.namespace

	def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			kwargs: dict[str, Any] = {
				"base_url": self._cluster.server,
				"headers": {
					"Authorization": f"Bearer {self._cluster.token}",
					"Accept": "application/json",
				},
				"timeout": self._cluster.request_timeout,
			}
			if self._transport is not None:
				kwargs["transport"] = self._transport
			else:
				kwargs["verify"] = _tls_verify(self._cluster)
			self._client = httpx.AsyncClient(**kwargs)
		return self._client

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None

	async def _send(
		self,
		method: str,
		path: str,
		what: str,
		*,
		allow_missing: bool = False,
		**kwargs: Any,
	) -> httpx.Response:
		"""Issue a request; a 404 is returned, not raised, when allow_missing is set."""
		client = self._ensure_client()
		try:
			response = await client.request(method, path, **kwargs)
			if allow_missing and response.status_code == 404:
				return response
			response.raise_for_status()
		except httpx.HTTPError as exc:
			raise classify_http_error(exc, what) from exc
		return response

	@staticmethod
	def _deployment_path(namespace: str, name: str | None = None) -> str:
		return resource_path("apps/v1", "Deployment", namespace, name)

	@staticmethod
	def _service_path(namespace: str, name: str | None = None) -> str:
		return resource_path("v1", "Service", namespace, name)

	async def lookup(self, descriptor: WorkloadDescriptor) -> Lookup:
		response = await self._send(
			"GET", self._deployment_path(descriptor.namespace, descriptor.name),
			f"read deployment {descriptor.name}", allow_missing=True,
		)
		if response.status_code == 404:
			return Lookup.absent()
		return Lookup.of(response.json())

	async def create(self, descriptor: WorkloadDescriptor, body: dict[str, Any]) -> dict[str, Any]:
		logger.debug("Creating deployment %s/%s", descriptor.namespace, descriptor.name)
		response = await self._send(
			"POST", self._deployment_path(descriptor.namespace),
			f"create deployment {descriptor.name}", json=body,
		)
		return response.json()

	async def update(self, descriptor: WorkloadDescriptor, body: dict[str, Any]) -> dict[str, Any]:
		logger.debug("Replacing deployment %s/%s", descriptor.namespace, descriptor.name)
		response = await self._send(
			"PUT", self._deployment_path(descriptor.namespace, descriptor.name),
			f"replace deployment {descriptor.name}", json=body,
		)
		return response.json()

	async def create_exposure(self, descriptor: WorkloadDescriptor, port: int) -> dict[str, Any]:
		name = descriptor.name
		body = {
			"apiVersion": "v1",
			"kind": "Service",
			"metadata": {"name": name, "labels": {"app": name}},
			"spec": {
				"type": self._service_type,
				"selector": {"app": name},
				"ports": [{"port": self._service_port, "protocol": "TCP", "targetPort": port}],
			},
		}
		logger.debug("Creating service %s/%s", descriptor.namespace, name)
		response = await self._send(
			"POST", self._service_path(descriptor.namespace),
			f"create service {name}", json=body,
		)
		return response.json()

	async def delete(self, descriptor: WorkloadDescriptor) -> None:
		response = await self._send(
			"DELETE", self._deployment_path(descriptor.namespace, descriptor.name),
			f"delete deployment {descriptor.name}", allow_missing=True,
		)
		if response.status_code == 404:
			logger.debug("Deployment %s already absent", descriptor.name)

	async def delete_exposure(self, descriptor: WorkloadDescriptor) -> None:
		response = await self._send(
			"DELETE", self._service_path(descriptor.namespace, descriptor.name),
			f"delete service {descriptor.name}", allow_missing=True,
		)
		if response.status_code == 404:
			logger.debug("Service %s already absent", descriptor.name)

	async def read_status(self, descriptor: WorkloadDescriptor) -> ReadinessSnapshot:
		response = await self._send(
			"GET", self._deployment_path(descriptor.namespace, descriptor.name), f"read deployment {descriptor.name}",
		)
		raw = response.json().get("status")
		if not isinstance(raw, dict):
			return ReadinessSnapshot(has_status=False)
		status = WorkloadStatusSchema.model_validate(raw)
		return ReadinessSnapshot(
			has_status=True,
			available_replicas=status.availableReplicas or 0,
			unavailable_replicas=status.unavailableReplicas or 0,
		)

	async def apply_many(self, objects: list[dict[str, Any]]) -> list[dict[str, Any]]:
		applied: list[dict[str, Any]] = []
		failures: dict[str, Exception] = {}
		for obj in objects:
			key = _object_key(obj)
			try:
				applied.append(await self._apply_one(obj))
			except PreviewError as exc:
				logger.warning("Failed to apply %s: %s", key, exc)
				failures[key] = exc
		if failures:
			raise ApplyError(
				f"Failed to apply {len(failures)} of {len(objects)} objects: {', '.join(failures)}",
				failures,
			)
		return applied

	async def _apply_one(self, obj: dict[str, Any]) -> dict[str, Any]:
		metadata = obj.get("metadata") or {}
		name = metadata.get("name")
		if not name:
			raise ConfigurationError(f"{obj.get('kind', 'Object')} has no metadata.name")
		namespace = metadata.get("namespace") or self.namespace
		api_version, kind = obj.get("apiVersion", ""), obj.get("kind", "")
		item_path = resource_path(api_version, kind, namespace, name)
		body = stamp_last_applied(obj)

		# Only a 404 means "create"; any other read failure propagates.
		existing = await self._send("GET", item_path, f"read {kind} {name}", allow_missing=True)
		if existing.status_code == 404:
			logger.info("Creating %s %s", kind, name)
			response = await self._send(
				"POST", resource_path(api_version, kind, namespace),
				f"create {kind} {name}", json=body,
			)
		else:
			logger.info("Patching %s %s", kind, name)
			response = await self._send(
				"PATCH", item_path, f"patch {kind} {name}",
				content=json.dumps(body), headers={"Content-Type": MERGE_PATCH},
			)
		return response.json()
