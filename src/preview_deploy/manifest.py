"""Resolve the workload identity and desired state from manifest input.

Two input modes share one contract, ManifestResolver.resolve():

- TemplateResolver: a single YAML template with an image placeholder. The
  workload name is PR-scoped (`<prefix>-<number>`) and injected into the
  name, label, and selector paths.
- SpecSetResolver: a pre-rendered multi-document set. The workload is the one
  object of kind Deployment; every document is applied declaratively.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import yaml

from preview_deploy.errors import ConfigurationError
from preview_deploy.models import ApplyMode, DesiredState, WorkloadDescriptor

logger = logging.getLogger(__name__)

DEFAULT_PLACEHOLDER = "__IMAGE__"
_YAML_SUFFIXES = (".yaml", ".yml")


def preview_name(prefix: str, pull_number: int) -> str:
	"""Stable workload name for a pull request."""
	if not prefix:
		raise ConfigurationError("A name prefix is required")
	return f"{prefix}-{pull_number}"


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
	"""Merge overlay into a copy of base.

	Nested mappings merge key by key, lists concatenate, and any other overlay
	value replaces the base value. Neither input is modified.
	"""
	merged = copy.deepcopy(base)
	for key, value in overlay.items():
		current = merged.get(key)
		if isinstance(current, dict) and isinstance(value, dict):
			merged[key] = deep_merge(current, value)
		elif isinstance(current, list) and isinstance(value, list):
			merged[key] = current + copy.deepcopy(value)
		else:
			merged[key] = copy.deepcopy(value)
	return merged


def identity_overlay(name: str) -> dict[str, Any]:
	return {
		"metadata": {"name": name, "labels": {"app": name}},
		"spec": {
			"selector": {"matchLabels": {"app": name}},
			"template": {"metadata": {"labels": {"app": name}}},
		},
	}


def build_deployment_manifest(
	template: str,
	name: str,
	image: str,
	placeholder: str = DEFAULT_PLACEHOLDER,
) -> dict[str, Any]:
	"""Substitute the image and inject the workload identity.

	Raises:
		ConfigurationError: If the placeholder is missing or the template is
			not a YAML mapping.
	"""
	if placeholder not in template:
		raise ConfigurationError(f"Manifest does not include {placeholder} placeholder")
	try:
		document = yaml.safe_load(template.replace(placeholder, image))
	except yaml.YAMLError as exc:
		raise ConfigurationError(f"Manifest is not valid YAML: {exc}") from exc
	if not isinstance(document, dict):
		raise ConfigurationError("Manifest must be a single YAML mapping")
	return deep_merge(document, identity_overlay(name))


def parse_spec_set(text: str) -> list[dict[str, Any]]:
	try:
		documents = [doc for doc in yaml.safe_load_all(text) if doc is not None]
	except yaml.YAMLError as exc:
		raise ConfigurationError(f"Spec set is not valid YAML: {exc}") from exc
	for doc in documents:
		if not isinstance(doc, dict):
			raise ConfigurationError("Every document in a spec set must be a mapping")
	return documents


def load_spec_set(path: str | Path) -> list[dict[str, Any]]:
	"""Read a YAML file, or every YAML file in a directory, in name order."""
	spec_path = Path(path)
	if spec_path.is_dir():
		files = sorted(p for p in spec_path.iterdir() if p.suffix in _YAML_SUFFIXES)
	elif spec_path.is_file():
		files = [spec_path]
	else:
		raise ConfigurationError(f"Spec path not found: {spec_path}")
	documents: list[dict[str, Any]] = []
	for file in files:
		documents.extend(parse_spec_set(file.read_text(encoding="utf-8")))
	if not documents:
		raise ConfigurationError(f"No documents found in {spec_path}")
	return documents


def find_deployment(documents: list[dict[str, Any]]) -> dict[str, Any]:
	"""Return the single Deployment in a spec set."""
	matches = [doc for doc in documents if doc.get("kind") == "Deployment"]
	if not matches:
		raise ConfigurationError("No Deployment found in specs")
	if len(matches) > 1:
		raise ConfigurationError(f"Expected one Deployment in specs, found {len(matches)}")
	return matches[0]


class ManifestResolver(ABC):
	"""Produces the workload identity and its desired state."""

	@abstractmethod
	def resolve(self) -> tuple[WorkloadDescriptor, DesiredState]:
		"""Return (descriptor, desired state). Performs no network I/O."""


class TemplateResolver(ManifestResolver):
	def __init__(
		self,
		template: str,
		name: str,
		image: str,
		namespace: str = "preview",
		placeholder: str = DEFAULT_PLACEHOLDER,
	) -> None:
		self._template = template
		self._name = name
		self._image = image
		self._namespace = namespace
		self._placeholder = placeholder

	@classmethod
	def from_file(cls, path: str | Path, **kwargs: Any) -> TemplateResolver:
		manifest_path = Path(path)
		if not manifest_path.is_file():
			raise ConfigurationError(f"Manifest not found: {manifest_path}")
		return cls(manifest_path.read_text(encoding="utf-8"), **kwargs)

	def resolve(self) -> tuple[WorkloadDescriptor, DesiredState]:
		workload = build_deployment_manifest(
			self._template, self._name, self._image, self._placeholder,
		)
		descriptor = WorkloadDescriptor(name=self._name, namespace=self._namespace)
		return descriptor, DesiredState(workload=workload, mode=ApplyMode.REPLACE)


class SpecSetResolver(ManifestResolver):
	def __init__(self, documents: list[dict[str, Any]], namespace: str = "preview") -> None:
		self._documents = documents
		self._namespace = namespace

	@classmethod
	def from_path(cls, path: str | Path, namespace: str = "preview") -> SpecSetResolver:
		return cls(load_spec_set(path), namespace=namespace)

	def resolve(self) -> tuple[WorkloadDescriptor, DesiredState]:
		deployment = find_deployment(self._documents)
		metadata = deployment.get("metadata") or {}
		name = metadata.get("name")
		if not name:
			raise ConfigurationError("Deployment in specs has no metadata.name")
		descriptor = WorkloadDescriptor(
			name=str(name),
			namespace=str(metadata.get("namespace") or self._namespace),
		)
		logger.debug("Resolved deployment %s from %d spec(s)", name, len(self._documents))
		state = DesiredState(
			workload=deployment,
			objects=list(self._documents),
			mode=ApplyMode.DECLARATIVE,
		)
		return descriptor, state
