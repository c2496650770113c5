"""TOML configuration loader for preview-deploy.

All external configuration is read here, once, into a frozen PreviewConfig
that is passed explicitly to everything downstream.
"""

from __future__ import annotations

import json
import os
import re
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from preview_deploy.errors import ConfigurationError
from preview_deploy.models import SourceRef

DEFAULT_GITHUB_API = "https://api.github.com"


@dataclass(frozen=True)
class ClusterConfig:
	"""Cluster API connection settings."""

	server: str = ""
	token: str = ""
	certificate_authority: str = ""  # PEM or base64-encoded PEM
	namespace: str = "preview"
	request_timeout: float = 30.0
	verify_tls: bool = True


@dataclass(frozen=True)
class GitHubConfig:
	"""Source-control host settings."""

	token: str = ""
	repository: str = ""  # owner/name
	api_url: str = DEFAULT_GITHUB_API
	environment: str = "qa"
	head_ref: str = ""
	pull_number: int = 0


@dataclass(frozen=True)
class PreviewSettings:
	"""What to deploy and how to name it."""

	domain: str = ""
	prefix: str = ""
	image: str = ""
	manifest_path: str = "manifest.yaml"
	specs_path: str = ""  # multi-document set; selects spec-set mode when set
	placeholder: str = "__IMAGE__"
	service_port: int = 80
	target_port: int = 80
	service_type: str = "NodePort"
	teardown_on_close: bool = True


@dataclass(frozen=True)
class ReadinessConfig:
	"""Readiness polling settings."""

	interval: float = 2.0
	timeout: float = 0.0  # 0 = wait until the surrounding job times out


@dataclass(frozen=True)
class PreviewConfig:
	"""Top-level preview-deploy configuration."""

	cluster: ClusterConfig = field(default_factory=ClusterConfig)
	github: GitHubConfig = field(default_factory=GitHubConfig)
	preview: PreviewSettings = field(default_factory=PreviewSettings)
	readiness: ReadinessConfig = field(default_factory=ReadinessConfig)

	@property
	def uses_spec_set(self) -> bool:
		return bool(self.preview.specs_path)

	def source_ref(self) -> SourceRef:
		"""Build the SourceRef for this run. Raises ConfigurationError if incomplete."""
		gh = self.github
		if not gh.head_ref:
			raise ConfigurationError("Missing env variable GITHUB_HEAD_REF")
		if not gh.repository:
			raise ConfigurationError("Missing repository (GITHUB_REPOSITORY)")
		if gh.pull_number <= 0:
			raise ConfigurationError("Missing pull request number")
		return SourceRef(
			repository=gh.repository,
			pull_number=gh.pull_number,
			ref=gh.head_ref,
			environment=gh.environment,
		)


def _build_cluster(data: dict[str, Any]) -> ClusterConfig:
	kwargs: dict[str, Any] = {}
	for key in ("server", "token", "certificate_authority", "namespace"):
		if key in data:
			kwargs[key] = str(data[key])
	if "request_timeout" in data:
		kwargs["request_timeout"] = float(data["request_timeout"])
	if "verify_tls" in data:
		kwargs["verify_tls"] = bool(data["verify_tls"])
	return ClusterConfig(**kwargs)


def _build_github(data: dict[str, Any]) -> GitHubConfig:
	kwargs: dict[str, Any] = {}
	for key in ("token", "repository", "api_url", "environment", "head_ref"):
		if key in data:
			kwargs[key] = str(data[key])
	if "pull_number" in data:
		kwargs["pull_number"] = int(data["pull_number"])
	return GitHubConfig(**kwargs)


def _build_preview(data: dict[str, Any]) -> PreviewSettings:
	kwargs: dict[str, Any] = {}
	for key in (
		"domain", "prefix", "image", "manifest_path", "specs_path",
		"placeholder", "service_type",
	):
		if key in data:
			kwargs[key] = str(data[key])
	for key in ("service_port", "target_port"):
		if key in data:
			kwargs[key] = int(data[key])
	if "teardown_on_close" in data:
		kwargs["teardown_on_close"] = bool(data["teardown_on_close"])
	return PreviewSettings(**kwargs)


def _build_readiness(data: dict[str, Any]) -> ReadinessConfig:
	kwargs: dict[str, Any] = {}
	for key in ("interval", "timeout"):
		if key in data:
			kwargs[key] = float(data[key])
	return ReadinessConfig(**kwargs)


_PULL_REF_RE = re.compile(r"^refs/pull/(\d+)/")


def _pull_number_from_env(environ: Mapping[str, str]) -> int:
	"""Find the PR number in the runner's event payload or GITHUB_REF."""
	event_path = environ.get("GITHUB_EVENT_PATH", "")
	if event_path and Path(event_path).is_file():
		with open(event_path, encoding="utf-8") as f:
			event = json.load(f)
		pr = event.get("pull_request") or {}
		number = pr.get("number") or event.get("number")
		if number:
			return int(number)
	match = _PULL_REF_RE.match(environ.get("GITHUB_REF", ""))
	if match:
		return int(match.group(1))
	return 0


def _input(environ: Mapping[str, str], name: str) -> str:
	# The runner exports action inputs as INPUT_<NAME>, upper-cased.
	return environ.get(f"INPUT_{name.upper()}", "").strip()


def apply_env_fallbacks(config: PreviewConfig, environ: Mapping[str, str]) -> PreviewConfig:
	"""Fill empty settings from the GitHub Actions environment."""
	cl = config.cluster
	cluster = replace(
		cl,
		server=cl.server or _input(environ, "server"),
		token=cl.token or _input(environ, "token"),
		certificate_authority=cl.certificate_authority or _input(environ, "cert"),
	)

	gh = config.github
	github = replace(
		gh,
		token=gh.token or environ.get("GITHUB_TOKEN", "") or _input(environ, "repo-token"),
		repository=gh.repository or environ.get("GITHUB_REPOSITORY", ""),
		api_url=gh.api_url if gh.api_url != DEFAULT_GITHUB_API else (
			environ.get("GITHUB_API_URL", "") or DEFAULT_GITHUB_API
		),
		head_ref=gh.head_ref or environ.get("GITHUB_HEAD_REF", ""),
		pull_number=gh.pull_number or _pull_number_from_env(environ),
	)

	pv = config.preview
	preview = replace(
		pv,
		domain=pv.domain or _input(environ, "domain"),
		prefix=pv.prefix or _input(environ, "prefix"),
		image=pv.image or _input(environ, "image"),
		specs_path=pv.specs_path or _input(environ, "specsPath"),
	)
	return replace(config, cluster=cluster, github=github, preview=preview)


def load_config(
	path: str | Path | None = None,
	environ: Mapping[str, str] | None = None,
) -> PreviewConfig:
	"""Load a preview-deploy.toml config file, then apply env fallbacks.

	Args:
		path: Path to the TOML config file, or None to use the environment only.
		environ: Environment mapping; defaults to os.environ.

	Returns:
		Parsed PreviewConfig.

	Raises:
		FileNotFoundError: If a path is given and the file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
	"""
	data: dict[str, Any] = {}
	if path is not None:
		config_path = Path(path)
		if not config_path.exists():
			raise FileNotFoundError(f"Config file not found: {config_path}")
		with open(config_path, "rb") as f:
			data = tomllib.load(f)

	pc = PreviewConfig()
	if "cluster" in data:
		pc = replace(pc, cluster=_build_cluster(data["cluster"]))
	if "github" in data:
		pc = replace(pc, github=_build_github(data["github"]))
	if "preview" in data:
		pc = replace(pc, preview=_build_preview(data["preview"]))
	if "readiness" in data:
		pc = replace(pc, readiness=_build_readiness(data["readiness"]))
	return apply_env_fallbacks(pc, os.environ if environ is None else environ)


def secret_values(config: PreviewConfig) -> list[str]:
	"""Values that must be masked in CI logs."""
	values = (
		config.cluster.server,
		config.cluster.token,
		config.cluster.certificate_authority,
		config.github.token,
	)
	return [v for v in values if v]


def validate_config(config: PreviewConfig, *, teardown_only: bool = False) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded PreviewConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	# 1. Cluster credentials
	if not config.cluster.server:
		issues.append(("error", "cluster.server is required"))
	if not config.cluster.token:
		issues.append(("error", "cluster.token is required"))
	if not config.cluster.namespace:
		issues.append(("error", "cluster.namespace must not be empty"))

	# 2. Source-control context
	gh = config.github
	if not gh.token:
		issues.append(("error", "github.token is required (or set GITHUB_TOKEN)"))
	if not gh.repository:
		issues.append(("error", "github.repository is required (or set GITHUB_REPOSITORY)"))
	elif "/" not in gh.repository:
		issues.append(("error", f"github.repository must be owner/name: {gh.repository}"))
	if gh.pull_number <= 0:
		issues.append(("error", "pull request number could not be determined"))
	if not gh.head_ref:
		issues.append(("error", "github.head_ref is required (or set GITHUB_HEAD_REF)"))

	# 3. What to deploy
	pv = config.preview
	if not config.uses_spec_set and not pv.prefix:
		issues.append(("error", "preview.prefix is required"))
	if not teardown_only:
		if not pv.domain:
			issues.append(("error", "preview.domain is required"))
		if not config.uses_spec_set and not pv.image:
			issues.append(("error", "preview.image is required"))
		if not config.uses_spec_set and not pv.placeholder:
			issues.append(("error", "preview.placeholder must not be empty"))

	# 4. Readiness
	if config.readiness.interval <= 0:
		issues.append(("error", f"readiness.interval must be positive: {config.readiness.interval}"))
	if config.readiness.timeout < 0:
		issues.append(("error", f"readiness.timeout is negative: {config.readiness.timeout}"))
	elif config.readiness.timeout == 0 and not teardown_only:
		issues.append(("warning", "readiness.timeout is unbounded; relying on the job timeout"))

	# 5. Suspicious values
	if not config.cluster.verify_tls:
		issues.append(("warning", "TLS verification for the cluster API is disabled"))

	return issues


def require_valid(config: PreviewConfig, *, teardown_only: bool = False) -> None:
	"""Raise ConfigurationError if validate_config reports any error."""
	errors = [msg for level, msg in validate_config(config, teardown_only=teardown_only) if level == "error"]
	if errors:
		raise ConfigurationError(
			f"Invalid configuration: {'; '.join(errors)}", issues=errors,
		)
