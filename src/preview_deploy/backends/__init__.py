"""Cluster and status backends for preview-deploy."""

from __future__ import annotations

from preview_deploy.backends.base import StatusBackend, WorkloadBackend
from preview_deploy.backends.github import GitHubStatusBackend
from preview_deploy.backends.kubernetes import KubernetesBackend

__all__ = [
	"GitHubStatusBackend",
	"KubernetesBackend",
	"StatusBackend",
	"WorkloadBackend",
]
