"""Path containment checks for manifest and spec inputs."""

from __future__ import annotations

from pathlib import Path

from preview_deploy.errors import ConfigurationError


def validate_manifest_path(path: str, workspace: Path | None = None) -> Path:
	"""Resolve a manifest path relative to the workspace and check containment.

	Relative paths resolve against workspace (default: the current directory),
	which is how a CI checkout exposes repository files. Symlinks and '..'
	components are resolved before the check.

	Raises:
		ConfigurationError: If the path is empty, contains null bytes, or
			resolves outside the workspace.
	"""
	if not path:
		raise ConfigurationError("Manifest path is empty")

	if "\x00" in path:
		raise ConfigurationError("Manifest path is invalid")

	base = (workspace or Path.cwd()).resolve()
	candidate = Path(path)
	resolved = (candidate if candidate.is_absolute() else base / candidate).resolve()

	if not resolved.is_relative_to(base):
		raise ConfigurationError(f"Manifest path outside workspace: {path}")
	return resolved
