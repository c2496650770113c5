"""CLI interface for preview-deploy."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import tomllib
from pathlib import Path

from preview_deploy.backends import GitHubStatusBackend, KubernetesBackend
from preview_deploy.config import (
	PreviewConfig,
	load_config,
	require_valid,
	secret_values,
	validate_config,
)
from preview_deploy.errors import PreviewError, error_message
from preview_deploy.manifest import (
	ManifestResolver,
	SpecSetResolver,
	TemplateResolver,
	preview_name,
)
from preview_deploy.models import ReconcileResult, SourceRef, WorkloadDescriptor
from preview_deploy.path_security import validate_manifest_path
from preview_deploy.reconciler import Reconciler

DEFAULT_CONFIG = "preview-deploy.toml"


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="preview-deploy",
		description="Provision and tear down pull request preview environments",
	)
	parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
	sub = parser.add_subparsers(dest="command")

	# preview-deploy run
	run = sub.add_parser("run", help="Deploy the PR preview, or tear it down if the PR is closed")
	run.add_argument("--config", default=None, help=f"Config file path (default: {DEFAULT_CONFIG} if present)")

	# preview-deploy deploy
	deploy = sub.add_parser("deploy", help="Deploy the PR preview; fails for closed PRs")
	deploy.add_argument("--config", default=None, help="Config file path")

	# preview-deploy destroy
	destroy = sub.add_parser("destroy", help="Delete the PR preview and its deployment records")
	destroy.add_argument("--config", default=None, help="Config file path")

	# preview-deploy validate-config
	validate = sub.add_parser("validate-config", help="Check configuration for problems")
	validate.add_argument("--config", default=None, help="Config file path")
	validate.add_argument(
		"--teardown", action="store_true",
		help="Only check what the destroy command needs",
	)

	return parser


def _in_github_actions() -> bool:
	return os.environ.get("GITHUB_ACTIONS") == "true"


def _load(args: argparse.Namespace) -> PreviewConfig:
	path = args.config
	if path is None and Path(DEFAULT_CONFIG).exists():
		path = DEFAULT_CONFIG
	return load_config(path)


def _mask_secrets(config: PreviewConfig) -> None:
	if not _in_github_actions():
		return
	for value in secret_values(config):
		for line in value.splitlines():
			if line.strip():
				print(f"::add-mask::{line.strip()}")


def _report_failure(exc: BaseException) -> None:
	message = error_message(exc)
	if _in_github_actions():
		print(f"::error::Failed with error {message}")
	else:
		print(f"Error: {message}")


def build_resolver(config: PreviewConfig, source: SourceRef) -> ManifestResolver:
	"""Pick the manifest input mode from configuration."""
	namespace = config.cluster.namespace
	pv = config.preview
	if config.uses_spec_set:
		return SpecSetResolver.from_path(validate_manifest_path(pv.specs_path), namespace=namespace)
	return TemplateResolver.from_file(
		validate_manifest_path(pv.manifest_path),
		name=preview_name(pv.prefix, source.pull_number),
		image=pv.image,
		namespace=namespace,
		placeholder=pv.placeholder,
	)


def destroy_target(
	config: PreviewConfig, source: SourceRef, resolver: ManifestResolver | None,
) -> WorkloadDescriptor:
	"""The workload to tear down: from the spec set, else `<prefix>-<number>`."""
	if resolver is not None:
		descriptor, _ = resolver.resolve()
		return descriptor
	return WorkloadDescriptor(
		name=preview_name(config.preview.prefix, source.pull_number),
		namespace=config.cluster.namespace,
	)


async def reconcile(config: PreviewConfig, command: str) -> ReconcileResult:
	"""Wire the backends for one run and execute command (run/deploy/destroy)."""
	source = config.source_ref()
	resolver: ManifestResolver | None = None
	# The template is only needed to deploy; a spec set also names the workload.
	if command != "destroy" or config.uses_spec_set:
		resolver = build_resolver(config, source)

	workloads = KubernetesBackend(
		config.cluster,
		service_port=config.preview.service_port,
		service_type=config.preview.service_type,
	)
	statuses = GitHubStatusBackend(config.github)
	reconciler = Reconciler(config, source, resolver, workloads, statuses)
	try:
		if command == "destroy":
			return await reconciler.teardown(destroy_target(config, source, resolver))
		if command == "deploy":
			return await reconciler.deploy()
		return await reconciler.run()
	finally:
		await workloads.close()
		await statuses.close()


def _execute(args: argparse.Namespace) -> int:
	try:
		config = _load(args)
	except (FileNotFoundError, tomllib.TOMLDecodeError) as e:
		print(f"Error: {e}")
		return 1

	_mask_secrets(config)
	try:
		require_valid(config, teardown_only=args.command == "destroy")
		result = asyncio.run(reconcile(config, args.command))
	except PreviewError as exc:
		_report_failure(exc)
		return 1

	if result.action == "torn_down":
		print(f"Preview {result.descriptor.name} torn down")
	else:
		print(f"Preview {result.descriptor.name} {result.action}: {result.environment_url}")
	return 0


def cmd_run(args: argparse.Namespace) -> int:
	"""Deploy, or tear down when the PR is closed."""
	return _execute(args)


def cmd_deploy(args: argparse.Namespace) -> int:
	"""Deploy; a closed PR is an error."""
	return _execute(args)


def cmd_destroy(args: argparse.Namespace) -> int:
	"""Tear down the preview for the current PR."""
	return _execute(args)


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate config semantically."""
	try:
		config = _load(args)
	except (FileNotFoundError, tomllib.TOMLDecodeError) as e:
		print(f"Error: {e}")
		return 1
	issues = validate_config(config, teardown_only=args.teardown)

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config OK")

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"run": cmd_run,
	"deploy": cmd_deploy,
	"destroy": cmd_destroy,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	# Force line-buffered stderr so CI logs interleave correctly
	if hasattr(sys.stderr, "reconfigure"):
		sys.stderr.reconfigure(line_buffering=True)  # type: ignore[union-attr]
	parser = build_parser()
	args = parser.parse_args(argv)

	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	return handler(args)


if __name__ == "__main__":
	sys.exit(main())
