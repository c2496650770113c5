"""GitHub status backend -- deployment records and PR state via the REST API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from preview_deploy.backends.base import StatusBackend
from preview_deploy.config import GitHubConfig
from preview_deploy.errors import ApplyError, PreviewError, classify_http_error
from preview_deploy.models import (
	DeploymentSchema,
	DeploymentState,
	PullRequestSchema,
	SourceRef,
)

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
PAGE_SIZE = 100


def parse_next_link(link_header: str) -> str | None:
	"""Return the rel="next" URL from a Link header, if present."""
	for part in link_header.split(","):
		part = part.strip()
		if 'rel="next"' in part:
			return part.split(";")[0].strip().strip("<>")
	return None


class GitHubStatusBackend(StatusBackend):
	"""Tracks preview deployments as GitHub deployment records."""

	def __init__(
		self,
		config: GitHubConfig,
		transport: httpx.AsyncBaseTransport | None = None,
	) -> None:
		self._config = config
		self._transport = transport
		self._client: httpx.AsyncClient | None = None

	def _ensure_client(self) -> httpx.AsyncClient:
		if self._client is None:
			self._client = httpx.AsyncClient(
				base_url=self._config.api_url.rstrip("/"),
				headers={
					"Authorization": f"Bearer {self._config.token}",
					"Accept": "application/vnd.github+json",
					"X-GitHub-Api-Version": API_VERSION,
				},
				timeout=10.0,
				transport=self._transport,
			)
		return self._client

	async def close(self) -> None:
		if self._client is not None:
			await self._client.aclose()
			self._client = None

	async def _request(
		self, method: str, url: str, what: str, *, allow_missing: bool = False, **kwargs: Any,
	) -> httpx.Response:
		client = self._ensure_client()
		try:
			response = await client.request(method, url, **kwargs)
			if allow_missing and response.status_code == 404:
				return response
			response.raise_for_status()
		except httpx.HTTPError as exc:
			raise classify_http_error(exc, what) from exc
		return response

	def _repo_path(self) -> str:
		return f"/repos/{self._config.repository}"

	async def is_source_closed(self, source: SourceRef) -> bool:
		response = await self._request(
			"GET", f"{self._repo_path()}/pulls/{source.pull_number}",
			f"read pull request #{source.pull_number}",
		)
		pr = PullRequestSchema.model_validate(response.json())
		logger.debug("PR #%d state: %s", pr.number, pr.state)
		return pr.state == "closed"

	async def create_record(self, source: SourceRef) -> int:
		response = await self._request(
			"POST", f"{self._repo_path()}/deployments",
			f"create deployment for {source.ref}",
			json={
				"ref": source.ref,
				"environment": source.environment,
				"description": f"Preview of {source.ref}",
				"transient_environment": True,
				"required_contexts": [],
				"auto_merge": False,
			},
		)
		deployment = DeploymentSchema.model_validate(response.json())
		try:
			await self.set_status(deployment.id, DeploymentState.IN_PROGRESS, "In progress")
		except PreviewError:
			# The caller never sees this id, so the record must not stay pending.
			try:
				await self.set_status(deployment.id, DeploymentState.FAILURE, "Failed")
			except PreviewError as exc:
				logger.error("Could not mark deployment %d as failed: %s", deployment.id, exc)
			raise
		return deployment.id

	async def set_status(
		self,
		record_id: int,
		state: DeploymentState,
		description: str,
		environment_url: str | None = None,
	) -> None:
		body: dict[str, Any] = {"state": state.value, "description": description}
		if environment_url is not None:
			body["environment_url"] = environment_url
		logger.debug("Deployment %d -> %s", record_id, state.value)
		await self._request(
			"POST", f"{self._repo_path()}/deployments/{record_id}/statuses",
			f"set deployment {record_id} status to {state.value}",
			json=body,
		)

	async def list_records(self, source: SourceRef) -> list[int]:
		ids: list[int] = []
		url: str | None = f"{self._repo_path()}/deployments"
		params: dict[str, Any] | None = {
			"ref": source.ref,
			"environment": source.environment,
			"per_page": PAGE_SIZE,
		}
		while url:
			response = await self._request("GET", url, f"list deployments for {source.ref}", params=params)
			for item in response.json():
				ids.append(DeploymentSchema.model_validate(item).id)
			url = parse_next_link(response.headers.get("Link", ""))
			params = None  # the next link already carries the query
		return ids

	async def _retire(self, source: SourceRef, record_id: int) -> None:
		await self.set_status(record_id, DeploymentState.INACTIVE, "Destroying")
		response = await self._request(
			"DELETE", f"{self._repo_path()}/deployments/{record_id}",
			f"delete deployment {record_id}", allow_missing=True,
		)
		if response.status_code == 404:
			logger.debug("Deployment %d already deleted", record_id)

	async def delete_records(self, source: SourceRef) -> None:
		ids = await self.list_records(source)
		if not ids:
			return
		logger.debug("Retiring %d deployment(s) for %s", len(ids), source.ref)
		results = await asyncio.gather(
			*(self._retire(source, record_id) for record_id in ids),
			return_exceptions=True,
		)
		failures: dict[str, Exception] = {}
		for record_id, result in zip(ids, results):
			if isinstance(result, PreviewError):
				failures[str(record_id)] = result
			elif isinstance(result, BaseException):
				raise result
		if failures:
			raise ApplyError(
				f"Failed to delete {len(failures)} of {len(ids)} deployments: {', '.join(failures)}",
				failures,
			)
