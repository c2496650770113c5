"""Error kinds raised by the backends and the reconciler.

Backends translate httpx failures into these kinds with classify_http_error()
so callers never branch on raw status codes. error_message() produces the
human-readable text the CLI prints on failure.
"""

from __future__ import annotations

from typing import Any

import httpx


class PreviewError(Exception):
	"""Base for all preview-deploy errors."""

	def __init__(self, message: str, *, detail: str = "") -> None:
		super().__init__(message)
		self.detail = detail


class TransientError(PreviewError):
	"""Backend communication failed without telling us anything about absence."""


class NotFoundError(PreviewError):
	"""The backend reported that the object does not exist."""


class FatalError(PreviewError):
	"""The backend rejected the request."""

	def __init__(self, message: str, *, detail: str = "", status_code: int | None = None) -> None:
		super().__init__(message, detail=detail)
		self.status_code = status_code


class ClosedSourceError(FatalError):
	"""A deployment was requested for a closed pull request."""


class ConfigurationError(PreviewError):
	"""Configuration or manifest input is unusable; nothing was started."""

	def __init__(self, message: str, *, issues: list[str] | None = None) -> None:
		super().__init__(message)
		self.issues = issues or []


class ReadinessTimeout(PreviewError):
	"""The workload did not become ready before the deadline."""


class ApplyError(FatalError):
	"""One or more independent operations in a batch failed."""

	def __init__(self, message: str, failures: dict[str, Exception]) -> None:
		super().__init__(message)
		self.failures = failures


class ReconciliationFailure(PreviewError):
	"""An error occurred after a deployment record was created."""

	def __init__(self, record_id: int, cause: Exception) -> None:
		super().__init__(f"Reconciliation failed for deployment {record_id}: {cause}")
		self.record_id = record_id
		self.cause = cause


def _body_message(response: httpx.Response) -> str:
	"""Extract the `message` field from a JSON error body, if any."""
	try:
		body: Any = response.json()
	except ValueError:
		return ""
	if isinstance(body, dict) and isinstance(body.get("message"), str):
		return body["message"]
	return ""


def classify_http_error(exc: httpx.HTTPError, what: str = "request") -> PreviewError:
	"""Map an httpx failure to an error kind."""
	if isinstance(exc, httpx.HTTPStatusError):
		response = exc.response
		code = response.status_code
		detail = _body_message(response)
		message = f"{what} failed with HTTP {code}"
		if detail:
			message = f"{message}: {detail}"
		if code == 404:
			return NotFoundError(message, detail=detail)
		if code == 429 or code >= 500:
			return TransientError(message, detail=detail)
		return FatalError(message, detail=detail, status_code=code)
	return TransientError(f"{what} failed: {exc}", detail=str(exc))


def error_message(exc: BaseException) -> str:
	"""Return the richest available message for exc.

	Prefers the backend-provided message body of the first PreviewError in
	the cause chain, then that error's own message.
	"""
	current: BaseException | None = exc
	while current is not None:
		if isinstance(current, ReconciliationFailure):
			current = current.cause
			continue
		if isinstance(current, PreviewError):
			return current.detail or str(current)
		if current.__cause__ is None:
			break
		current = current.__cause__
	return str(current if current is not None else exc)
