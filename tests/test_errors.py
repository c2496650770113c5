"""Tests for error classification and reporting."""

from __future__ import annotations

import httpx
import pytest

from preview_deploy.errors import (
	ClosedSourceError,
	ConfigurationError,
	FatalError,
	NotFoundError,
	PreviewError,
	ReconciliationFailure,
	TransientError,
	classify_http_error,
	error_message,
)


def _status_error(code: int, body: object = None, text: str | None = None) -> httpx.HTTPStatusError:
	request = httpx.Request("GET", "https://api.example.com/thing")
	if text is not None:
		response = httpx.Response(code, text=text, request=request)
	else:
		response = httpx.Response(code, json=body or {}, request=request)
	return httpx.HTTPStatusError("status", request=request, response=response)


class TestClassifyHttpError:
	def test_404_is_not_found(self) -> None:
		err = classify_http_error(_status_error(404, {"message": "Not Found"}), "read thing")
		assert isinstance(err, NotFoundError)
		assert str(err) == "read thing failed with HTTP 404: Not Found"

	@pytest.mark.parametrize("code", [429, 500, 502, 503])
	def test_retryable_codes_are_transient(self, code: int) -> None:
		assert isinstance(classify_http_error(_status_error(code)), TransientError)

	@pytest.mark.parametrize("code", [400, 401, 403, 409, 422])
	def test_client_errors_are_fatal(self, code: int) -> None:
		err = classify_http_error(_status_error(code))
		assert isinstance(err, FatalError)
		assert err.status_code == code

	def test_body_message_becomes_detail(self) -> None:
		err = classify_http_error(_status_error(422, {"message": "Validation Failed"}))
		assert err.detail == "Validation Failed"

	def test_non_json_body(self) -> None:
		err = classify_http_error(_status_error(500, text="<html>oops</html>"), "read")
		assert err.detail == ""
		assert str(err) == "read failed with HTTP 500"

	def test_transport_error_is_transient(self) -> None:
		request = httpx.Request("GET", "https://api.example.com")
		err = classify_http_error(httpx.ConnectTimeout("timed out", request=request), "read")
		assert isinstance(err, TransientError)
		assert "timed out" in str(err)


class TestHierarchy:
	def test_closed_source_is_fatal(self) -> None:
		assert issubclass(ClosedSourceError, FatalError)
		assert issubclass(FatalError, PreviewError)

	def test_configuration_error_keeps_issues(self) -> None:
		err = ConfigurationError("bad", issues=["a", "b"])
		assert err.issues == ["a", "b"]
		assert ConfigurationError("bad").issues == []


class TestErrorMessage:
	def test_prefers_backend_detail(self) -> None:
		err = FatalError("create failed with HTTP 422: quota exceeded", detail="quota exceeded")
		assert error_message(err) == "quota exceeded"

	def test_unwraps_reconciliation_failure(self) -> None:
		cause = FatalError("create failed", detail="image pull denied")
		assert error_message(ReconciliationFailure(12, cause)) == "image pull denied"

	def test_follows_cause_chain(self) -> None:
		try:
			try:
				raise FatalError("inner", detail="from backend")
			except FatalError as inner:
				raise RuntimeError("outer") from inner
		except RuntimeError as outer:
			assert error_message(outer) == "from backend"

	def test_own_message_preferred_over_transport_cause(self) -> None:
		exc = _status_error(409, text="conflict")
		try:
			raise classify_http_error(exc, "create deployment preview-42") from exc
		except FatalError as err:
			assert error_message(err) == "create deployment preview-42 failed with HTTP 409"

	def test_falls_back_to_str(self) -> None:
		assert error_message(ConfigurationError("Missing env variable GITHUB_HEAD_REF")) == (
			"Missing env variable GITHUB_HEAD_REF"
		)

	def test_reconciliation_failure_message(self) -> None:
		err = ReconciliationFailure(12, RuntimeError("boom"))
		assert str(err) == "Reconciliation failed for deployment 12: boom"
		assert err.record_id == 12
		assert error_message(err) == "boom"
