"""Unit tests for error classification utilities."""

import httpx
import pytest

from calsync.core.errors import (
    ConflictResolutionError,
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    OfflineError,
    RemoteStoreError,
    TaskNotFoundError,
    TaskValidationError,
    classify_error,
)


@pytest.mark.unit
class TestClassifyError:
    def test_offline(self):
        response = classify_error(OfflineError("Client is offline"))

        assert response.category == ErrorCategory.OFFLINE
        assert response.retryable is False

    def test_validation(self):
        response = classify_error(TaskValidationError("title: String should have at least 1 character"))

        assert response.category == ErrorCategory.VALIDATION_FAILED
        assert response.code == ErrorCode.ERR_VALIDATION_FAILED
        assert "title" in response.message

    def test_missing_task(self):
        assert classify_error(TaskNotFoundError("Task t1 not found in cache")).category == ErrorCategory.NOT_FOUND

    def test_not_found_status(self):
        response = classify_error(RemoteStoreError("PUT /tasks/t1 failed", status_code=404))
        assert response.category == ErrorCategory.NOT_FOUND

    def test_permission_denied_is_a_warning(self):
        response = classify_error(RemoteStoreError("DELETE /tasks/t1 failed", status_code=403))

        assert response.category == ErrorCategory.PERMISSION_DENIED
        assert response.severity == ErrorSeverity.MEDIUM
        assert response.retryable is False

    def test_permission_phrase(self):
        assert classify_error(Exception("Permission denied")).category == ErrorCategory.PERMISSION_DENIED

    def test_conflict(self):
        assert classify_error(RemoteStoreError("stale", status_code=409)).category == ErrorCategory.CONFLICT
        assert classify_error(ConflictResolutionError("already resolved")).category == ErrorCategory.CONFLICT

    def test_timeout(self):
        response = classify_error(httpx.ReadTimeout("read timed out"))

        assert response.category == ErrorCategory.TIMEOUT
        assert response.retryable is True

    def test_network(self):
        assert classify_error(httpx.ConnectError("connection refused")).category == ErrorCategory.NETWORK_ERROR
        assert classify_error(RemoteStoreError("503 Service Unavailable")).category == ErrorCategory.NETWORK_ERROR

    def test_unknown(self):
        response = classify_error(ValueError("something odd"))

        assert response.category == ErrorCategory.UNKNOWN
        assert response.code == ErrorCode.ERR_UNKNOWN

    def test_task_not_found_message(self):
        assert str(TaskNotFoundError("Task t1 not found in cache")) == "Task t1 not found in cache"
        assert isinstance(TaskNotFoundError("x"), KeyError)
