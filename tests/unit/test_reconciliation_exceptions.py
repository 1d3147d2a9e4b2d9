from blueprint_sync.api.routes.reconciliation import _respond
from blueprint_sync.exceptions.reconciliation_exceptions import (
    ErrorCode,
    ReconciliationError,
    StorageWriteError,
    error_response,
)

SERVER_SIDE_CODES = {ErrorCode.STORAGE_READ_FAILED, ErrorCode.STORAGE_WRITE_FAILED, ErrorCode.INTERNAL_ERROR}


class TestErrorResponse:
    def test_details_are_merged_into_the_result(self):
        result = error_response(ErrorCode.NOT_FOUND_BACKUP, "Backup b1 not found", backupId="b1")

        assert result == {
            "success": False,
            "error": "Backup b1 not found",
            "errorCode": "NOT_FOUND_BACKUP",
            "backupId": "b1",
        }

    def test_storage_write_error_carries_its_key(self):
        error = StorageWriteError("Backup creation failed", key="backup-1")

        assert error.to_response() == {
            "success": False,
            "error": "Backup creation failed",
            "errorCode": "STORAGE_WRITE_FAILED",
            "entityId": "backup-1",
        }

    def test_code_can_be_overridden(self):
        error = ReconciliationError("nope", code=ErrorCode.OPERATION_NOT_ALLOWED)

        assert error.to_response()["errorCode"] == "OPERATION_NOT_ALLOWED"


class TestStatusMapping:
    def test_every_client_error_code_has_a_status(self):
        for code in ErrorCode:
            response = _respond(error_response(code, "failed"))
            if code in SERVER_SIDE_CODES:
                assert response.status_code == 500, code
            else:
                assert response.status_code in (400, 404, 409), code
