from stockledger.schemas.common import ErrorOut


_ERROR_EXAMPLES: dict[int, tuple[str, str]] = {
    400: ("unsupported_transaction_type", "Unsupported transaction type: TRANSFER"),
    404: ("batch_not_found", "Batch not found: batch-id"),
    409: ("duplicate_batch_number", "Batch number B-001 already exists for this medicine."),
    422: ("insufficient_stock", "Cannot Dispensed/Sold 12 units. Only 4 units available in batch B-001."),
    500: ("internal_error", "Internal server error"),
    503: ("stock_lock_timeout", "Timed out after 10s waiting for batch batch-id. Please retry."),
}


def error_responses(*status_codes: int) -> dict[int, dict]:
    responses: dict[int, dict] = {}
    for status_code in status_codes:
        code, message = _ERROR_EXAMPLES.get(status_code, ("http_error", "HTTP error"))
        responses[status_code] = {
            "model": ErrorOut,
            "description": message,
            "content": {
                "application/json": {
                    "example": {
                        "error": {
                            "code": code,
                            "message": message,
                            "request_id": "request-id",
                            "path": "/stock/transactions",
                            "details": None,
                        }
                    }
                }
            },
        }
    return responses
