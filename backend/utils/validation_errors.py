"""
Structured Error Responses

Standardized error bodies so the UI can tell a rejected row from a state
conflict or an outage.

Error Response Format:
{
    "error": "missing_parameter" | "invalid_parameter" | "validation_error" | <reconciliation error code>,
    "parameter": "transactionDate",
    "message": "transactionDate is required"
}
"""

from typing import Any, Dict, List, Optional


class ValidationErrorResponse:
    """Structured validation error response builder."""

    @staticmethod
    def missing_parameter(parameter: str, message: Optional[str] = None) -> dict:
        return {
            "error": "missing_parameter",
            "parameter": parameter,
            "message": message or f"{parameter} is required"
        }

    @staticmethod
    def invalid_parameter(parameter: str, message: str, value: Optional[Any] = None) -> dict:
        """
        Create an invalid parameter error response.

        Args:
            parameter: Name of the invalid parameter
            message: Description of the validation error
            value: The invalid value (optional, for debugging)

        Returns:
            Structured error dict
        """
        response = {
            "error": "invalid_parameter",
            "parameter": parameter,
            "message": message
        }
        if value is not None:
            response["received_value"] = str(value)[:100]  # Truncate for safety
        return response

    @staticmethod
    def validation_error(message: str, details: Optional[dict] = None) -> dict:
        response = {
            "error": "validation_error",
            "parameter": None,
            "message": message
        }
        if details:
            response["details"] = details
        return response


def request_validation_body(errors: List[Dict[str, Any]]) -> dict:
    """
    Collapse FastAPI/pydantic request validation errors into one structured body.

    The first error names the parameter; all errors are kept under details.
    """
    if not errors:
        return ValidationErrorResponse.validation_error("Invalid request")

    first = errors[0]
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    parameter = ".".join(location) or None

    if first.get("type") == "missing":
        body = ValidationErrorResponse.missing_parameter(parameter or "body")
    else:
        body = ValidationErrorResponse.invalid_parameter(parameter or "body", first.get("msg", "Invalid value"))

    body["details"] = [
        {
            "loc": [str(part) for part in e.get("loc", ())],
            "type": e.get("type"),
            "message": e.get("msg"),
        }
        for e in errors
    ]
    return body
