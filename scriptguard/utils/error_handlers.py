"""
Error envelope for every API answer: browser monitor, operator and health endpoints.
"""
from datetime import datetime
from typing import Dict, Any, Optional, Tuple

from flask import Flask, jsonify, request
from flask_jwt_extended import JWTManager
from marshmallow import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
import structlog

from scriptguard.utils.database import PersistenceError

logger = structlog.get_logger()


class ErrorCodes:
    """Standardized error codes for consistent client-side handling."""

    # Operator token errors
    TOKEN_EXPIRED = "AUTH_001"
    TOKEN_INVALID = "AUTH_002"
    INSUFFICIENT_PERMISSIONS = "AUTH_003"

    # Validation errors
    VALIDATION_ERROR = "VAL_001"

    # Resource errors
    RESOURCE_NOT_FOUND = "RES_001"
    RESOURCE_CONFLICT = "RES_002"

    # System errors
    DATABASE_ERROR = "SYS_001"
    RATE_LIMIT_EXCEEDED = "SYS_002"
    INTERNAL_ERROR = "SYS_003"

    # Monitoring errors
    MONITORING_DISABLED = "MON_001"
    PERSISTENCE_FAILED = "MON_002"


class APIException(Exception):
    """Custom exception for API errors with structured error information."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[Dict] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class APIResponse:
    """Standardized API response formatter."""

    @staticmethod
    def success(
        data: Any = None,
        message: Optional[str] = None,
        status_code: int = 200
    ) -> Tuple[Dict, int]:
        """Create standardized success response."""
        response = {
            "success": True,
            "timestamp": datetime.utcnow().isoformat() + "Z"
        }

        if data is not None:
            response["data"] = data
        if message:
            response["message"] = message

        return response, status_code

    @staticmethod
    def error(
        code: str,
        message: str,
        details: Optional[Dict] = None,
        status_code: int = 400
    ) -> Tuple[Dict, int]:
        """Create standardized error response."""
        response = {
            "success": False,
            "error": {
                "code": code,
                "message": message
            },
            "timestamp": datetime.utcnow().isoformat() + "Z"
        }

        if details:
            response["error"]["details"] = details

        return response, status_code


def register_error_handlers(app: Flask) -> None:
    """Register all error handlers with the Flask app."""

    @app.errorhandler(APIException)
    def handle_api_exception(error: APIException):
        """Client mistakes log as warnings, server faults as errors."""
        log = logger.warning if error.status_code < 500 else logger.error
        log(
            "API exception",
            error_code=error.code,
            message=error.message,
            details=error.details,
            endpoint=request.endpoint,
            method=request.method,
            user_agent=request.headers.get('User-Agent'),
            ip_address=request.remote_addr
        )

        return jsonify(APIResponse.error(
            error.code,
            error.message,
            error.details,
            error.status_code
        )[0]), error.status_code

    @app.errorhandler(ValidationError)
    def handle_validation_error(error: ValidationError):
        """Handle Marshmallow validation errors."""
        logger.warning(
            "Validation error occurred",
            validation_errors=error.messages,
            endpoint=request.endpoint
        )

        return jsonify(APIResponse.error(
            ErrorCodes.VALIDATION_ERROR,
            "Request validation failed",
            {"validation_errors": error.messages},
            422
        )[0]), 422

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error: SQLAlchemyError):
        """Handle database errors without exposing internal details."""
        logger.error(
            "Database error occurred",
            error_type=type(error).__name__,
            error_message=str(error),
            endpoint=request.endpoint,
            method=request.method
        )

        # Never expose database details to users
        return jsonify(APIResponse.error(
            ErrorCodes.DATABASE_ERROR,
            "A database error occurred. Please try again later.",
            status_code=500
        )[0]), 500

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        """Handle standard HTTP exceptions."""
        logger.warning(
            "HTTP exception occurred",
            status_code=error.code,
            description=error.description,
            endpoint=request.endpoint
        )

        status_code_mapping = {
            400: ErrorCodes.VALIDATION_ERROR,
            401: ErrorCodes.TOKEN_INVALID,
            403: ErrorCodes.INSUFFICIENT_PERMISSIONS,
            404: ErrorCodes.RESOURCE_NOT_FOUND,
            405: ErrorCodes.VALIDATION_ERROR,
            409: ErrorCodes.RESOURCE_CONFLICT,
            413: ErrorCodes.VALIDATION_ERROR,
            429: ErrorCodes.RATE_LIMIT_EXCEEDED,
        }

        code = status_code_mapping.get(error.code, ErrorCodes.INTERNAL_ERROR)

        return jsonify(APIResponse.error(
            code,
            error.description or "An error occurred",
            status_code=error.code
        )[0]), error.code

    @app.errorhandler(Exception)
    def handle_generic_exception(error: Exception):
        """Handle any unhandled exceptions."""
        logger.error(
            "Unhandled exception occurred",
            error_type=type(error).__name__,
            error_message=str(error),
            endpoint=request.endpoint,
            method=request.method,
            exc_info=True
        )

        # Never expose internal error details to users
        return jsonify(APIResponse.error(
            ErrorCodes.INTERNAL_ERROR,
            "An internal error occurred. Please try again later.",
            status_code=500
        )[0]), 500

    @app.errorhandler(PersistenceError)
    def handle_persistence_error(error: PersistenceError):
        """A compliance record was lost; surface it, never mask it."""
        logger.error(
            "Compliance record could not be persisted",
            record_type=error.record_type,
            error_message=str(error),
            endpoint=request.endpoint
        )

        return jsonify(APIResponse.error(
            ErrorCodes.PERSISTENCE_FAILED,
            "The compliance record could not be stored. Please try again later.",
            status_code=500
        )[0]), 500


def register_jwt_callbacks(jwt: JWTManager) -> None:
    """Render JWT failures inside the standard error envelope."""

    def _unauthorized(code: str, message: str, reason: str):
        logger.warning("JWT error occurred", reason=reason, endpoint=request.endpoint)
        return jsonify(APIResponse.error(code, message, status_code=401)[0]), 401

    @jwt.unauthorized_loader
    def missing_token(reason: str):
        return _unauthorized(ErrorCodes.TOKEN_INVALID, "Authorization header required", reason)

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        return _unauthorized(ErrorCodes.TOKEN_INVALID, "Invalid token", reason)

    @jwt.expired_token_loader
    def expired_token(jwt_header, jwt_payload):
        return _unauthorized(ErrorCodes.TOKEN_EXPIRED, "Token has expired", "expired")
