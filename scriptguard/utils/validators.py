"""
Request validation using Marshmallow.
Browser-monitor bodies are camelCase; field names on the Python side are snake_case.
"""
from datetime import timezone
from functools import wraps
from urllib.parse import urlparse

from flask import request
from marshmallow import Schema, fields, validate, ValidationError, post_load, EXCLUDE
import structlog

from scriptguard.models.compliance_alert import ALERT_TYPES
from scriptguard.models.monitoring_log import CHECK_TYPES
from scriptguard.services.hash_engine import SUPPORTED_ALGORITHMS
from scriptguard.services.page_scanner import is_inline_id
from scriptguard.utils.error_handlers import APIException, ErrorCodes

logger = structlog.get_logger()

VIOLATION_TYPES = ('unauthorized-script', 'missing-sri-hash', 'invalid-sri-format')


def is_http_url(value: str) -> bool:
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


class BaseSchema(Schema):
    """Base schema with common validation methods."""

    class Meta:
        # The browser monitor may send fields we do not use
        unknown = EXCLUDE

    @post_load
    def strip_strings(self, data, **kwargs):
        """Strip whitespace from string fields."""
        for key, value in data.items():
            if isinstance(value, str):
                data[key] = value.strip()
        return data


class PageUrlField(fields.String):
    """Absolute http(s) URL."""

    def _validate(self, value, *args, **kwargs):
        super()._validate(value, *args, **kwargs)

        if value and not is_http_url(value.strip()):
            raise ValidationError("Must be an absolute http or https URL")


class ScriptUrlField(fields.String):
    """Script identifier: an absolute http(s) URL or an inline-script id."""

    def _validate(self, value, *args, **kwargs):
        super()._validate(value, *args, **kwargs)

        if value:
            value = value.strip()
            if not (is_http_url(value) or is_inline_id(value)):
                raise ValidationError("Must be an absolute http or https URL")


class UTCDateTime(fields.DateTime):
    """ISO datetime, stored as naive UTC like every timestamp column."""

    def _deserialize(self, value, attr, data, **kwargs):
        parsed = super()._deserialize(value, attr, data, **kwargs)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed


# Browser monitor schemas
class ValidateScriptSchema(BaseSchema):
    script_url = ScriptUrlField(
        data_key='scriptUrl',
        required=True,
        validate=validate.Length(min=1, max=2000),
        error_messages={'required': 'scriptUrl is required'}
    )


class ValidateScriptWithSRISchema(ValidateScriptSchema):
    integrity = fields.Str(load_default=None, allow_none=True, validate=validate.Length(max=1000))


class ReportScriptsSchema(BaseSchema):
    # Browsers may report data: or blob: sources, so items are plain strings
    scripts = fields.List(
        fields.Str(validate=validate.Length(min=1, max=2000)),
        required=True,
        validate=validate.Length(max=500)
    )
    page_url = PageUrlField(data_key='pageUrl', required=True, validate=validate.Length(max=2000))
    user_agent = fields.Str(data_key='userAgent', load_default=None, allow_none=True)
    timestamp = fields.Raw(load_default=None, allow_none=True)


class ReportViolationSchema(BaseSchema):
    violation_type = fields.Str(
        data_key='violationType',
        required=True,
        validate=validate.OneOf(VIOLATION_TYPES)
    )
    script_url = ScriptUrlField(data_key='scriptUrl', required=True, validate=validate.Length(min=1, max=2000))
    page_url = PageUrlField(data_key='pageUrl', required=True, validate=validate.Length(max=2000))
    user_agent = fields.Str(data_key='userAgent', load_default=None, allow_none=True)
    timestamp = fields.Raw(load_default=None, allow_none=True)


class CSPViolationSchema(BaseSchema):
    blocked_uri = fields.Str(data_key='blockedURI', load_default='', allow_none=True)
    violated_directive = fields.Str(data_key='violatedDirective', load_default='', allow_none=True)
    effective_directive = fields.Str(data_key='effectiveDirective', load_default='', allow_none=True)
    source_file = fields.Str(data_key='sourceFile', load_default='', allow_none=True)
    line_number = fields.Int(data_key='lineNumber', load_default=None, allow_none=True)
    column_number = fields.Int(data_key='columnNumber', load_default=None, allow_none=True)


class ReportCSPViolationSchema(BaseSchema):
    violation = fields.Nested(CSPViolationSchema, required=True)
    page_url = PageUrlField(data_key='pageUrl', required=True, validate=validate.Length(max=2000))
    user_agent = fields.Str(data_key='userAgent', load_default=None, allow_none=True)
    timestamp = fields.Raw(load_default=None, allow_none=True)


# Operator schemas
class RunCheckSchema(BaseSchema):
    page_url = PageUrlField(data_key='pageUrl', load_default=None, allow_none=True)
    check_type = fields.Str(
        data_key='checkType',
        load_default='manual',
        validate=validate.OneOf(CHECK_TYPES)
    )


class ReportQuerySchema(BaseSchema):
    from_date = UTCDateTime(data_key='from', load_default=None)
    to_date = UTCDateTime(data_key='to', load_default=None)


class DashboardQuerySchema(BaseSchema):
    days = fields.Int(load_default=30, validate=validate.Range(min=1, max=365))


class PaginationSchema(BaseSchema):
    page = fields.Int(load_default=1, validate=validate.Range(min=1))
    per_page = fields.Int(data_key='perPage', load_default=20, validate=validate.Range(min=1, max=100))


class AlertListQuerySchema(PaginationSchema):
    resolved = fields.Boolean(load_default=None, allow_none=True)
    alert_type = fields.Str(data_key='type', load_default=None, validate=validate.OneOf(ALERT_TYPES))


class LogListQuerySchema(PaginationSchema):
    unauthorized_only = fields.Boolean(data_key='unauthorizedOnly', load_default=False)


class SRIQuerySchema(BaseSchema):
    url = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=2000),
        error_messages={'required': 'url is required'}
    )
    algorithm = fields.Str(load_default='sha384', validate=validate.OneOf(SUPPORTED_ALGORITHMS))
    force = fields.Boolean(load_default=False)


def validate_json(schema_class: Schema):
    """
    Decorator for validating JSON request data.
    The validated dict is passed as the first positional argument.

    Args:
        schema_class: Marshmallow schema class for validation
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            json_data = request.get_json(silent=True)
            if json_data is None:
                raise APIException(
                    ErrorCodes.VALIDATION_ERROR,
                    "Request must contain valid JSON",
                    400
                )

            try:
                validated_data = schema_class().load(json_data)
            except ValidationError as err:
                logger.warning("Request validation failed", validation_errors=err.messages)
                raise APIException(
                    ErrorCodes.VALIDATION_ERROR,
                    "Request validation failed",
                    422,
                    {"validation_errors": err.messages}
                )

            return f(validated_data, *args, **kwargs)

        return decorated_function
    return decorator


def validate_optional_json(schema_class: Schema):
    """Like validate_json, but an empty body loads as {}."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            json_data = request.get_json(silent=True) or {}
            try:
                validated_data = schema_class().load(json_data)
            except ValidationError as err:
                logger.warning("Request validation failed", validation_errors=err.messages)
                raise APIException(
                    ErrorCodes.VALIDATION_ERROR,
                    "Request validation failed",
                    422,
                    {"validation_errors": err.messages}
                )

            return f(validated_data, *args, **kwargs)

        return decorated_function
    return decorator


def validate_query_params(schema_class: Schema):
    """
    Decorator for validating query parameters.

    Args:
        schema_class: Marshmallow schema class for validation
    """
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            try:
                validated_data = schema_class().load(request.args.to_dict())
            except ValidationError as err:
                logger.warning("Query parameter validation failed", validation_errors=err.messages)
                raise APIException(
                    ErrorCodes.VALIDATION_ERROR,
                    "Query parameter validation failed",
                    400,
                    {"validation_errors": err.messages}
                )

            return f(validated_data, *args, **kwargs)

        return decorated_function
    return decorator
