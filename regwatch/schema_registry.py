"""
Parameter schema registry and validation.
"""

import copy
import logging
import re
import threading
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

from .errors import NotFoundError, ValidationError
from .models import FieldType, ParamField, ParamSchema

logger = logging.getLogger(__name__)

_COMPACT_DATE = re.compile(r"^\d{8}$")


def _parse_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    try:
        if _COMPACT_DATE.match(value):
            return datetime.strptime(value, "%Y%m%d").date()
        return date.fromisoformat(value)
    except ValueError:
        return None


def check_field(field: ParamField, value: Any) -> Optional[str]:
    """Return an error message for *value*, or None if it satisfies *field*."""
    if field.type == FieldType.INT:
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            return "must be an integer"
        if field.min_value is not None and value < field.min_value:
            return f"must be >= {field.min_value}"
        if field.max_value is not None and value > field.max_value:
            return f"must be <= {field.max_value}"
    elif field.type == FieldType.BOOL:
        if not isinstance(value, bool):
            return "must be a boolean"
    elif field.type == FieldType.DATE:
        if _parse_date(value) is None:
            return "must be a date (YYYY-MM-DD or YYYYMMDD)"
    elif field.type == FieldType.STRING_LIST:
        if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
            return "must be a list of strings"
        if field.min_value is not None and len(value) < field.min_value:
            return f"must contain at least {field.min_value} item(s)"
        if field.max_value is not None and len(value) > field.max_value:
            return f"must contain at most {field.max_value} item(s)"
        if field.choices:
            bad = [v for v in value if v not in field.choices]
            if bad:
                return f"invalid choice(s) {bad}, allowed: {field.choices}"
        return None
    else:
        if not isinstance(value, str):
            return "must be a string"
        if field.min_value is not None and len(value) < field.min_value:
            return f"must be at least {field.min_value} characters"
        if field.max_value is not None and len(value) > field.max_value:
            return f"must be at most {field.max_value} characters"

    if field.choices and value not in field.choices:
        return f"must be one of {field.choices}"
    return None


class SchemaRegistry:
    """Maps crawler name to its parameter schema."""

    def __init__(self):
        self._schemas: Dict[str, ParamSchema] = {}
        self._lock = threading.Lock()

    def register(self, schema: ParamSchema) -> ParamSchema:
        """Register a schema. Re-registering a name keeps the first schema."""
        with self._lock:
            existing = self._schemas.get(schema.crawler_name)
            if existing is not None:
                if existing != schema:
                    logger.warning(
                        f"Schema for '{schema.crawler_name}' already registered, keeping the original"
                    )
                return existing
            self._schemas[schema.crawler_name] = schema
        logger.debug(f"Registered schema: {schema.crawler_name} ({len(schema.fields)} fields)")
        return schema

    def get(self, crawler_name: str) -> Optional[ParamSchema]:
        return self._schemas.get(crawler_name)

    def require(self, crawler_name: str) -> ParamSchema:
        schema = self._schemas.get(crawler_name)
        if schema is None:
            raise NotFoundError("Crawler schema", crawler_name)
        return schema

    def all(self) -> List[ParamSchema]:
        return list(self._schemas.values())

    def __contains__(self, crawler_name: str) -> bool:
        return crawler_name in self._schemas

    def validate(self, crawler_name: str, params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        """Validate *params*; returns field errors (empty when valid)."""
        schema = self._schemas.get(crawler_name)
        if schema is None:
            return {"crawler_name": f"unknown crawler '{crawler_name}'"}

        params = params or {}
        errors: Dict[str, str] = {}

        for name in params:
            if schema.field(name) is None:
                errors[name] = "unknown parameter"

        for field in schema.fields:
            value = params.get(field.name)
            if value is None:
                if field.required:
                    errors[field.name] = "is required"
                continue
            message = check_field(field, value)
            if message:
                errors[field.name] = message

        date_from = _parse_date(params.get("dateFrom"))
        date_to = _parse_date(params.get("dateTo"))
        if date_from and date_to and date_from > date_to and "dateFrom" not in errors:
            errors["dateFrom"] = "must not be after dateTo"

        return errors

    def with_defaults(self, crawler_name: str, params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Return *params* with field defaults filled in for omitted parameters."""
        filled = dict(params or {})
        for field in self.require(crawler_name).fields:
            if field.default is not None and filled.get(field.name) is None:
                filled[field.name] = copy.deepcopy(field.default)
        return filled

    def check(self, crawler_name: str, params: Optional[Mapping[str, Any]]) -> None:
        """Raise ValidationError unless *params* are valid for *crawler_name*."""
        errors = self.validate(crawler_name, params)
        if errors:
            raise ValidationError(f"Invalid parameters for '{crawler_name}'", errors)
