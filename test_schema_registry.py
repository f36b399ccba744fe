"""
Tests for parameter schemas and validation.
"""

from datetime import date

import pytest

from conftest import CRAWLER, VALID_PARAMS, us_510k_schema
from regwatch.errors import NotFoundError, ValidationError
from regwatch.models import FieldType, ParamField, ParamSchema


@pytest.fixture
def registry(schemas):
    schemas.register(us_510k_schema())
    return schemas


def test_valid_params_have_no_errors(registry):
    assert registry.validate(CRAWLER, VALID_PARAMS) == {}


def test_missing_required_field(registry):
    errors = registry.validate(CRAWLER, {"maxRecords": 10})
    assert errors == {"deviceNames": "is required"}


def test_unknown_parameter_rejected(registry):
    errors = registry.validate(CRAWLER, {**VALID_PARAMS, "pageToken": "abc"})
    assert "pageToken" in errors


def test_type_and_bound_checks(registry):
    errors = registry.validate(CRAWLER, {
        "deviceNames": "skin analyzer",
        "maxRecords": -5,
        "batchSize": True,
        "mode": "partial",
    })
    assert errors["deviceNames"] == "must be a list of strings"
    assert errors["maxRecords"] == "must be >= -1"
    assert errors["batchSize"] == "must be an integer"
    assert "must be one of" in errors["mode"]


def test_string_list_minimum_length(registry):
    errors = registry.validate(CRAWLER, {"deviceNames": []})
    assert "at least 1" in errors["deviceNames"]


@pytest.mark.parametrize("value", ["20240105", "2024-01-05", date(2024, 1, 5)])
def test_date_formats_accepted(registry, value):
    assert registry.validate(CRAWLER, {**VALID_PARAMS, "dateFrom": value}) == {}


def test_bad_date_and_inverted_range(registry):
    assert "dateTo" in registry.validate(CRAWLER, {**VALID_PARAMS, "dateTo": "2024/01/05"})
    errors = registry.validate(CRAWLER, {**VALID_PARAMS, "dateFrom": "20240201", "dateTo": "20240101"})
    assert errors == {"dateFrom": "must not be after dateTo"}


def test_unknown_crawler(registry):
    assert "crawler_name" in registry.validate("KR_Recall", {})
    with pytest.raises(NotFoundError):
        registry.require("KR_Recall")


def test_check_raises_with_field_errors(registry):
    with pytest.raises(ValidationError) as excinfo:
        registry.check(CRAWLER, {})
    assert excinfo.value.field_errors == {"deviceNames": "is required"}
    assert "deviceNames" in str(excinfo.value)


def test_register_is_idempotent_per_name(registry):
    other = ParamSchema(crawler_name=CRAWLER, fields=[ParamField(name="only", type=FieldType.BOOL)])
    kept = registry.register(other)
    assert kept == us_510k_schema()
    assert len(registry.all()) == 1


def test_common_fields_added_once():
    schema = us_510k_schema()
    assert schema.field_names.count("maxRecords") == 1
    again = schema.with_common_fields()
    assert again.field_names == schema.field_names
    assert schema.field("batchSize").default == 100


def test_defaults_fill_omitted_parameters(registry):
    filled = registry.with_defaults(CRAWLER, {"deviceNames": ["skin analyzer"], "maxRecords": 10})
    assert filled == {"deviceNames": ["skin analyzer"], "maxRecords": 10, "batchSize": 100}

    filled = registry.with_defaults(CRAWLER, {"deviceNames": ["x"], "batchSize": None})
    assert filled["batchSize"] == 100
    assert filled["maxRecords"] == -1
    # fields without a default stay absent
    assert "recentDays" not in filled
    with pytest.raises(NotFoundError):
        registry.with_defaults("KR_Recall", {})
