import pytest

from chorus.utils.schema_validation import (
    is_valid_against_schema,
    schema_errors,
    validate_against_schema,
)

SCHEMA = "pipeline_definition.schema.json"


@pytest.mark.unit
def test_minimal_definition_is_valid():
    payload = {
        "agents": [{"id": "a"}],
        "phases": [{"id": "p", "actions": [{"id": "x", "agent": "a", "prompt_template": "hi"}]}],
    }
    validate_against_schema(payload, SCHEMA)
    assert is_valid_against_schema(payload, SCHEMA)


@pytest.mark.unit
def test_errors_name_the_path():
    payload = {"agents": [{"id": "1bad"}], "phases": []}
    errors = schema_errors(payload, SCHEMA)

    assert any("agents/0/id" in e for e in errors)
    assert any("phases" in e for e in errors)
    assert not is_valid_against_schema(payload, SCHEMA)


@pytest.mark.unit
def test_invalid_binding_pattern():
    payload = {
        "agents": [{"id": "a"}],
        "phases": [{"id": "p", "actions": [
            {"id": "x", "agent": "a", "prompt_template": "hi", "outputs": ["elsewhere.key"]},
        ]}],
    }
    with pytest.raises(ValueError):
        validate_against_schema(payload, SCHEMA)


@pytest.mark.unit
def test_schema_path_cannot_escape():
    with pytest.raises(ValueError):
        schema_errors({}, "../config.py")


@pytest.mark.unit
def test_missing_schema():
    with pytest.raises(FileNotFoundError):
        schema_errors({}, "nope.schema.json")
