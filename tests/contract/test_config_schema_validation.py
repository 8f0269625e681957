from __future__ import annotations

import json
import pathlib

import jsonschema
import pytest
import yaml
from jsonschema.exceptions import ValidationError

from dealer_ingest.config.loader import SCHEMA_PATH

"""Config schema contract: the shipped config validates, typos do not."""

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]

pytestmark = pytest.mark.contract


@pytest.fixture(scope="module")
def schema() -> dict:
    return json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))


def test_shipped_config_is_valid(schema):
    data = yaml.safe_load((PROJECT_ROOT / "config" / "ingest.yml").read_text(encoding="utf-8"))
    jsonschema.validate(data, schema)


def test_test_config_is_valid(schema, sample_config_yaml):
    jsonschema.validate(yaml.safe_load(sample_config_yaml), schema)


@pytest.mark.parametrize(
    "data",
    [
        {"bulk": {"batchsize": 10}},
        {"bulk": {"batch_size": 0}},
        {"upload": {"allowed_extensions": ["csv"]}},
        {"database": {"schema": "Bad-Name"}},
        {"sheet_mappings": {}},
    ],
)
def test_invalid_configs_are_rejected(schema, data):
    with pytest.raises(ValidationError):
        jsonschema.validate(data, schema)
