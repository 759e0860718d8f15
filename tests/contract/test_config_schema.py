from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import pytest
import yaml

from bulkupload.config.loader import DOMAIN_SCHEMA_PATH, SETTINGS_SCHEMA_PATH, available_domains, load_settings
from bulkupload.models.config_models import Settings

REPO_ROOT = Path(__file__).resolve().parents[2]


def _schema(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def test_example_settings_match_defaults():
    example = REPO_ROOT / "config" / "upload.example.yml"
    jsonschema.validate(yaml.safe_load(example.read_text(encoding="utf-8")), _schema(SETTINGS_SCHEMA_PATH))
    assert load_settings(example) == Settings()


@pytest.mark.parametrize("name", available_domains())
def test_bundled_domains_match_schema(name):
    path = DOMAIN_SCHEMA_PATH.parent / "domains" / f"{name}.yml"
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    jsonschema.validate(data, _schema(DOMAIN_SCHEMA_PATH))
    assert data["name"] == name


def test_settings_schema_rejects_unknown_keys():
    with pytest.raises(jsonschema.ValidationError):
        jsonschema.validate({"submission": {"retries": 3}}, _schema(SETTINGS_SCHEMA_PATH))
