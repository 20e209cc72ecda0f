"""
Unit tests for core.yaml module.

Tests:
- Loading a mapping
- Empty files
- Missing files, invalid YAML and non-mapping documents
- safe_load refuses Python object tags
"""

import pytest

from obscur.core.exceptions import ConfigurationError
from obscur.core.yaml import load_yaml


class TestLoadYaml:
    """load_yaml()."""

    def test_mapping(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("relays:\n  - wss://a.example.com\nretry:\n  max_retries: 2\n")
        assert load_yaml(path) == {
            "relays": ["wss://a.example.com"],
            "retry": {"max_retries": 2},
        }

    def test_accepts_str_path(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("a: 1\n")
        assert load_yaml(str(path)) == {"a": 1}

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_yaml(path) == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_yaml(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("a: [1, 2\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_yaml(path)

    def test_list_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_yaml(path)

    def test_python_tags_rejected(self, tmp_path):
        path = tmp_path / "evil.yaml"
        path.write_text("x: !!python/object/apply:os.system ['true']\n")
        with pytest.raises(ConfigurationError):
            load_yaml(path)
