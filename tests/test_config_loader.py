"""Tests for config loader functionality."""

import os
import pytest
import tempfile
import yaml

from imspilot.libs.config_loader import load_configs, load_default_configs, get_config


def _write_yaml(data) -> str:
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        yaml.dump(data, f)
        return f.name


def test_load_single_config():
    """Test loading a single config file."""
    config_data = {
        "lms": {"base_url": "https://lms.example.org"},
        "logging": {"level": "DEBUG"}
    }
    temp_path = _write_yaml(config_data)

    try:
        result = load_configs(temp_path)
        assert result == config_data
    finally:
        os.unlink(temp_path)


def test_load_multiple_configs_merge():
    """Later files override scalars and extend nested sections."""
    config1 = {
        "openai": {"model": "gpt-4o-mini", "qps": 1},
        "exam": {"max_retries": 2}
    }
    config2 = {
        "openai": {"qps": 3},  # This should override
        "exam": {"pass_threshold": 90}  # This should be added
    }
    expected = {
        "openai": {"model": "gpt-4o-mini", "qps": 3},
        "exam": {"max_retries": 2, "pass_threshold": 90}
    }

    temp_path1 = _write_yaml(config1)
    temp_path2 = _write_yaml(config2)
    try:
        result = load_configs(temp_path1, temp_path2)
        assert result == expected
    finally:
        os.unlink(temp_path1)
        os.unlink(temp_path2)


def test_merge_replaces_dict_with_scalar():
    """A non-dict value replaces a whole section instead of merging into it."""
    temp_path1 = _write_yaml({"openai": {"pydantic_ai_settings": {"temperature": 0.2}}})
    temp_path2 = _write_yaml({"openai": {"pydantic_ai_settings": None}})
    try:
        result = load_configs(temp_path1, temp_path2)
        assert result == {"openai": {"pydantic_ai_settings": None}}
    finally:
        os.unlink(temp_path1)
        os.unlink(temp_path2)


def test_load_missing_file():
    """Test that missing files are skipped with warning."""
    config_data = {"lms": {"timeout_seconds": 5}}
    temp_path = _write_yaml(config_data)

    try:
        result = load_configs(temp_path, "nonexistent.yaml")
        assert result == config_data
    finally:
        os.unlink(temp_path)


def test_empty_file_is_skipped():
    """An empty YAML file contributes nothing."""
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        f.write("")
        empty_path = f.name
    temp_path = _write_yaml({"runner": {"concurrency": 2}})

    try:
        assert load_configs(temp_path, empty_path) == {"runner": {"concurrency": 2}}
    finally:
        os.unlink(empty_path)
        os.unlink(temp_path)


def test_no_configs_loaded():
    """Test that ValueError is raised when no configs are loaded."""
    with pytest.raises(ValueError, match="No configs loaded"):
        load_configs("nonexistent1.yaml", "nonexistent2.yaml")


def test_invalid_yaml_type():
    """Test that TypeError is raised for non-dict YAML."""
    with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
        f.write("just a string, not a dict")
        temp_path = f.name

    try:
        with pytest.raises(TypeError, match="must be a dict"):
            load_configs(temp_path)
    finally:
        os.unlink(temp_path)


def test_get_config():
    """Test getting config values by dot-separated key."""
    config = {
        "lms": {
            "base_url": "https://lms.example.org",
            "timeouts": {
                "connect": 5,
                "read": 20
            }
        },
        "logging": {"level": "INFO"}
    }

    assert get_config("lms.base_url", config) == "https://lms.example.org"
    assert get_config("lms.timeouts.connect", config) == 5
    assert get_config("lms.timeouts.read", config) == 20
    assert get_config("logging.level", config) == "INFO"

    with pytest.raises(KeyError):
        get_config("nonexistent.key", config)

    with pytest.raises(KeyError):
        get_config("lms.timeouts.nonexistent", config)

    with pytest.raises(KeyError):
        get_config("logging.level.deeper", config)


def test_get_config_default():
    """A default is returned instead of raising, including None and falsy values."""
    config = {"exam": {"max_retries": 0}}

    assert get_config("exam.max_retries", config, default=5) == 0
    assert get_config("exam.pass_threshold", config, default=100) == 100
    assert get_config("features.enable_exam", config, default=None) is None
    assert get_config("exam.max_retries.deeper", config, default="x") == "x"


def test_load_default_configs_integration():
    """The shipped config/default.yaml defines every section the runner reads."""
    config = load_default_configs()

    assert isinstance(config, dict)
    for section in ("lms", "openai", "runner", "exam", "features", "logging"):
        assert section in config
    assert get_config("exam.max_retries", config) >= 0
    assert get_config("openai.qps", config) >= 1
