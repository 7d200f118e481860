"""Unit tests for graphql_upload/config.py — upload limits and config loading.

Covers:
  ProcessRequestOptions:
    - defaults: 1 MB field size, unbounded file size and count
    - frozen; rejects negative, NaN and non-numeric limits

  load_options():
    - missing config file → defaults, no exception
    - `upload:` section read from YAML; null means unbounded
    - missing / unsupported version, invalid YAML, non-mapping → SystemExit(1)
    - GRAPHQL_UPLOAD_CONFIG env var and GRAPHQL_UPLOAD_MAX_* overrides
"""

from __future__ import annotations

import dataclasses
import math
from typing import Any

import pytest

from graphql_upload.config import SUPPORTED_VERSIONS, ProcessRequestOptions, load_options


def _write(tmp_path: Any, text: str) -> str:
    config_file = tmp_path / "config.yaml"
    config_file.write_text(text)
    return str(config_file)


# ─── ProcessRequestOptions ────────────────────────────────────────────────────


class TestProcessRequestOptions:

    def test_defaults(self) -> None:
        options = ProcessRequestOptions()
        assert options.max_field_size == 1_000_000
        assert options.max_file_size == math.inf
        assert options.max_files == math.inf
        assert ProcessRequestOptions.defaults() == options

    def test_frozen(self) -> None:
        options = ProcessRequestOptions()
        with pytest.raises(dataclasses.FrozenInstanceError):
            options.max_files = 3  # type: ignore[misc]

    @pytest.mark.parametrize("field", ["max_field_size", "max_file_size", "max_files"])
    def test_negative_limit_rejected(self, field: str) -> None:
        with pytest.raises(ValueError, match=field):
            ProcessRequestOptions(**{field: -1})

    @pytest.mark.parametrize("value", ["10", None, True, float("nan")])
    def test_invalid_values_rejected(self, value: Any) -> None:
        with pytest.raises(ValueError):
            ProcessRequestOptions(max_files=value)

    def test_zero_is_allowed(self) -> None:
        assert ProcessRequestOptions(max_files=0).max_files == 0


# ─── Missing config file ──────────────────────────────────────────────────────


class TestMissingConfigFile:
    """A missing config file is NOT an error — defaults are returned."""

    def test_nonexistent_path_returns_defaults(self) -> None:
        options = load_options(config_path="/nonexistent/path/config.yaml")
        assert options == ProcessRequestOptions.defaults()

    def test_no_path_returns_defaults(self) -> None:
        assert load_options() == ProcessRequestOptions.defaults()


# ─── Valid config files ───────────────────────────────────────────────────────


class TestConfigFile:

    def test_upload_section(self, tmp_path: Any) -> None:
        path = _write(
            tmp_path,
            "version: 1\n"
            "upload:\n"
            "  max_field_size: 2048\n"
            "  max_file_size: 10000000\n"
            "  max_files: 5\n",
        )
        options = load_options(config_path=path)
        assert options == ProcessRequestOptions(max_field_size=2048, max_file_size=10_000_000, max_files=5)

    def test_version_only_gives_defaults(self, tmp_path: Any) -> None:
        assert load_options(config_path=_write(tmp_path, "version: 1\n")) == ProcessRequestOptions()

    def test_null_means_unbounded(self, tmp_path: Any) -> None:
        path = _write(tmp_path, "version: 1\nupload:\n  max_file_size: null\n  max_files: null\n")
        options = load_options(config_path=path)
        assert options.max_file_size == math.inf
        assert options.max_files == math.inf

    def test_unknown_keys_ignored(self, tmp_path: Any) -> None:
        path = _write(tmp_path, "version: 1\nupload:\n  max_files: 2\n  chunk_size: 10\n")
        assert load_options(config_path=path).max_files == 2

    def test_env_var_config_path(self, tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, "version: 1\nupload:\n  max_files: 7\n")
        monkeypatch.setenv("GRAPHQL_UPLOAD_CONFIG", path)
        assert load_options().max_files == 7

    def test_supported_versions(self) -> None:
        assert SUPPORTED_VERSIONS == frozenset({1})


# ─── Invalid config files ─────────────────────────────────────────────────────


class TestInvalidConfigFile:

    def test_missing_version(self, tmp_path: Any, capsys: pytest.CaptureFixture) -> None:
        path = _write(tmp_path, "upload:\n  max_files: 2\n")
        with pytest.raises(SystemExit) as exc_info:
            load_options(config_path=path)
        assert exc_info.value.code == 1
        captured = capsys.readouterr()
        assert "CONFIG ERROR" in captured.err
        assert "version" in captured.err

    def test_empty_file(self, tmp_path: Any) -> None:
        with pytest.raises(SystemExit) as exc_info:
            load_options(config_path=_write(tmp_path, ""))
        assert exc_info.value.code == 1

    def test_unsupported_version(self, tmp_path: Any, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit) as exc_info:
            load_options(config_path=_write(tmp_path, "version: 2\n"))
        assert exc_info.value.code == 1
        assert "Unsupported config version: 2" in capsys.readouterr().err

    def test_invalid_yaml(self, tmp_path: Any, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit) as exc_info:
            load_options(config_path=_write(tmp_path, "version: 1\nupload: [unclosed\n"))
        assert exc_info.value.code == 1
        assert "Failed to parse" in capsys.readouterr().err

    def test_top_level_not_mapping(self, tmp_path: Any) -> None:
        with pytest.raises(SystemExit):
            load_options(config_path=_write(tmp_path, "- version\n- 1\n"))

    def test_upload_not_mapping(self, tmp_path: Any) -> None:
        with pytest.raises(SystemExit):
            load_options(config_path=_write(tmp_path, "version: 1\nupload: 10\n"))

    def test_negative_limit(self, tmp_path: Any, capsys: pytest.CaptureFixture) -> None:
        with pytest.raises(SystemExit):
            load_options(config_path=_write(tmp_path, "version: 1\nupload:\n  max_files: -3\n"))
        assert "Invalid upload limits" in capsys.readouterr().err


# ─── Environment overrides ────────────────────────────────────────────────────


class TestEnvOverrides:

    def test_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GRAPHQL_UPLOAD_MAX_FILES", "3")
        monkeypatch.setenv("GRAPHQL_UPLOAD_MAX_FILE_SIZE", "1024")
        options = load_options()
        assert options.max_files == 3
        assert options.max_file_size == 1024

    def test_env_wins_over_file(self, tmp_path: Any, monkeypatch: pytest.MonkeyPatch) -> None:
        path = _write(tmp_path, "version: 1\nupload:\n  max_field_size: 100\n")
        monkeypatch.setenv("GRAPHQL_UPLOAD_MAX_FIELD_SIZE", "200")
        assert load_options(config_path=path).max_field_size == 200

    @pytest.mark.parametrize("value", ["lots", "-1", "1.5"])
    def test_invalid_override(self, value: str, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture) -> None:
        monkeypatch.setenv("GRAPHQL_UPLOAD_MAX_FILES", value)
        with pytest.raises(SystemExit) as exc_info:
            load_options()
        assert exc_info.value.code == 1
        assert "GRAPHQL_UPLOAD_MAX_FILES" in capsys.readouterr().err
