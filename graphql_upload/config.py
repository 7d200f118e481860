"""Config loading for graphql-upload.

Defines ``ProcessRequestOptions`` — the immutable limits value forwarded to the
multipart processor — and ``load_options()``, which reads it from
`.graphql_upload/config.yaml` (or `~/.graphql_upload/config.yaml`).
Raises SystemExit on parse errors or missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. GRAPHQL_UPLOAD_CONFIG environment variable (if set)
  3. `.graphql_upload/config.yaml` (working directory — for development)
  4. `~/.graphql_upload/config.yaml` (home directory — for production deployments)

File layout:

    version: 1
    upload:
      max_field_size: 1000000
      max_file_size: 10000000   # null = unbounded
      max_files: 10             # null = unbounded

Environment variable overrides (applied after the file, always win):
  GRAPHQL_UPLOAD_MAX_FIELD_SIZE, GRAPHQL_UPLOAD_MAX_FILE_SIZE,
  GRAPHQL_UPLOAD_MAX_FILES
"""

from __future__ import annotations

import math
import os
import sys
from dataclasses import dataclass, replace
from typing import Any, Optional

import yaml

from graphql_upload.constants import DEFAULT_MAX_FIELD_SIZE, DEFAULT_MAX_FILE_SIZE, DEFAULT_MAX_FILES
from graphql_upload.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (GRAPHQL_UPLOAD_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".graphql_upload/config.yaml",
    os.path.expanduser("~/.graphql_upload/config.yaml"),
]

# Option name → environment variable overriding it.
ENV_OVERRIDES: dict[str, str] = {
    "max_field_size": "GRAPHQL_UPLOAD_MAX_FIELD_SIZE",
    "max_file_size": "GRAPHQL_UPLOAD_MAX_FILE_SIZE",
    "max_files": "GRAPHQL_UPLOAD_MAX_FILES",
}


# ─── Options ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ProcessRequestOptions:
    """Limits enforced by the multipart processor.

    max_field_size: Maximum allowed non-file multipart form field size in
                    bytes; enough for your queries. Defaults to 1 MB.
    max_file_size:  Maximum allowed file size in bytes. Defaults to unbounded.
    max_files:      Maximum allowed number of files. Defaults to unbounded.

    The middleware forwards the instance to the processor unchanged.
    """

    max_field_size: int = DEFAULT_MAX_FIELD_SIZE
    max_file_size: float = DEFAULT_MAX_FILE_SIZE
    max_files: float = DEFAULT_MAX_FILES

    def __post_init__(self) -> None:
        for name in ("max_field_size", "max_file_size", "max_files"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"{name} must be a number, not {value!r}")
            if value < 0 or math.isnan(value):
                raise ValueError(f"{name} must be non-negative, not {value!r}")

    @classmethod
    def defaults(cls) -> "ProcessRequestOptions":
        """Return the default limits (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict) -> "ProcessRequestOptions":
        """Construct options from the ``upload`` section of a parsed config.

        ``None`` values mean unbounded for the file limits; unknown keys are
        silently ignored.

        Raises:
            SystemExit(1): On a non-numeric or negative limit.
        """
        values: dict[str, Any] = {}
        if "max_field_size" in raw:
            values["max_field_size"] = raw["max_field_size"]
        for name in ("max_file_size", "max_files"):
            if name in raw:
                values[name] = math.inf if raw[name] is None else raw[name]
        try:
            return cls(**values)
        except ValueError as exc:
            print(f"CONFIG ERROR: Invalid upload limits: {exc}", file=sys.stderr)
            raise SystemExit(1)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_options(config_path: Optional[str] = None) -> ProcessRequestOptions:
    """Load and validate upload limits.

    If no file is found at any of the search paths, returns default options
    (not an error). If a file is found but invalid, writes the error to stderr
    and raises SystemExit(1). Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field,
                       unsupported version, invalid limit, or invalid
                       override environment variable.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("GRAPHQL_UPLOAD_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.debug("No config file found — using defaults", searched=search_paths)
        return _apply_env_overrides(ProcessRequestOptions.defaults())

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.debug("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = (
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "Check the YAML syntax and try again."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    except OSError as exc:
        print(f"CONFIG ERROR: Could not read {found_path}: {exc}", file=sys.stderr)
        raise SystemExit(1)

    if not isinstance(raw, dict):
        if raw is None:
            msg = (
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        else:
            msg = (
                f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
                "The config file must be a YAML dictionary at the top level."
            )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        msg = (
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if version not in SUPPORTED_VERSIONS:
        msg = (
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    upload_raw = raw.get("upload") or {}
    if not isinstance(upload_raw, dict):
        print(f"CONFIG ERROR: 'upload' in {found_path} must be a mapping.", file=sys.stderr)
        raise SystemExit(1)

    options = _apply_env_overrides(ProcessRequestOptions.from_dict(upload_raw))

    logger.debug(
        "Config loaded",
        path=found_path,
        version=version,
        max_field_size=options.max_field_size,
        max_file_size=options.max_file_size,
        max_files=options.max_files,
    )
    return options


def _apply_env_overrides(options: ProcessRequestOptions) -> ProcessRequestOptions:
    """Return ``options`` with environment variable overrides applied.

    Raises:
        SystemExit(1): If an override is set but is not a non-negative integer.
    """
    overrides: dict[str, int] = {}
    for name, env_name in ENV_OVERRIDES.items():
        env_value = os.environ.get(env_name)
        if env_value is None:
            continue
        try:
            value = int(env_value)
        except ValueError:
            value = -1
        if value < 0:
            msg = (
                f"CONFIG ERROR: {env_name} environment variable is not a valid "
                f"non-negative integer: '{env_value}'"
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)
        overrides[name] = value

    return replace(options, **overrides) if overrides else options
