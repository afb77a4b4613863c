"""Ec2Instance manifest loading with validation.

File reads are bounded in size and parsed with yaml.safe_load. Validation
errors are reported per field.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .models import API_GROUP, API_VERSION, KIND, Ec2Instance

logger = logging.getLogger(__name__)

MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest


class ManifestLoadError(Exception):
    """Raised when a manifest cannot be loaded or fails validation."""

    pass


def load_manifest(path: Path) -> Ec2Instance:
    """Load and validate an Ec2Instance manifest from YAML.

    Args:
        path: Path to the manifest file.

    Returns:
        Validated Ec2Instance.

    Raises:
        ManifestLoadError: If the manifest cannot be loaded or fails validation.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest must contain a YAML mapping: {path}")

    expected_api_version = f"{API_GROUP}/{API_VERSION}"
    api_version = raw_data.get("apiVersion")
    if api_version != expected_api_version:
        raise ManifestLoadError(
            f"apiVersion must be '{expected_api_version}', got {api_version!r}: {path}"
        )
    if raw_data.get("kind") != KIND:
        raise ManifestLoadError(f"kind must be '{KIND}', got {raw_data.get('kind')!r}: {path}")

    try:
        instance = Ec2Instance.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ManifestLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded manifest for '%s' from %s", instance.key, path)
    return instance
