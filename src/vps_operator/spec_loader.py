"""Desired configuration loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ServerSpec

logger = logging.getLogger(__name__)

SPEC_SUFFIXES = (".yaml", ".yml")


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _format_validation_error(path: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def load_spec_file(spec_path: Path) -> ServerSpec:
    """Load and validate one server configuration file.

    Args:
        spec_path: Path to a YAML file.

    Returns:
        Validated desired configuration.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    # Kubernetes-style wrapper: apiVersion, kind, metadata, spec
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
        metadata = raw_data.get("metadata") or {}
        if "name" not in spec_data and isinstance(metadata, dict) and metadata.get("name"):
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    try:
        spec = ServerSpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(spec_path, e)) from e

    logger.info("Loaded spec for server '%s' from %s", spec.name, spec_path)
    return spec


def load_spec(specs_dir: Path, name: str) -> ServerSpec:
    """Load the configuration stored as ``<name>.yaml`` (or ``.yml``).

    Raises:
        SpecLoadError: If no such file exists or it fails validation.
    """
    for suffix in SPEC_SUFFIXES:
        candidate = specs_dir / f"{name}{suffix}"
        if candidate.exists():
            return load_spec_file(candidate)
    raise SpecLoadError(f"Spec file not found: {specs_dir / name}.yaml")


def load_all_specs(specs_dir: Path) -> dict[str, ServerSpec]:
    """Load every configuration in a directory, keyed by file stem.

    Raises:
        SpecLoadError: If the directory is missing or any file is invalid.
    """
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory not found: {specs_dir}")

    specs: dict[str, ServerSpec] = {}
    for path in sorted(specs_dir.iterdir()):
        if path.suffix not in SPEC_SUFFIXES or not path.is_file():
            continue
        if path.stem in specs:
            raise SpecLoadError(f"Duplicate spec name '{path.stem}' in {specs_dir}")
        specs[path.stem] = load_spec_file(path)
    return specs
