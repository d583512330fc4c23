"""Desired-state document loading with validation.

SECURITY: File reads enforce a size limit and use yaml.safe_load. Input
validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .kinds import KIND_REGISTRY, ResourceKind, get_kind

logger = logging.getLogger(__name__)

MAX_DOCUMENT_SIZE_BYTES = 1024 * 1024  # 1MB max document
SUPPORTED_API_VERSIONS = ("provisioner/v1",)


class SpecLoadError(Exception):
    """Raised when a desired-state document cannot be loaded or validated."""

    pass


class ResourceDocument(BaseModel):
    """Envelope around one declared resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    api_version: str = Field(alias="apiVersion")
    kind: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    spec: dict[str, Any]

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v not in SUPPORTED_API_VERSIONS:
            raise ValueError(f"apiVersion must be one of {list(SUPPORTED_API_VERSIONS)}")
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in KIND_REGISTRY:
            raise ValueError(f"kind must be one of {list(KIND_REGISTRY)}")
        return v

    @property
    def resource_kind(self) -> ResourceKind:
        return get_kind(self.kind)


def parse_document(data: Any, source: str = "<document>") -> ResourceDocument:
    """Validate an already-parsed document.

    Raises:
        SpecLoadError: If the document envelope or its spec is invalid.
    """
    if not isinstance(data, dict):
        raise SpecLoadError(f"{source}: document must be a mapping, got {type(data).__name__}")

    try:
        document = ResourceDocument.model_validate(data)
        # Check the spec block against its kind now rather than mid-operation
        document.resource_kind.build_identity(document.spec)
    except ValidationError as e:
        raise SpecLoadError(f"{source}: validation failed:\n{e}") from e
    except ValueError as e:
        raise SpecLoadError(f"{source}: {e}") from e

    return document


def load_document(path: Path) -> ResourceDocument:
    """Load a desired-state document from a YAML file.

    Raises:
        SpecLoadError: If the file is missing, too large, not YAML, or invalid.
    """
    if not path.is_file():
        raise SpecLoadError(f"Document not found: {path}")

    size = path.stat().st_size
    if size > MAX_DOCUMENT_SIZE_BYTES:
        raise SpecLoadError(
            f"Document {path} is {size} bytes, exceeding limit of {MAX_DOCUMENT_SIZE_BYTES}"
        )

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    document = parse_document(data, source=str(path))
    logger.info(
        "Loaded desired-state document",
        extra={"path": str(path), "kind": document.kind},
    )
    return document
