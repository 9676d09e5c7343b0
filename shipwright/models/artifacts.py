"""Artifact and alias models (artifacts are immutable once pushed)."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """An immutable build output keyed by commit identifier.

    ``digest`` is the content address (``sha256:<hex>``) when the registry
    can compute one; docker-backed registries leave it empty.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    digest: str = ""
    size_bytes: int = 0
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    metadata: dict[str, Any] = {}


class Alias(BaseModel):
    """A mutable pointer (``latest``, a release tag) to one artifact key."""

    model_config = ConfigDict(frozen=True)

    name: str
    key: str
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ArtifactHandle(BaseModel):
    """Result of a successful pull: the artifact plus where it now lives.

    ``location`` is a filesystem path for the local registry and an image
    reference (``repo:key``) for docker registries.
    """

    model_config = ConfigDict(frozen=True)

    artifact: Artifact
    location: str
