"""Pydantic request models for the Imaginator API.

Models
------
ImagineRequest
    Payload for ``POST /api/imagine``: the directive-annotated prompt and
    optional explicit generation options.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ImagineRequest(BaseModel):
    """Request body for the ``POST /api/imagine`` endpoint.

    Attributes:
        prompt: Prompt text, optionally annotated with inline directives
            such as ``--ar 16:9`` or ``--seed 42``.
        options: Explicit generation options.  They take precedence over
            directives parsed from the prompt.  Validated against
            :class:`~imaginator.core.service.GenerationOptions` by the
            service so that every malformed submission is reported the same
            way.
    """

    prompt: str = Field(
        ...,
        description="Prompt text with optional --directives.",
    )
    options: dict[str, Any] | None = Field(
        default=None,
        description="Explicit generation options (override prompt directives).",
    )
