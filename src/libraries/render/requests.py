"""Validated request payload for starting a render job."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from .base import RenderValidationError

DEFAULT_ENGINE = "remotion"


class RenderStartRequest(BaseModel):
    """Parameters accepted by :meth:`RenderOrchestrator.start`."""

    content_id: str = Field(
        ..., description="Identity of the content (scenario) being rendered."
    )
    engine: str = Field(
        DEFAULT_ENGINE, description="Renderer/model used to produce the video."
    )
    composition: dict[str, Any] = Field(
        default_factory=dict,
        description="Content descriptor with ordered scenes and output settings.",
    )
    fps: int | None = Field(
        None,
        ge=1,
        le=240,
        description="Frame rate override; defaults to the descriptor's output.fps.",
    )
    duration_ms: int | None = Field(
        None,
        ge=0,
        description="Explicit total duration overriding the descriptor's scenes.",
    )
    project_id: str | None = Field(None, description="Owning project identifier.")
    owner_id: str | None = Field(None, description="Requesting user identifier.")
    credentials: dict[str, str] = Field(
        default_factory=dict,
        description="Short-lived secrets forwarded to the fleet; erased on completion.",
    )
    idempotency_key: str | None = Field(
        None,
        description="Caller supplied key; derived from the request when omitted.",
    )

    @field_validator("content_id", "engine", mode="before")
    @classmethod
    def _strip_required(cls, value: Any) -> str:
        text = str(value if value is not None else "").strip()
        if not text:
            raise ValueError("Value cannot be empty.")
        return text

    @field_validator("engine")
    @classmethod
    def _normalise_engine(cls, value: str) -> str:
        return value.lower()

    @field_validator("project_id", "owner_id", "idempotency_key", mode="before")
    @classmethod
    def _strip_optional(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @classmethod
    def parse(cls, data: Any) -> "RenderStartRequest":
        """Validate ``data`` and raise :class:`RenderValidationError` on failure."""

        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            problems = [
                {
                    "field": ".".join(str(part) for part in error["loc"]),
                    "message": error["msg"],
                }
                for error in exc.errors()
            ]
            summary = "; ".join(f"{item['field']}: {item['message']}" for item in problems)
            raise RenderValidationError(
                f"Invalid render request: {summary}",
                context={"errors": problems},
            ) from exc


__all__ = ["DEFAULT_ENGINE", "RenderStartRequest"]
