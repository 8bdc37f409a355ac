"""Request bodies for the AI API (camelCase on the wire)."""

from __future__ import annotations

from typing import Literal

from pydantic import Field

from devtrends.common.types import CamelModel


class AskRequest(CamelModel):
    question: str
    session_id: str


class CreatePromptRequest(CamelModel):
    prompt_key: str = Field(min_length=1)
    content: str = Field(min_length=1)
    activate: bool = False


class UpdatePromptRequest(CamelModel):
    content: str = Field(min_length=1)


class ActivatePromptRequest(CamelModel):
    version: int


class CreateExperimentRequest(CamelModel):
    prompt_key: str = Field(min_length=1)
    version_a: int
    version_b: int
    target_sample_size: int = 100


class ExperimentActionRequest(CamelModel):
    action: Literal["cancel", "apply_winner"]


__all__ = [
    "AskRequest",
    "CreatePromptRequest",
    "UpdatePromptRequest",
    "ActivatePromptRequest",
    "CreateExperimentRequest",
    "ExperimentActionRequest",
]
