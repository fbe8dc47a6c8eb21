"""Configuration groups owned by the scenario generator."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

from .completion import CompletionClient, OpenAICompatibleClient
from .generator import ScenarioGenerator
from .prompts import PromptLibrary

API_KEY_ENV = "ATP_COMPLETION_API_KEY"


class CompletionSettings(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    timeout: float = Field(default=60.0, gt=0)
    temperature: float = Field(default=0.2, ge=0, le=2)


class GenerationSettings(BaseModel):
    per_operation_limit: int = Field(default=5, ge=1)
    max_concurrency: int = Field(default=2, ge=1)
    max_retries: int = Field(default=2, ge=0)
    fallback: bool = True


def build_client(settings: CompletionSettings) -> OpenAICompatibleClient:
    return OpenAICompatibleClient(
        base_url=settings.base_url,
        model=settings.model,
        api_key=settings.api_key or os.environ.get(API_KEY_ENV),
        timeout=settings.timeout,
        temperature=settings.temperature,
    )


def build_generator(
    completion: CompletionSettings,
    generation: GenerationSettings,
    *,
    prompt_library: PromptLibrary | None = None,
    client: CompletionClient | None = None,
) -> ScenarioGenerator:
    return ScenarioGenerator(
        client or build_client(completion),
        prompt_library=prompt_library,
        per_operation_limit=generation.per_operation_limit,
        max_concurrency=generation.max_concurrency,
        max_retries=generation.max_retries,
        fallback=generation.fallback,
    )
