"""
Caching functionality for LLM responses.

Extends BaseDiskCache with generation-specific key generation and metadata.
Entries are shared by every provider in a use-case chain: a cached answer is
served no matter which backend produced it.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel

from devtrends.common.cache_utils import BaseDiskCache, hash_inputs
from devtrends.common.time_utils import current_timestamp

from .models import GenerationResult, ResponseType, TokenUsage


class ResponseCache(BaseDiskCache):
    """
    LLM response cache keyed by prompt, use case, system prompt and schema.

    Example:
        cache = ResponseCache("workspace/cache/llm", ttl=3600)
        key = cache.generate_cache_key(prompt, "batch_insight", schema)
        if cached := cache.get_response(key):
            return cached
        # ... call LLM ...
        cache.set_response(key, result)
    """

    def __init__(self, cache_dir: str = "workspace/cache/llm", ttl: int | None = None):
        """
        Args:
            cache_dir: Directory to store cache files
            ttl: Entry lifetime in seconds (None or 0 keeps entries until evicted)
        """
        super().__init__(cache_dir)
        self.ttl = ttl or None

    @staticmethod
    def generate_cache_key(
        prompt: str,
        use_case: str,
        schema: dict[str, Any] | None = None,
        system_prompt: str | None = None,
        kind: str = "json",
    ) -> str:
        """
        Generate a unique cache key.

        Args:
            prompt: The prompt text
            use_case: Routing use case (entries are not shared across use cases)
            schema: Optional JSON schema for structured output
            system_prompt: System prompt the output was generated under
            kind: "json" or "text"

        Returns:
            SHA256 hash as cache key
        """
        return hash_inputs(kind, use_case, prompt, system_prompt, schema)

    def get_response(self, cache_key: str) -> GenerationResult | None:
        """
        Cached result for a key, marked as ``ResponseType.CACHED``.

        Raises:
            CacheError: If the cache cannot be read
        """
        cached = self.get(cache_key)
        if not cached:
            return None

        return GenerationResult(
            response_type=ResponseType.CACHED,
            provider=cached["provider"],
            model=cached["model"],
            output=cached["output"],
            usage=TokenUsage(**cached.get("usage", {})),
        )

    def set_response(self, cache_key: str, result: GenerationResult) -> None:
        """
        Store a live result.

        Pydantic outputs are stored as plain JSON data; callers re-validate
        them with their response model on a hit.

        Raises:
            CacheError: If unable to write to cache
        """
        output = result.output
        if isinstance(output, BaseModel):
            output = output.model_dump(mode="json", by_alias=True)

        self.set(
            cache_key,
            {
                "output": output,
                "provider": result.provider,
                "model": result.model,
                "usage": result.usage.model_dump(),
                "cached_at": current_timestamp(),
            },
            expire=self.ttl,
        )


__all__ = ["ResponseCache"]
