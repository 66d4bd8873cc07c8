"""
Provider Registry — factory function to get the inference provider by config.

Add a new provider? Just add an elif.
"""

from __future__ import annotations

import sightline.core.config as config_module
from sightline.providers.base import InferenceProvider


def get_inference_provider() -> InferenceProvider:
    provider = config_module.config.upstream.provider.lower()
    if provider == "openai":
        from sightline.providers.openai_inference import OpenAIInferenceProvider

        return OpenAIInferenceProvider()
    raise ValueError(f"Unknown inference provider: {provider}")
