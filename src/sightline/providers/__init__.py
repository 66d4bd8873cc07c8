"""
Sightline Providers — the upstream inference boundary.

InferenceProvider defines the contract; OpenAIInferenceProvider is the
concrete implementation. Swap providers by changing config.
"""

from sightline.providers.base import InferenceProvider
from sightline.providers.registry import get_inference_provider

__all__ = [
    "InferenceProvider",
    "get_inference_provider",
]
