"""
Video Generation Service

fal.ai queue access for Kling models and the PostgreSQL store that records
every job. All provider calls go through a circuit breaker.
"""

from .client import FalQueueClient, extract_video_url
from .endpoints import KLING_ENDPOINTS, UnknownEndpoint, build_payload, resolve_endpoint
from .store import GenerationStore

__all__ = [
    "FalQueueClient",
    "extract_video_url",
    "KLING_ENDPOINTS",
    "UnknownEndpoint",
    "build_payload",
    "resolve_endpoint",
    "GenerationStore",
]
