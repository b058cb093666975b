"""
Kling endpoint mapping and payload normalization for the fal.ai queue.

The table is static: a (model_version, variant) pair either has a known queue
path or the request is rejected as a configuration error.
"""

from typing import Any, Optional

from services.generation.models import ErrorCode, GenerationError, GenerationInputs


# (model_version, variant) -> fal queue path
KLING_ENDPOINTS: dict[tuple[str, str], str] = {
    ("v2.6", "text-to-video"): "fal-ai/kling-video/v2.6/pro/text-to-video",
    ("v2.6", "image-to-video"): "fal-ai/kling-video/v2.6/pro/image-to-video",
    ("v2.6", "motion-control-standard"): "fal-ai/kling-video/v2.6/standard/motion-control",
    ("v2.6", "motion-control-pro"): "fal-ai/kling-video/v2.6/pro/motion-control",
    ("v2.5-turbo", "text-to-video-pro"): "fal-ai/kling-video/v2.5-turbo/pro/text-to-video",
    ("v2.5-turbo", "image-to-video-standard"): "fal-ai/kling-video/v2.5-turbo/standard/image-to-video",
    ("v2.5-turbo", "image-to-video-pro"): "fal-ai/kling-video/v2.5-turbo/pro/image-to-video",
    ("v2.1", "image-to-video-standard"): "fal-ai/kling-video/v2.1/standard/image-to-video",
    ("v2.1", "image-to-video-pro"): "fal-ai/kling-video/v2.1/pro/image-to-video",
}


class UnknownEndpoint(GenerationError):
    """No queue path is configured for a model version / variant pair."""

    def __init__(self, model_version: str, variant: str):
        self.model_version = model_version
        self.variant = variant
        super().__init__(
            f"No provider endpoint configured for {model_version}/{variant}",
            ErrorCode.INVALID_CONFIG,
            provider="fal",
        )


def resolve_endpoint(model_version: str, variant: str) -> str:
    """Return the fal queue path for a model, or raise UnknownEndpoint."""
    try:
        return KLING_ENDPOINTS[(model_version, variant)]
    except KeyError:
        raise UnknownEndpoint(model_version, variant) from None


def queue_status_url(queue_base: str, endpoint: str, request_id: str) -> str:
    return f"{queue_base}/{endpoint}/requests/{request_id}/status"


def queue_result_url(queue_base: str, endpoint: str, request_id: str) -> str:
    return f"{queue_base}/{endpoint}/requests/{request_id}"


def build_payload(inputs: GenerationInputs) -> dict[str, Any]:
    """
    Build the provider request body.

    Only non-empty fields are sent. Duration goes over the wire as a string;
    boolean flags are sent whenever they were set, including False.
    """
    payload: dict[str, Any] = {"prompt": inputs.prompt}

    optional_strings: list[tuple[str, Optional[str]]] = [
        ("image_url", inputs.image_url),
        ("tail_image_url", inputs.tail_image_url),
        ("video_url", inputs.video_url),
        ("aspect_ratio", inputs.aspect_ratio),
        ("character_orientation", inputs.character_orientation),
    ]
    for key, value in optional_strings:
        if value:
            payload[key] = value

    if inputs.duration:
        payload["duration"] = str(inputs.duration)

    if inputs.generate_audio is not None:
        payload["generate_audio"] = inputs.generate_audio

    if inputs.keep_original_sound is not None:
        payload["keep_original_sound"] = inputs.keep_original_sound

    return payload
