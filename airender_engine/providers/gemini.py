"""Gemini provider with Gemini API / Vertex AI Express fallback.

Two tiers are supported:

- ``pro`` (gemini-3-pro-image-preview): temperature 1.0, optional
  ``imageConfig`` with an output resolution tag and aspect-ratio hint.
- ``flash`` (gemini-2.5-flash-image): temperature 0.8, no image config; the
  reference image can be flattened toward grey before upload.

Each requested image is an independent pipeline that walks the enabled
endpoints in order until one returns an image. ``count > 1`` runs the
pipelines concurrently and joins them all-or-nothing.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from ..cancellation import CANCELLED, Cancelled, CancellationToken
from ..errors import AllEndpointsFailedError, MissingCredentialError, ParseError, TransportError, ValidationError
from ..imaging import adjust_contrast, clamp_contrast
from ..store.settings import Settings
from ..transport import HttpTransport, JsonResponse
from ..utils import b64encode
from .base import GenerateOutcome, GenerateResult, GenerationOptions
from .credentials import resolve_credentials
from .google_utils import (
    Endpoint,
    extract_error_message,
    extract_inline_image,
    extract_text,
    gemini_endpoint,
    model_for_tier,
    normalize_aspect_ratio,
    resolve_image_size_hint,
    vertex_endpoint,
)

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = "Stylize or render the reference image according to the following prompt: {prompt}"
PRO_TEMPERATURE = 1.0
FLASH_TEMPERATURE = 0.8

_JOIN_POLL_S = 0.1


@dataclass(frozen=True)
class _ImageOutcome:
    image: bytes
    mime_type: str
    endpoint: str
    request_id: str


class GeminiProvider:
    name = "gemini"
    requires_credential = True

    def __init__(
        self,
        settings_source: Callable[[], Settings],
        transport: HttpTransport | None = None,
    ) -> None:
        self._settings_source = settings_source
        self._transport = transport

    @property
    def transport(self) -> HttpTransport:
        if self._transport is None:
            self._transport = HttpTransport(proxy_source=lambda: self._settings_source().proxy_url)
        return self._transport

    def refresh_transport(self) -> None:
        self.transport.refresh()

    def endpoints(self, settings: Settings | None = None) -> list[Endpoint]:
        settings = settings or self._settings_source()
        credentials = resolve_credentials(settings)
        if not credentials.any:
            raise MissingCredentialError(
                "API key is not configured. Set GEMINI_API_KEY or enter an API key in settings."
            )
        endpoints: list[Endpoint] = []
        if settings.use_gemini_api and credentials.primary:
            endpoints.append(gemini_endpoint(credentials.primary))
        if settings.use_vertex_ai and credentials.secondary:
            endpoints.append(vertex_endpoint(credentials.secondary))
        if not endpoints:
            raise ValidationError("No enabled endpoint has an API key. Enable Gemini API or Vertex AI in settings.")
        return endpoints

    def generate(
        self,
        prompt: str,
        reference_image: bytes,
        count: int,
        width: int,
        height: int,
        token: CancellationToken,
        options: GenerationOptions | None = None,
    ) -> GenerateOutcome:
        options = options or GenerationOptions()
        if not str(prompt or "").strip():
            raise ValidationError("Prompt must not be empty.")
        total = int(count)
        if total < 1:
            raise ValidationError("Image count must be at least 1.")
        endpoints = self.endpoints()
        if token.cancelled:
            return CANCELLED

        warnings: list[str] = []
        model = model_for_tier(options.tier)
        image = reference_image
        contrast = clamp_contrast(options.contrast_adjust)
        preprocessed = False
        if not options.is_pro and contrast < 0:
            logger.info("Flash tier: applying contrast adjustment %d%%.", contrast)
            image = adjust_contrast(reference_image, contrast)
            preprocessed = image is not reference_image

        image_config = _image_config(options, warnings) if options.is_pro else {}
        bodies = {
            include_role: build_request_body(prompt, image, options, image_config, include_role=include_role)
            for include_role in {endpoint.requires_role for endpoint in endpoints}
        }
        logger.info(
            "Generating %d image(s) with %s via %s.",
            total,
            model,
            ", ".join(endpoint.name for endpoint in endpoints),
        )

        transport = self.transport

        def job(index: int, job_token: CancellationToken) -> _ImageOutcome | Cancelled:
            return _generate_one(
                transport=transport,
                endpoints=endpoints,
                model=model,
                bodies=bodies,
                token=job_token,
                index=index,
            )

        outcome = _run_all(total, job, token)
        if isinstance(outcome, Cancelled):
            return outcome
        metadata: dict[str, Any] = {
            "tier": options.tier,
            "endpoints": [item.endpoint for item in outcome],
            "mime_types": [item.mime_type for item in outcome],
            "preprocessed": preprocessed,
            "warnings": warnings,
        }
        if image_config:
            metadata["image_config"] = dict(image_config)
        return GenerateResult(
            images=[item.image for item in outcome],
            model=model,
            request_id=outcome[0].request_id,
            metadata=metadata,
        )


def _image_config(options: GenerationOptions, warnings: list[str]) -> dict[str, str]:
    config: dict[str, str] = {}
    if options.resolution:
        config["imageSize"] = resolve_image_size_hint(options.resolution)
    aspect_ratio = normalize_aspect_ratio(options.aspect_ratio, warnings)
    if aspect_ratio:
        config["aspectRatio"] = aspect_ratio
    return config


def build_request_body(
    prompt: str,
    image: bytes,
    options: GenerationOptions,
    image_config: Mapping[str, str] | None = None,
    *,
    include_role: bool,
) -> dict[str, Any]:
    parts: list[dict[str, Any]] = [
        {"text": PROMPT_TEMPLATE.format(prompt=prompt)},
        {"inline_data": {"mime_type": "image/png", "data": b64encode(image)}},
    ]
    content: dict[str, Any] = {"parts": parts}
    if include_role:
        content = {"role": "user", "parts": parts}
    generation_config: dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
    if options.is_pro:
        generation_config["temperature"] = PRO_TEMPERATURE
        if image_config:
            generation_config["imageConfig"] = dict(image_config)
    else:
        generation_config["temperature"] = FLASH_TEMPERATURE
    return {"contents": [content], "generationConfig": generation_config}


def _generate_one(
    *,
    transport: HttpTransport,
    endpoints: Sequence[Endpoint],
    model: str,
    bodies: Mapping[bool, Mapping[str, Any]],
    token: CancellationToken,
    index: int,
) -> _ImageOutcome | Cancelled:
    attempts: list[str] = []
    last_error: Exception | None = None
    for endpoint in endpoints:
        if token.cancelled:
            return CANCELLED
        try:
            response = transport.post_json(endpoint.url_for(model), bodies[endpoint.requires_role], token=token)
        except TransportError as exc:
            last_error = exc
        else:
            if isinstance(response, Cancelled):
                return response
            result = _image_from_response(endpoint, response)
            if isinstance(result, _ImageOutcome):
                logger.info("Image %d produced by %s.", index + 1, endpoint.name)
                return result
            last_error = result
        attempts.append(f"{endpoint.name}: {last_error}")
        logger.warning("Image %d: %s attempt failed: %s", index + 1, endpoint.name, last_error)
    raise AllEndpointsFailedError(
        f"Image {index + 1}: all endpoints failed ({'; '.join(attempts)})",
        attempts,
    ) from last_error


def _image_from_response(endpoint: Endpoint, response: JsonResponse) -> _ImageOutcome | Exception:
    if not response.ok:
        return TransportError(
            f"HTTP {response.status} - {extract_error_message(response.payload, response.raw)}",
            endpoint=endpoint.name,
            status=response.status,
        )
    found = extract_inline_image(response.payload)
    if found is None:
        text = extract_text(response.payload)
        detail = f" (text: {text[:100]})" if text else ""
        return ParseError(f"response contained no image{detail}", endpoint=endpoint.name)
    data, mime_type = found
    request_id = response.payload.get("responseId")
    return _ImageOutcome(
        image=data,
        mime_type=mime_type,
        endpoint=endpoint.name,
        request_id=str(request_id) if request_id else uuid.uuid4().hex[:8],
    )


def _run_all(
    count: int,
    job: Callable[[int, CancellationToken], _ImageOutcome | Cancelled],
    token: CancellationToken,
) -> list[_ImageOutcome] | Cancelled:
    """Run ``count`` jobs concurrently; results keep submission order.

    The first failure aborts the siblings and is re-raised. Cancellation of
    ``token`` returns ``CANCELLED`` without waiting for stragglers.
    """
    batch_token = token.child()
    if count == 1:
        try:
            single = job(0, batch_token)
        finally:
            batch_token.cancel()
        if isinstance(single, Cancelled) or token.cancelled:
            return CANCELLED
        return [single]

    executor = ThreadPoolExecutor(max_workers=count, thread_name_prefix="airender-gemini")
    futures: list[Future[_ImageOutcome | Cancelled]] = [
        executor.submit(job, idx, batch_token) for idx in range(count)
    ]
    try:
        pending = set(futures)
        while pending:
            done, pending = wait(pending, timeout=_JOIN_POLL_S, return_when=FIRST_COMPLETED)
            if token.cancelled:
                return CANCELLED
            for future in done:
                error = future.exception()
                if error is not None:
                    raise error
                if isinstance(future.result(), Cancelled):
                    return CANCELLED
        return [future.result() for future in futures]  # type: ignore[misc]
    finally:
        batch_token.cancel()
        executor.shutdown(wait=False, cancel_futures=True)
