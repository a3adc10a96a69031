from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, Protocol

import httpx

from .errors import ProviderConfigurationError
from .gemini import GeminiClient, extract_output_image, output_extension
from .images import InlineImage, resolve_image_ref
from .models import GenerationContract, GenerationResult, StageEvent
from .settings import Settings
from .workflow import build_workflow_graph, resolve_model

logger = logging.getLogger(__name__)

# Stage name -> progress fraction reported to subscribers.
STAGE_REFERENCE_PREPROCESS = StageEvent(stage="REFERENCE_PREPROCESS", progress=0.2)
STAGE_SOURCE_FEATURE_EXTRACTION = StageEvent(stage="SOURCE_FEATURE_EXTRACTION", progress=0.45)
STAGE_DIFFUSION_SAMPLING = StageEvent(stage="DIFFUSION_SAMPLING", progress=0.75)
STAGE_OUTPUT_RENDER = StageEvent(stage="OUTPUT_RENDER", progress=1.0)

FEATURE_HINTS: dict[str, str] = {
    "FACE": "Preserve identity and facial consistency.",
    "STYLE": "Transfer visual style, color language, and rendering tone.",
    "MATERIAL": "Transfer material and texture fidelity.",
    "COMPONENT": "Transfer specific components or accessories.",
}


class StageSink(Protocol):
    """Receives stage events while a generation run progresses."""

    def report(self, event: StageEvent) -> None: ...


class _CallableSink:
    def __init__(self, fn: Callable[[StageEvent], None]) -> None:
        self._fn = fn

    def report(self, event: StageEvent) -> None:
        self._fn(event)


class _NullSink:
    def report(self, event: StageEvent) -> None:
        return None


def _as_sink(on_stage: StageSink | Callable[[StageEvent], None] | None) -> StageSink:
    if on_stage is None:
        return _NullSink()
    if hasattr(on_stage, "report"):
        return on_stage  # type: ignore[return-value]
    return _CallableSink(on_stage)  # type: ignore[arg-type]


def build_system_prompt(contract: GenerationContract) -> str:
    source_hints = [
        f"Source {index}: type={source.feature_type}, weight={source.weight:.2f}. "
        f"{FEATURE_HINTS[source.feature_type]}"
        for index, source in enumerate(contract.sources)
    ]
    return "\n".join(
        [
            "You are a multi-reference image editing and generation engine.",
            "Apply strong composition constraints from Reference image.",
            "Apply weighted multi-source feature fusion from Source images.",
            "Keep scene physically coherent with minimal artifacts.",
            "If conflicts happen, prioritize higher weight source features.",
            "",
            "Feature plan:",
            *source_hints,
        ]
    )


def build_user_prompt(contract: GenerationContract) -> str:
    lines = [
        f"Task ID: {contract.task_id}",
        f"Reference weight: {contract.reference.weight:.2f}",
        *(
            f"Source {index} -> featureType={source.feature_type}, weight={source.weight:.2f}"
            for index, source in enumerate(contract.sources)
        ),
        "",
        f"User prompt: {contract.prompt}",
    ]
    if contract.negative_prompt:
        lines.append(f"Negative prompt: {contract.negative_prompt}")
    return "\n".join(lines)


def build_request_body(
    contract: GenerationContract,
    *,
    reference: InlineImage,
    sources: list[InlineImage],
) -> dict[str, Any]:
    """Assemble the single multimodal `generateContent` request.

    The reference image comes first; each source image follows in contract
    order, preceded by a text marker carrying its index.
    """
    parts: list[dict[str, Any]] = [
        {
            "text": "\n".join(
                [
                    "Reference image below is composition anchor.",
                    "Apply source image features with weighted fusion.",
                    "",
                    build_user_prompt(contract),
                ]
            )
        },
        {"text": "Reference image"},
        _inline_part(reference),
    ]
    for index, image in enumerate(sources):
        parts.append({"text": f"Source {index} image"})
        parts.append(_inline_part(image))

    return {
        "system_instruction": {"parts": [{"text": build_system_prompt(contract)}]},
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
    }


def _inline_part(image: InlineImage) -> dict[str, Any]:
    return {"inline_data": {"mime_type": image.mime_type, "data": image.to_base64()}}


class DualTrackExecutor:
    """Runs one generation contract against the provider, start to finish."""

    def __init__(
        self,
        *,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self.http_client is not None:
            yield self.http_client
            return
        async with httpx.AsyncClient(timeout=self.settings.provider_timeout_s) as client:
            yield client

    async def run(
        self,
        contract: GenerationContract,
        *,
        on_stage: StageSink | Callable[[StageEvent], None] | None = None,
    ) -> GenerationResult:
        api_key = self.settings.gemini_api_key.strip()
        if not api_key:
            raise ProviderConfigurationError("Missing GEMINI_API_KEY environment variable.")

        sink = _as_sink(on_stage)
        model = resolve_model(contract, self.settings.gemini_model)
        workflow_graph = build_workflow_graph(contract, default_model=self.settings.gemini_model)
        warnings: list[str] = []
        out_of_range = workflow_graph.prompt_indexing.out_of_range
        if out_of_range:
            warnings.append(
                "Prompt references out-of-range source indexes: "
                + ", ".join(str(index) for index in out_of_range)
            )

        gemini = GeminiClient(
            api_key=api_key,
            base_url=self.settings.gemini_api_base_url,
            timeout_s=self.settings.provider_timeout_s,
        )
        async with self._client() as client:
            sink.report(STAGE_REFERENCE_PREPROCESS)
            reference = await resolve_image_ref(contract.reference.image_ref, client=client)

            sink.report(STAGE_SOURCE_FEATURE_EXTRACTION)
            # Resolved one at a time, in `[Source k]` index order.
            sources: list[InlineImage] = []
            for source in contract.sources:
                sources.append(await resolve_image_ref(source.image_ref, client=client))

            sink.report(STAGE_DIFFUSION_SAMPLING)
            body = build_request_body(contract, reference=reference, sources=sources)
            logger.info(
                "generation event=provider_call task_id=%s model=%s sources=%d",
                contract.task_id,
                model,
                len(sources),
            )
            result_json = await gemini.generate_content(model=model, body=body, client=client)

        output = extract_output_image(result_json)
        sink.report(STAGE_OUTPUT_RENDER)
        return GenerationResult(
            output_bytes=output.data,
            output_mime_type=output.mime_type,
            output_extension=output_extension(output.mime_type),
            workflow_graph=workflow_graph,
            warnings=warnings,
        )


async def run_dual_track_generation(
    contract: GenerationContract,
    *,
    settings: Settings,
    on_stage: StageSink | Callable[[StageEvent], None] | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> GenerationResult:
    executor = DualTrackExecutor(settings=settings, http_client=http_client)
    return await executor.run(contract, on_stage=on_stage)
