"""Descriptive workflow graph for a dual-track generation run.

The graph explains how the reference and the sources are combined. It is
returned to callers for transparency and debugging only; the executor never
branches on it.
"""

from __future__ import annotations

from .contracts import extract_prompt_indexing
from .models import GenerationContract, WorkflowGraph, WorkflowNode, WorkflowSource

WORKFLOW_NAME = "MEIE-DualTrack-Gemini"
WORKFLOW_VERSION = "0.2.0"


def resolve_model(contract: GenerationContract, default_model: str) -> str:
    return contract.model or default_model


def build_workflow_graph(contract: GenerationContract, *, default_model: str) -> WorkflowGraph:
    model = resolve_model(contract, default_model)
    return WorkflowGraph(
        name=WORKFLOW_NAME,
        version=WORKFLOW_VERSION,
        model=model,
        prompt_indexing=extract_prompt_indexing(contract.prompt, len(contract.sources)),
        nodes=[
            WorkflowNode(
                id="reference",
                role="REFERENCE",
                engine_node="composition_constraint",
                weight=contract.reference.weight,
            ),
            WorkflowNode(
                id="feature-track",
                role="TRACK_B",
                engine_node="multi_source_feature_fusion",
                sources=[
                    WorkflowSource(
                        id=f"source-{index}",
                        index=index,
                        feature_type=source.feature_type,
                        weight=source.weight,
                    )
                    for index, source in enumerate(contract.sources)
                ],
            ),
            WorkflowNode(
                id="gemini-generate",
                role="MERGE",
                engine_node="generateContent",
                prompt=contract.prompt,
                negative_prompt=contract.negative_prompt,
                model=model,
            ),
        ],
    )
