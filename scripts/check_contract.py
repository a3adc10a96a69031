from __future__ import annotations

import argparse
import asyncio
import json

from fusion_api.app.contracts import validate_generation_contract, validate_status_response
from fusion_api.app.executor import run_dual_track_generation
from fusion_api.app.settings import get_settings
from fusion_api.app.workflow import build_workflow_graph

DEMO_CONTRACT = {
    "taskId": "demo_check_task",
    "prompt": "Use [Reference] pose with [Source 0] texture and [Source 1] accessories",
    "negativePrompt": "blurry, low quality",
    "reference": {"imageRef": "https://example.com/reference.png", "weight": 0.9},
    "sources": [
        {
            "imageRef": "https://example.com/source-style.png",
            "featureType": "STYLE",
            "weight": 0.75,
        },
        {
            "imageRef": "https://example.com/source-component.png",
            "featureType": "COMPONENT",
            "weight": 0.65,
        },
    ],
}


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Validate a demo generation contract and optionally run it live."
    )
    parser.add_argument(
        "--contract",
        default=None,
        help="Path to a JSON contract file. Defaults to the built-in demo contract.",
    )
    parser.add_argument(
        "--remote",
        action="store_true",
        help="Call the configured Gemini endpoint (requires GEMINI_API_KEY).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    raw = DEMO_CONTRACT
    if args.contract:
        with open(args.contract, encoding="utf-8") as handle:
            raw = json.load(handle)

    settings = get_settings()
    contract = validate_generation_contract(raw)
    assert validate_generation_contract(contract.to_wire()) == contract

    status = validate_status_response({"taskId": contract.task_id, "status": "queued"})
    assert status.status == "QUEUED"
    assert status.error_code is None

    graph = build_workflow_graph(contract, default_model=settings.gemini_model)
    print(json.dumps(graph.to_wire(), indent=2))

    if args.remote:
        result = asyncio.run(run_dual_track_generation(contract, settings=settings))
        assert result.output_bytes
        print(
            f"remote ok mime={result.output_mime_type} ext={result.output_extension} "
            f"bytes={len(result.output_bytes)} warnings={result.warnings}"
        )

    print("check passed")


if __name__ == "__main__":
    main()
