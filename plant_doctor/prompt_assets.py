from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


DEFAULT_PROMPT_DIR = Path(__file__).resolve().parent / "prompts"

TEMPLATE_FILE = "leaf_analysis.txt"
EXAMPLES_FILE = "stage_examples.json"
EXAMPLES_SCHEMA_FILE = "stage_examples.schema.json"


class PromptAssetError(RuntimeError):
    pass


@dataclass(frozen=True)
class StageBand:
    stage: int
    label: str
    min_health: int
    max_health: int
    severity: str
    summary: str
    example: dict[str, Any]


@dataclass(frozen=True)
class PromptAssets:
    prompt_dir: Path
    version: str
    template: str
    user_instruction: str
    no_leaf_sentinel: dict[str, Any]
    stages: tuple[StageBand, ...]


def _read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PromptAssetError(f"Prompt asset missing: '{path}'") from exc
    except json.JSONDecodeError as exc:
        raise PromptAssetError(f"Invalid JSON in '{path}': {exc}") from exc
    if not isinstance(payload, dict):
        raise PromptAssetError(f"Expected object JSON in '{path}', got {type(payload).__name__}")
    return payload


def _validate_schema(payload: dict[str, Any], schema_path: Path) -> None:
    import jsonschema

    schema = _read_json(schema_path)
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        raise PromptAssetError(
            f"Schema validation failed for '{EXAMPLES_FILE}' with '{schema_path.name}': {exc.message}"
        ) from exc


def _validate_stage_bands(stages: list[StageBand]) -> list[str]:
    errors: list[str] = []
    seen = sorted(band.stage for band in stages)
    if seen != [0, 1, 2, 3]:
        errors.append(f"{EXAMPLES_FILE}: expected one entry per stage 0-3, got {seen}.")

    for band in stages:
        if band.min_health > band.max_health:
            errors.append(f"{EXAMPLES_FILE}: stage {band.stage} has min_health > max_health.")
        example_stage = band.example.get("stage")
        if example_stage != band.stage:
            errors.append(f"{EXAMPLES_FILE}: stage {band.stage} example declares stage {example_stage}.")
        health = band.example.get("healthPercentage")
        if isinstance(health, int) and not band.min_health <= health <= band.max_health:
            errors.append(
                f"{EXAMPLES_FILE}: stage {band.stage} example health {health} is outside "
                f"{band.min_health}-{band.max_health}."
            )
        if band.example.get("severity") != band.severity:
            errors.append(f"{EXAMPLES_FILE}: stage {band.stage} example severity does not match band.")
    return errors


def load_prompt_assets(prompt_dir: Path = DEFAULT_PROMPT_DIR) -> PromptAssets:
    template_path = prompt_dir / TEMPLATE_FILE
    try:
        template = template_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise PromptAssetError(f"Prompt asset missing: '{template_path}'") from exc

    payload = _read_json(prompt_dir / EXAMPLES_FILE)
    _validate_schema(payload, prompt_dir / EXAMPLES_SCHEMA_FILE)

    stages = [
        StageBand(
            stage=int(item["stage"]),
            label=str(item["label"]),
            min_health=int(item["min_health"]),
            max_health=int(item["max_health"]),
            severity=str(item["severity"]),
            summary=str(item["summary"]),
            example=dict(item["example"]),
        )
        for item in payload["stages"]
    ]
    errors = _validate_stage_bands(stages)
    if errors:
        raise PromptAssetError("Prompt asset validation failed:\n- " + "\n- ".join(errors))

    stages.sort(key=lambda band: band.stage)
    return PromptAssets(
        prompt_dir=prompt_dir,
        version=str(payload["version"]),
        template=template,
        user_instruction=str(payload["user_instruction"]),
        no_leaf_sentinel=dict(payload["no_leaf_sentinel"]),
        stages=tuple(stages),
    )


def build_system_prompt(assets: PromptAssets) -> str:
    """Render the fixed instruction text sent as the system message.

    The worked examples are embedded verbatim; nothing in this package branches
    on their content.
    """
    stage_table = "\n".join(
        f"- Stage {band.stage} ({band.label}): {band.min_health}-{band.max_health}% health, "
        f'severity "{band.severity}". {band.summary}'
        for band in assets.stages
    )
    stage_examples = "\n\n".join(
        f"STAGE {band.stage} ({band.label.upper()}) EXAMPLE:\n{json.dumps(band.example, indent=2)}"
        for band in assets.stages
    )
    return assets.template.format(
        no_leaf_sentinel=json.dumps(assets.no_leaf_sentinel, indent=2),
        stage_table=stage_table,
        stage_examples=stage_examples,
    ).strip()
