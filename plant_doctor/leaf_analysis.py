from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Union

NO_LEAF_STAGE = -1
SEVERITY_BY_STAGE = {
    0: "none",
    1: "low",
    2: "medium",
    3: "high",
}

NO_LEAF_DAMAGE_TYPE = "No Leaf Found"
NO_LEAF_CATEGORY = "Invalid Image"
NO_LEAF_DESCRIPTION = (
    "No plant leaf detected in the uploaded image. "
    "Please upload a clear photo of a plant leaf for disease analysis."
)
UNKNOWN_LABEL = "Unknown"
GENERAL_CATEGORY = "General"


@dataclass(frozen=True)
class PlainDiseaseName:
    name: str


@dataclass(frozen=True)
class DetailedDisease:
    name: str
    description: str
    likelihood: int


DiseaseEntry = Union[PlainDiseaseName, DetailedDisease]


@dataclass(frozen=True)
class PossibleDisease:
    name: str
    description: str = ""
    likelihood: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "likelihood": self.likelihood,
        }


@dataclass(frozen=True)
class CauseInfo:
    disease: str
    cause: str
    explanation: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "disease": self.disease,
            "cause": self.cause,
            "explanation": self.explanation,
        }


@dataclass
class AnalysisResult:
    leaf_present: bool
    stage: int
    health_percentage: int
    severity: str
    category: str
    damage_type: str
    description: str
    primary_disease: str
    possible_diseases: list[PossibleDisease] = field(default_factory=list)
    causes: list[CauseInfo] = field(default_factory=list)
    care_tips: list[str] = field(default_factory=list)
    symptoms: list[str] = field(default_factory=list)
    detected_patterns: list[str] = field(default_factory=list)
    confidence: float = 0.0
    provider: str = ""
    cost: str = ""
    model: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "leafPresent": self.leaf_present,
            "noLeafDetected": not self.leaf_present,
            "stage": self.stage,
            "healthPercentage": self.health_percentage,
            "severity": self.severity,
            "category": self.category,
            "damageType": self.damage_type,
            "description": self.description,
            "primaryDisease": self.primary_disease,
            "possibleDiseases": [item.to_dict() for item in self.possible_diseases],
            "causes": [item.to_dict() for item in self.causes],
            "careTips": list(self.care_tips),
            "symptoms": list(self.symptoms),
            "detectedPatterns": list(self.detected_patterns),
            "confidence": self.confidence,
            "provider": self.provider,
            "cost": self.cost,
            "model": self.model,
        }


def stage_for_health(health_percentage: int) -> int:
    if health_percentage >= 90:
        return 0
    if health_percentage >= 70:
        return 1
    if health_percentage >= 45:
        return 2
    return 3


def health_condition(health_percentage: int) -> str:
    if health_percentage >= 90:
        return "Super Healthy"
    if health_percentage >= 70:
        return "Good"
    if health_percentage >= 45:
        return "At Risk"
    return "Critical"


def normalize_analysis(
    raw_payload: Any,
    *,
    provider: str = "",
    cost: str = "",
    model: str = "",
) -> AnalysisResult:
    """Coerce loosely-typed provider JSON into a fully defaulted ``AnalysisResult``.

    Never raises. Several upstream schemas are accepted (``leafFound``/``health``/
    ``diseases``/``tips`` as well as the canonical camelCase keys). For a
    leaf-present result, stage and severity are always re-derived from
    ``healthPercentage``; whatever the model said about them is discarded.
    """
    raw = raw_payload if isinstance(raw_payload, dict) else {}

    leaf_present = _leaf_present(raw)
    possible_diseases = [
        to_possible_disease(entry)
        for entry in (parse_disease_entry(item) for item in _as_list(_first_present(raw, "possibleDiseases", "diseases")))
        if entry is not None
    ]
    causes = [
        cause
        for cause in (_parse_cause(item) for item in _as_list(_first_present(raw, "causes", "rootCauses")))
        if cause is not None
    ]

    primary_disease = _as_text(_first_present(raw, "primaryDisease", "primary"))
    if not primary_disease and possible_diseases:
        primary_disease = possible_diseases[0].name

    result = AnalysisResult(
        leaf_present=leaf_present,
        stage=NO_LEAF_STAGE,
        health_percentage=0,
        severity="none",
        category=_as_text(_first_present(raw, "category", "primaryCategory")),
        damage_type=_as_text(_first_present(raw, "damageType", "damage")),
        description=_as_text(_first_present(raw, "description", "summary")),
        primary_disease=primary_disease,
        possible_diseases=possible_diseases,
        causes=causes,
        care_tips=_as_text_list(_first_present(raw, "careTips", "tips", "recommendations")),
        symptoms=_as_text_list(_first_present(raw, "symptoms", "detectedSymptoms")),
        detected_patterns=_as_text_list(raw.get("detectedPatterns")),
        confidence=_normalize_confidence(_first_present(raw, "confidence", "confidenceScore")),
        provider=provider or _as_text(raw.get("provider")),
        cost=cost or _as_text(raw.get("cost")),
        model=model or _as_text(raw.get("model")),
    )

    if not leaf_present:
        result.damage_type = result.damage_type or NO_LEAF_DAMAGE_TYPE
        result.category = result.category or NO_LEAF_CATEGORY
        result.description = result.description or NO_LEAF_DESCRIPTION
        result.primary_disease = result.primary_disease or NO_LEAF_DAMAGE_TYPE
        return result

    result.health_percentage = _normalize_percentage(_first_present(raw, "healthPercentage", "health"))
    result.stage = stage_for_health(result.health_percentage)
    result.severity = SEVERITY_BY_STAGE[result.stage]
    result.damage_type = result.damage_type or UNKNOWN_LABEL
    result.category = result.category or GENERAL_CATEGORY
    result.primary_disease = result.primary_disease or UNKNOWN_LABEL
    return result


def parse_disease_entry(item: Any) -> DiseaseEntry | None:
    if isinstance(item, str):
        name = item.strip()
        return PlainDiseaseName(name=name) if name else None

    if not isinstance(item, dict):
        return None

    name = _as_text(_first_present(item, "name", "disease", "diagnosis"))
    description = _as_text(item.get("description"))
    if not name and not description:
        return None
    return DetailedDisease(
        name=name or UNKNOWN_LABEL,
        description=description,
        likelihood=_normalize_likelihood(_first_present(item, "likelihood", "confidence")),
    )


def to_possible_disease(entry: DiseaseEntry) -> PossibleDisease:
    if isinstance(entry, DetailedDisease):
        return PossibleDisease(
            name=entry.name,
            description=entry.description,
            likelihood=entry.likelihood,
        )
    return PossibleDisease(name=entry.name)


def format_text_report(result: AnalysisResult) -> str:
    if result.possible_diseases:
        disease_lines = []
        for index, disease in enumerate(result.possible_diseases, start=1):
            line = f"{index}. {disease.name}"
            if disease.likelihood:
                line += f" ({disease.likelihood}% likely)"
            if disease.description:
                line += f" - {disease.description}"
            disease_lines.append(line)
        diseases = "\n".join(disease_lines)
    else:
        diseases = "N/A"

    causes = (
        "\n\n".join(
            f"{index}. {cause.disease}\n   Cause: {cause.cause}\n   Why: {cause.explanation}"
            for index, cause in enumerate(result.causes, start=1)
        )
        if result.causes
        else "N/A"
    )
    care = _numbered(result.care_tips) or "N/A"
    symptoms = _numbered(result.symptoms) or "None"
    patterns = ", ".join(result.detected_patterns) or "N/A"

    if result.leaf_present:
        health_line = f"Health Status: {result.health_percentage}% Healthy ({health_condition(result.health_percentage)})"
    else:
        health_line = "Health Status: N/A (no leaf detected)"

    return "\n".join(
        [
            "PLANT DISEASE ANALYSIS REPORT",
            "---------------------------------------",
            f"Primary Disease: {result.primary_disease or 'N/A'}",
            health_line,
            f"Stage: {result.stage}",
            f"Severity: {result.severity.upper()}",
            f"Category: {result.category or 'N/A'}",
            f"Confidence: {round(result.confidence * 100)}%",
            "",
            "Description:",
            result.description or "N/A",
            "",
            "Detected Symptoms:",
            symptoms,
            "",
            "POSSIBLE DISEASES:",
            diseases,
            "",
            "CAUSES:",
            causes,
            "",
            "RECOMMENDED ACTIONS:",
            care,
            "",
            f"Analyzed with: {result.provider or 'N/A'}",
            f"Detected patterns: {patterns}",
            "---------------------------------------",
        ]
    )


def _numbered(items: list[str]) -> str:
    return "\n".join(f"{index}. {item}" for index, item in enumerate(items, start=1))


def _leaf_present(raw: dict[str, Any]) -> bool:
    present = _as_bool(_first_present(raw, "leafPresent", "leafDetected", "leafFound"))
    if present is not None:
        return present
    absent = _as_bool(raw.get("noLeafDetected"))
    if absent is not None:
        return not absent
    return _as_number(raw.get("stage")) != NO_LEAF_STAGE


def _parse_cause(item: Any) -> CauseInfo | None:
    if isinstance(item, str):
        text = item.strip()
        return CauseInfo(disease="", cause=text, explanation="") if text else None
    if not isinstance(item, dict):
        return None
    cause = CauseInfo(
        disease=_as_text(item.get("disease")),
        cause=_as_text(item.get("cause")),
        explanation=_as_text(_first_present(item, "explanation", "why")),
    )
    if not (cause.disease or cause.cause or cause.explanation):
        return None
    return cause


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _as_text(value: Any, *, fallback: str = "") -> str:
    if value is None or isinstance(value, (dict, list)):
        return fallback
    try:
        text = str(value).strip()
    except ValueError:
        # int digit limit
        return fallback
    return text if text else fallback


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, (str, dict)):
        return [value]
    return []


def _as_text_list(value: Any) -> list[str]:
    items: list[str] = []
    for item in _as_list(value):
        text = _as_text(item)
        if text:
            items.append(text)
    return items


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return None


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        raw = value
    elif isinstance(value, str):
        raw = value.strip().rstrip("%").strip()
    else:
        return None
    try:
        number = float(raw)
    except (OverflowError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _normalize_percentage(value: Any) -> int:
    number = _as_number(value)
    if number is None:
        return 0
    return max(0, min(100, int(round(number))))


def _normalize_likelihood(value: Any) -> int:
    number = _as_number(value)
    if number is None:
        return 0
    if 0 < number < 1:
        number *= 100
    return max(0, min(100, int(round(number))))


def _normalize_confidence(value: Any) -> float:
    number = _as_number(value)
    if number is None:
        return 0.0
    if number > 1:
        number /= 100
    return round(max(0.0, min(1.0, number)), 4)
