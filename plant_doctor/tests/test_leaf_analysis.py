from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from plant_doctor.leaf_analysis import (  # noqa: E402
    DetailedDisease,
    PlainDiseaseName,
    format_text_report,
    health_condition,
    normalize_analysis,
    parse_disease_entry,
    stage_for_health,
)


def _diseased_payload() -> dict:
    return {
        "leafDetected": True,
        "stage": 2,
        "damageType": "Moderate Fungal Infection",
        "healthPercentage": 55,
        "category": "Moderate Damage",
        "possibleDiseases": [
            {"name": "Fungal Leaf Spot", "description": "Brown spots with halos", "likelihood": 85},
            "Bacterial Soft Rot",
        ],
        "primaryDisease": "Fungal Leaf Spot",
        "confidence": 85,
        "severity": "medium",
        "description": "Brown circular spots across the leaf.",
        "causes": [
            {"disease": "Fungal Leaf Spot", "cause": "High humidity", "explanation": "Spores germinate on wet leaves"},
            "Overwatering",
        ],
        "careTips": ["Remove affected areas", "Improve air circulation"],
        "symptoms": ["Brown spots"],
        "detectedPatterns": ["Fungal infection patterns"],
    }


def test_inconsistent_healthy_input_is_forced_to_stage_zero():
    result = normalize_analysis({"healthPercentage": 95, "stage": 2, "severity": "medium"})

    assert result.leaf_present is True
    assert result.health_percentage == 95
    assert result.stage == 0
    assert result.severity == "none"


@pytest.mark.parametrize("health", [90, 91, 97, 100])
@pytest.mark.parametrize("claimed_stage, claimed_severity", [(3, "high"), (1, "low"), (2, "medium"), (-1, "none")])
def test_high_health_always_means_stage_zero(health, claimed_stage, claimed_severity):
    result = normalize_analysis(
        {
            "leafDetected": True,
            "healthPercentage": health,
            "stage": claimed_stage,
            "severity": claimed_severity,
        }
    )

    assert result.stage == 0
    assert result.severity == "none"


@pytest.mark.parametrize("health", [0, 12, 30, 44])
@pytest.mark.parametrize("claimed_stage, claimed_severity", [(0, "none"), (1, "low"), (2, "medium")])
def test_low_health_always_means_stage_three(health, claimed_stage, claimed_severity):
    result = normalize_analysis(
        {
            "noLeafDetected": False,
            "healthPercentage": health,
            "stage": claimed_stage,
            "severity": claimed_severity,
        }
    )

    assert result.stage == 3
    assert result.severity == "high"


def test_middle_bands_follow_health_percentage():
    assert stage_for_health(89) == 1
    assert stage_for_health(70) == 1
    assert stage_for_health(69) == 2
    assert stage_for_health(45) == 2

    result = normalize_analysis({"healthPercentage": 78, "stage": 3, "severity": "high"})
    assert (result.stage, result.severity) == (1, "low")


def test_missing_optional_fields_default_to_empty_sequences():
    result = normalize_analysis({"healthPercentage": 72})

    assert result.care_tips == []
    assert result.symptoms == []
    assert result.detected_patterns == []
    assert result.causes == []
    assert result.possible_diseases == []

    payload = result.to_dict()
    for key in ("careTips", "symptoms", "detectedPatterns", "causes", "possibleDiseases"):
        assert payload[key] == []
    for key in ("category", "damageType", "description", "primaryDisease"):
        assert isinstance(payload[key], str)


def test_normalization_is_idempotent():
    first = normalize_analysis(_diseased_payload(), provider="Groq Llama 4 Scout", cost="Free", model="scout")
    second = normalize_analysis(first.to_dict())

    assert second == first
    assert second.to_dict() == first.to_dict()

    # survives a JSON round trip as the rendering layer would see it
    third = normalize_analysis(json.loads(json.dumps(first.to_dict())))
    assert third == first


def test_no_leaf_normalization_is_idempotent():
    first = normalize_analysis({"leafDetected": False})
    assert normalize_analysis(first.to_dict()) == first


@pytest.mark.parametrize(
    "payload",
    [
        {"leafDetected": False},
        {"noLeafDetected": True, "healthPercentage": 0, "stage": -1},
        {"leafFound": False, "health": 0, "diseases": [], "causes": [], "tips": []},
        {"stage": -1},
    ],
)
def test_no_leaf_sentinel_variants(payload):
    result = normalize_analysis(payload)

    assert result.leaf_present is False
    assert result.stage == -1
    assert result.severity == "none"
    assert result.health_percentage == 0
    assert result.damage_type
    assert result.description
    assert result.to_dict()["noLeafDetected"] is True


def test_confidence_is_converted_to_unit_scale():
    assert normalize_analysis({"confidence": 85}).confidence == 0.85
    assert normalize_analysis({"confidence": 0.62}).confidence == 0.62
    assert normalize_analysis({"confidence": "98"}).confidence == 0.98
    assert normalize_analysis({"confidence": 250}).confidence == 1.0
    assert normalize_analysis({"confidence": -3}).confidence == 0.0
    assert normalize_analysis({}).confidence == 0.0


def test_wrong_field_types_are_coerced_without_raising():
    result = normalize_analysis(
        {
            "healthPercentage": "N/A",
            "stage": "Unknown",
            "damageType": 42,
            "category": None,
            "description": ["not", "a", "string"],
            "possibleDiseases": "Powdery Mildew",
            "causes": {"cause": "Dry air"},
            "careTips": ["Water weekly", 3, None, ""],
            "symptoms": "White powder",
            "detectedPatterns": 7,
            "confidence": {"value": 1},
        }
    )

    assert result.health_percentage == 0
    assert result.stage == 3
    assert result.damage_type == "42"
    assert result.category == "General"
    assert result.description == ""
    assert [item.name for item in result.possible_diseases] == ["Powdery Mildew"]
    assert result.primary_disease == "Powdery Mildew"
    assert result.causes[0].cause == "Dry air"
    assert result.care_tips == ["Water weekly", "3"]
    assert result.symptoms == ["White powder"]
    assert result.detected_patterns == []
    assert result.confidence == 0.0


@pytest.mark.parametrize("payload", [None, [], "text", 12, {"possibleDiseases": [None, 5, {}]}])
def test_non_object_payloads_never_raise(payload):
    result = normalize_analysis(payload)

    assert result.possible_diseases == []
    assert result.to_dict()["careTips"] == []


def test_huge_numbers_in_model_json_are_coerced_without_raising():
    huge = "1" + "0" * 400
    payload = json.loads(
        "{"
        f'"healthPercentage": {huge}, "confidence": {huge}, "stage": {huge}, '
        f'"possibleDiseases": [{{"name": "Rust", "likelihood": {huge}}}]'
        "}"
    )

    result = normalize_analysis(payload)

    assert result.leaf_present is True
    assert result.health_percentage == 0
    assert result.stage == 3
    assert result.confidence == 0.0
    assert result.possible_diseases[0].likelihood == 0


def test_overlong_integer_text_fields_fall_back_to_defaults():
    result = normalize_analysis({"healthPercentage": 80, "damageType": 10 ** 5000, "careTips": [10 ** 5000, "Water"]})

    assert isinstance(result.damage_type, str)
    assert result.care_tips[-1] == "Water"
    assert result.stage == 1


@pytest.mark.parametrize("likelihood", [0.8, "0.8", "0.8%"])
def test_fractional_likelihood_is_scaled_regardless_of_type(likelihood):
    entry = parse_disease_entry({"name": "Blight", "likelihood": likelihood})

    assert entry == DetailedDisease(name="Blight", description="", likelihood=80)


def test_disease_entries_collapse_into_one_shape():
    assert parse_disease_entry("  Root Rot ") == PlainDiseaseName(name="Root Rot")
    assert parse_disease_entry({"name": "Anthracnose", "likelihood": 0.7}) == DetailedDisease(
        name="Anthracnose",
        description="",
        likelihood=70,
    )
    assert parse_disease_entry({"description": "unnamed spots", "likelihood": 140}) == DetailedDisease(
        name="Unknown",
        description="unnamed spots",
        likelihood=100,
    )
    assert parse_disease_entry("") is None
    assert parse_disease_entry({}) is None

    result = normalize_analysis(_diseased_payload())
    assert [item.to_dict() for item in result.possible_diseases] == [
        {"name": "Fungal Leaf Spot", "description": "Brown spots with halos", "likelihood": 85},
        {"name": "Bacterial Soft Rot", "description": "", "likelihood": 0},
    ]
    assert result.causes[1].to_dict() == {"disease": "", "cause": "Overwatering", "explanation": ""}


def test_alternate_schema_keys_are_accepted():
    result = normalize_analysis(
        {
            "leafFound": True,
            "health": 81,
            "diseases": ["Early Blight"],
            "causes": ["Wet foliage"],
            "tips": ["Prune lower leaves"],
            "summary": "Small concentric lesions.",
        }
    )

    assert result.health_percentage == 81
    assert result.stage == 1
    assert result.primary_disease == "Early Blight"
    assert result.care_tips == ["Prune lower leaves"]
    assert result.description == "Small concentric lesions."


def test_provider_metadata_is_attached_by_normalizer():
    result = normalize_analysis({"healthPercentage": 60, "provider": "model-claimed"}, provider="Gemini 2.5 Flash", cost="Free tier")

    assert result.provider == "Gemini 2.5 Flash"
    assert result.cost == "Free tier"


def test_health_condition_labels():
    assert health_condition(95) == "Super Healthy"
    assert health_condition(75) == "Good"
    assert health_condition(50) == "At Risk"
    assert health_condition(10) == "Critical"


def test_format_text_report_lists_sections():
    report = format_text_report(normalize_analysis(_diseased_payload(), provider="Groq Llama 4 Scout"))

    assert report.startswith("PLANT DISEASE ANALYSIS REPORT")
    assert "Primary Disease: Fungal Leaf Spot" in report
    assert "Health Status: 55% Healthy (At Risk)" in report
    assert "1. Fungal Leaf Spot (85% likely) - Brown spots with halos" in report
    assert "   Cause: High humidity" in report
    assert "2. Improve air circulation" in report
    assert "Analyzed with: Groq Llama 4 Scout" in report


def test_format_text_report_for_missing_leaf():
    report = format_text_report(normalize_analysis({"noLeafDetected": True}))

    assert "Health Status: N/A (no leaf detected)" in report
    assert "POSSIBLE DISEASES:\nN/A" in report
