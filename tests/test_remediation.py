import pytest

from phasegate.registry import default_registry
from phasegate.remediation import classify_failure, get_remediation_strategy


@pytest.mark.parametrize(
    ("phase", "message", "kind", "confidence"),
    [
        ("SPEC_PM", "PRD is missing requirement for guest checkout", "missing_requirement_mapping", 0.9),
        ("ANALYSIS", "Brief is missing feature list", "missing_requirement_mapping", 0.85),
        ("SPEC_PM", "Story 4 does not match persona 'Busy Parent'", "persona_mismatch", 0.85),
        (
            "SPEC_ARCHITECT",
            "API references field sku which is not in the data model",
            "api_data_model_gap",
            0.9,
        ),
        ("SOLUTIONING", "Epic references module that is not defined", "structural_inconsistency", 0.8),
        ("STACK_SELECTION", "Invalid JSON in stack.json", "format_validation_error", 0.95),
        ("SPEC_PM", "Missing required artifact: PRD.md", "format_validation_error", 0.95),
        ("SPEC_PM", "Artifact violates constitutional article 2", "constitutional_violation", 0.98),
    ],
)
def test_classify_failure(phase: str, message: str, kind: str, confidence: float) -> None:
    classification = classify_failure(phase, message)

    assert classification.kind == kind
    assert classification.confidence == pytest.approx(confidence)
    assert kind in classification.reason


def test_affinity_bonus_never_exceeds_cap() -> None:
    # the constitutional rule has no home phases, so no bonus applies anywhere
    assert classify_failure("SPEC_PM", "constitutional violation found").confidence == 0.98
    # missing requirement in its home phase is capped
    assert classify_failure("SPEC_PM", "missing functionality").confidence <= 0.9


def test_unmatched_message_is_unknown() -> None:
    classification = classify_failure("SPEC_PM", "the agent ran out of coffee")

    assert classification.kind == "unknown"
    assert classification.confidence == 0.3


def test_missing_requirement_goes_to_gap_analysis() -> None:
    strategy = get_remediation_strategy("missing_requirement_mapping", "SPEC_PM")

    assert strategy.agent_to_rerun == "scrummaster"
    assert "gap analysis" in strategy.additional_instructions
    assert strategy.requires_manual_review is False


def test_persona_and_api_gaps_pin_their_phases() -> None:
    persona = get_remediation_strategy("persona_mismatch", "SOLUTIONING")
    api = get_remediation_strategy("api_data_model_gap", "VALIDATE")

    assert (persona.agent_to_rerun, persona.phase) == ("pm", "SPEC_PM")
    assert (api.agent_to_rerun, api.phase) == ("architect", "SPEC_ARCHITECT")


def test_structural_inconsistency_picks_agent_from_phase() -> None:
    assert get_remediation_strategy("structural_inconsistency", "SPEC_DESIGN_TOKENS").agent_to_rerun == "designer"
    assert get_remediation_strategy("structural_inconsistency", "SPEC_ARCHITECT").agent_to_rerun == "architect"
    assert get_remediation_strategy("structural_inconsistency", "SOLUTIONING").agent_to_rerun == "pm"


def test_format_error_reruns_phase_owner() -> None:
    registry = default_registry()

    assert get_remediation_strategy("format_validation_error", "DEPENDENCIES", registry).agent_to_rerun == "devops"
    assert get_remediation_strategy("format_validation_error", "SOLUTIONING", registry).agent_to_rerun == "scrummaster"
    # unknown phases fall back to a name heuristic
    assert get_remediation_strategy("format_validation_error", "CUSTOM_DESIGN", registry).agent_to_rerun == "designer"
    assert get_remediation_strategy("format_validation_error", "STACK_SELECTION").agent_to_rerun == "architect"


def test_constitutional_and_unknown_need_a_human() -> None:
    for kind in ("constitutional_violation", "unknown"):
        strategy = get_remediation_strategy(kind, "SPEC_PM")  # type: ignore[arg-type]
        assert strategy.agent_to_rerun is None
        assert strategy.requires_manual_review is True
