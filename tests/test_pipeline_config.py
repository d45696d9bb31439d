import copy
from typing import Any

import pytest

from swarm.errors import ConfigError
from swarm.pipeline_config import (
    DEFAULT_PIPELINE_DOCUMENT,
    CrossModelReviewPhase,
    DecomposePhase,
    ImplementPhase,
    SpecPhase,
    VerifyCommands,
    VerifyPhase,
    default_pipeline,
    parse_pipeline_config,
    referenced_agents,
)


def _document() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_PIPELINE_DOCUMENT)


def test_default_pipeline_phase_ids() -> None:
    pipeline = default_pipeline()

    assert [phase_id for phase_id, _ in pipeline.phases()] == [
        "spec-0",
        "decompose-1",
        "design-2",
        "implement-3",
        "cross-model-review-4",
        "verify-5",
    ]
    assert pipeline.cross_model_enabled


def test_default_pipeline_phase_types() -> None:
    phases = default_pipeline().pipeline

    assert isinstance(phases[0], SpecPhase)
    assert phases[0].reviews[0].agent == "spec-reviewer"
    assert isinstance(phases[1], DecomposePhase)
    assert phases[1].frontend_marker == "[FRONTEND]"
    assert isinstance(phases[3], ImplementPhase)
    assert phases[3].qa is not None and phases[3].qa.approval_keyword == "ALL_PASSED"
    assert isinstance(phases[4], CrossModelReviewPhase)
    assert phases[4].scope == "stream"
    assert isinstance(phases[5], VerifyPhase)


def test_unknown_agent_reference_names_phase() -> None:
    document = _document()
    document["pipeline"][0]["reviews"][0]["agent"] = "ghost"

    with pytest.raises(ConfigError) as excinfo:
        parse_pipeline_config(document)
    assert str(excinfo.value) == 'pipeline[0] (phase: spec) references unknown agent "ghost"'


def test_unknown_phase_kind() -> None:
    document = _document()
    document["pipeline"].append({"phase": "deploy", "agent": "engineer"})

    with pytest.raises(ConfigError, match='unknown phase "deploy"'):
        parse_pipeline_config(document)


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda doc: doc["pipeline"][0]["reviews"][0].update(max_iterations=0), "max_iterations"),
        (lambda doc: doc["pipeline"][0]["reviews"][0].update(max_iterations=True), "max_iterations"),
        (lambda doc: doc["pipeline"][2].update(condition="always"), "unknown condition"),
        (lambda doc: doc["pipeline"][3].update(parallel="yes"), "parallel"),
        (lambda doc: doc["pipeline"][4].update(scope="repo"), "scope"),
        (lambda doc: doc["pipeline"][1].update(agent=""), '"agent"'),
        (lambda doc: doc.update(pipeline=[]), "non-empty array"),
        (lambda doc: doc["agents"].update(pm=""), 'Agent "pm"'),
    ],
)
def test_structural_errors(mutate: Any, message: str) -> None:
    document = _document()
    mutate(document)

    with pytest.raises(ConfigError, match=message):
        parse_pipeline_config(document)


def test_phase_error_context_includes_index() -> None:
    document = _document()
    document["pipeline"][3]["qa"]["approval_keyword"] = 7

    with pytest.raises(ConfigError, match=r"pipeline\[3\] \(phase: implement\)\.qa"):
        parse_pipeline_config(document)


def test_referenced_agents_cover_nested_steps() -> None:
    pipeline = default_pipeline()

    design_agents = referenced_agents(pipeline.pipeline[2])
    implement_agents = referenced_agents(pipeline.pipeline[3])

    assert design_agents == ["designer", "pm", "design-reviewer", "pm"]
    assert implement_agents == ["engineer", "pm", "code-reviewer", "tester"]


def test_verify_table_and_models() -> None:
    document = _document()
    document["verify"] = {"test": "pytest -q"}
    document["review_model"] = document["primary_model"]

    pipeline = parse_pipeline_config(document)

    assert pipeline.verify == VerifyCommands(test="pytest -q")
    assert not pipeline.cross_model_enabled
    assert pipeline.with_models(review_model="other").cross_model_enabled


def test_verify_commands_merge() -> None:
    overrides = VerifyCommands(test="make test")
    configured = VerifyCommands(build="make", test="pytest")

    assert overrides.merged_over(configured) == VerifyCommands(build="make", test="make test")
    assert VerifyCommands().is_empty()


def test_to_dict_roundtrip() -> None:
    pipeline = default_pipeline()

    assert parse_pipeline_config(pipeline.to_dict()) == pipeline


@pytest.mark.parametrize("index", [0, 1, 3, 5])
def test_frontend_condition_only_on_design_phase(index: int) -> None:
    document = _document()
    document["pipeline"][index]["condition"] = "hasFrontendTasks"

    with pytest.raises(ConfigError, match=r"pipeline\[\d\] .*only valid on the design phase"):
        parse_pipeline_config(document)
