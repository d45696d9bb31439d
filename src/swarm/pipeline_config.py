from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
from typing import Any, Literal

from swarm.errors import ConfigError

PhaseKind = Literal["spec", "decompose", "design", "implement", "cross-model-review", "verify"]
ConditionName = Literal["hasFrontendTasks", "noPlanProvided", "differentReviewModel"]
ReviewScope = Literal["stream", "global"]

PHASE_KINDS: tuple[str, ...] = (
    "spec",
    "decompose",
    "design",
    "implement",
    "cross-model-review",
    "verify",
)
KNOWN_CONDITIONS: frozenset[str] = frozenset(
    {"hasFrontendTasks", "noPlanProvided", "differentReviewModel"}
)
BUILTIN_AGENT_PREFIX = "builtin:"
DEFAULT_FRONTEND_MARKER = "[FRONTEND]"
DEFAULT_CLARIFICATION_KEYWORD = "CLARIFICATION_NEEDED"
DEFAULT_PRIMARY_MODEL = "claude-opus-4-6-fast"
DEFAULT_REVIEW_MODEL = "gpt-5.2-codex"


@dataclass(frozen=True, slots=True)
class ReviewStepConfig:
    agent: str
    max_iterations: int
    approval_keyword: str
    clarification_keyword: str | None = None
    clarification_agent: str | None = None


@dataclass(frozen=True, slots=True)
class QaStepConfig:
    agent: str
    max_iterations: int
    approval_keyword: str


@dataclass(frozen=True, slots=True)
class SpecPhase:
    agent: str
    reviews: tuple[ReviewStepConfig, ...] = ()
    condition: str | None = None
    kind: Literal["spec"] = "spec"


@dataclass(frozen=True, slots=True)
class DecomposePhase:
    agent: str
    frontend_marker: str = DEFAULT_FRONTEND_MARKER
    condition: str | None = None
    kind: Literal["decompose"] = "decompose"


@dataclass(frozen=True, slots=True)
class DesignPhase:
    agent: str
    reviews: tuple[ReviewStepConfig, ...] = ()
    clarification_agent: str | None = None
    clarification_keyword: str = DEFAULT_CLARIFICATION_KEYWORD
    condition: str | None = None
    kind: Literal["design"] = "design"


@dataclass(frozen=True, slots=True)
class ImplementPhase:
    agent: str
    parallel: bool = True
    reviews: tuple[ReviewStepConfig, ...] = ()
    qa: QaStepConfig | None = None
    clarification_agent: str | None = None
    clarification_keyword: str = DEFAULT_CLARIFICATION_KEYWORD
    cross_model: ReviewStepConfig | None = None
    condition: str | None = None
    kind: Literal["implement"] = "implement"


@dataclass(frozen=True, slots=True)
class CrossModelReviewPhase:
    agent: str
    fix_agent: str
    max_iterations: int
    approval_keyword: str
    scope: ReviewScope = "stream"
    condition: str | None = "differentReviewModel"
    kind: Literal["cross-model-review"] = "cross-model-review"


@dataclass(frozen=True, slots=True)
class VerifyPhase:
    fix_agent: str
    max_iterations: int = 3
    condition: str | None = None
    kind: Literal["verify"] = "verify"


PhaseConfig = (
    SpecPhase | DecomposePhase | DesignPhase | ImplementPhase | CrossModelReviewPhase | VerifyPhase
)


@dataclass(frozen=True, slots=True)
class VerifyCommands:
    build: str | None = None
    test: str | None = None
    lint: str | None = None

    def is_empty(self) -> bool:
        return not (self.build or self.test or self.lint)

    def merged_over(self, fallback: VerifyCommands | None) -> VerifyCommands:
        if fallback is None:
            return self
        return VerifyCommands(
            build=self.build or fallback.build,
            test=self.test or fallback.test,
            lint=self.lint or fallback.lint,
        )


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    primary_model: str
    review_model: str
    agents: Mapping[str, str]
    pipeline: tuple[PhaseConfig, ...]
    verify: VerifyCommands | None = None

    def phase_id(self, index: int) -> str:
        return f"{self.pipeline[index].kind}-{index}"

    def phases(self) -> list[tuple[str, PhaseConfig]]:
        return [(self.phase_id(index), phase) for index, phase in enumerate(self.pipeline)]

    @property
    def cross_model_enabled(self) -> bool:
        return self.review_model != self.primary_model

    def with_models(
        self, *, primary_model: str | None = None, review_model: str | None = None
    ) -> PipelineConfig:
        return PipelineConfig(
            primary_model=primary_model or self.primary_model,
            review_model=review_model or self.review_model,
            agents=self.agents,
            pipeline=self.pipeline,
            verify=self.verify,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "primary_model": self.primary_model,
            "review_model": self.review_model,
            "agents": dict(self.agents),
            "pipeline": [_phase_to_dict(phase) for phase in self.pipeline],
        }
        if self.verify is not None and not self.verify.is_empty():
            payload["verify"] = {
                key: value
                for key, value in (
                    ("build", self.verify.build),
                    ("test", self.verify.test),
                    ("lint", self.verify.lint),
                )
                if value
            }
        return payload


def _step_to_dict(step: ReviewStepConfig | QaStepConfig) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "agent": step.agent,
        "max_iterations": step.max_iterations,
        "approval_keyword": step.approval_keyword,
    }
    if isinstance(step, ReviewStepConfig):
        if step.clarification_keyword:
            payload["clarification_keyword"] = step.clarification_keyword
        if step.clarification_agent:
            payload["clarification_agent"] = step.clarification_agent
    return payload


def _phase_to_dict(phase: PhaseConfig) -> dict[str, Any]:
    payload: dict[str, Any] = {"phase": phase.kind}
    for item in fields(phase):
        name = item.name
        if name == "kind":
            continue
        value = getattr(phase, name)
        if value is None:
            continue
        if name == "reviews":
            if value:
                payload[name] = [_step_to_dict(step) for step in value]
            continue
        if isinstance(value, (ReviewStepConfig, QaStepConfig)):
            payload[name] = _step_to_dict(value)
            continue
        payload[name] = value
    return payload


class _Reader:
    """Typed accessors over one raw table, reporting failures with its path."""

    def __init__(self, data: Any, context: str) -> None:
        if not isinstance(data, Mapping):
            raise ConfigError(f"{context}: expected a table, got {type(data).__name__}")
        self.data = data
        self.context = context

    def string(self, key: str) -> str:
        value = self.data.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f'{self.context}: "{key}" must be a non-empty string')
        return value

    def optional_string(self, key: str, default: str | None = None) -> str | None:
        value = self.data.get(key)
        if value is None:
            return default
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f'{self.context}: "{key}" must be a non-empty string when set')
        return value

    def positive_int(self, key: str, default: int | None = None) -> int:
        value = self.data.get(key, default)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigError(f'{self.context}: "{key}" must be a positive integer')
        return value

    def boolean(self, key: str, default: bool) -> bool:
        value = self.data.get(key, default)
        if not isinstance(value, bool):
            raise ConfigError(f'{self.context}: "{key}" must be a boolean')
        return value

    def condition(self, default: str | None = None, *, frontend: bool = False) -> str | None:
        value = self.optional_string("condition", default)
        if value is not None and value not in KNOWN_CONDITIONS:
            known = ", ".join(sorted(KNOWN_CONDITIONS))
            raise ConfigError(f'{self.context}: unknown condition "{value}" (expected one of {known})')
        if value == "hasFrontendTasks" and not frontend:
            raise ConfigError(
                f'{self.context}: condition "hasFrontendTasks" is only valid on the design phase'
            )
        return value

    def reviews(self) -> tuple[ReviewStepConfig, ...]:
        raw = self.data.get("reviews", [])
        if not isinstance(raw, list):
            raise ConfigError(f'{self.context}: "reviews" must be an array')
        return tuple(
            _parse_review(item, f"{self.context}.reviews[{index}]") for index, item in enumerate(raw)
        )


def _parse_review(data: Any, context: str) -> ReviewStepConfig:
    reader = _Reader(data, context)
    return ReviewStepConfig(
        agent=reader.string("agent"),
        max_iterations=reader.positive_int("max_iterations"),
        approval_keyword=reader.string("approval_keyword"),
        clarification_keyword=reader.optional_string("clarification_keyword"),
        clarification_agent=reader.optional_string("clarification_agent"),
    )


def _parse_qa(data: Any, context: str) -> QaStepConfig:
    reader = _Reader(data, context)
    return QaStepConfig(
        agent=reader.string("agent"),
        max_iterations=reader.positive_int("max_iterations"),
        approval_keyword=reader.string("approval_keyword"),
    )


def _parse_phase(data: Any, index: int) -> PhaseConfig:
    kind = data.get("phase") if isinstance(data, Mapping) else None
    context = f"pipeline[{index}] (phase: {kind})"
    reader = _Reader(data, context)
    if kind == "spec":
        return SpecPhase(
            agent=reader.string("agent"),
            reviews=reader.reviews(),
            condition=reader.condition(),
        )
    if kind == "decompose":
        return DecomposePhase(
            agent=reader.string("agent"),
            frontend_marker=reader.optional_string("frontend_marker", DEFAULT_FRONTEND_MARKER),
            condition=reader.condition(),
        )
    if kind == "design":
        return DesignPhase(
            agent=reader.string("agent"),
            reviews=reader.reviews(),
            clarification_agent=reader.optional_string("clarification_agent"),
            clarification_keyword=reader.optional_string(
                "clarification_keyword", DEFAULT_CLARIFICATION_KEYWORD
            ),
            condition=reader.condition(frontend=True),
        )
    if kind == "implement":
        qa_raw = data.get("qa")
        cross_raw = data.get("cross_model")
        return ImplementPhase(
            agent=reader.string("agent"),
            parallel=reader.boolean("parallel", True),
            reviews=reader.reviews(),
            qa=_parse_qa(qa_raw, f"{context}.qa") if qa_raw is not None else None,
            clarification_agent=reader.optional_string("clarification_agent"),
            clarification_keyword=reader.optional_string(
                "clarification_keyword", DEFAULT_CLARIFICATION_KEYWORD
            ),
            cross_model=(
                _parse_review(cross_raw, f"{context}.cross_model") if cross_raw is not None else None
            ),
            condition=reader.condition(),
        )
    if kind == "cross-model-review":
        scope = data.get("scope", "stream")
        if scope not in ("stream", "global"):
            raise ConfigError(f'{context}: "scope" must be "stream" or "global"')
        return CrossModelReviewPhase(
            agent=reader.string("agent"),
            fix_agent=reader.string("fix_agent"),
            max_iterations=reader.positive_int("max_iterations"),
            approval_keyword=reader.string("approval_keyword"),
            scope=scope,
            condition=reader.condition("differentReviewModel"),
        )
    if kind == "verify":
        return VerifyPhase(
            fix_agent=reader.string("fix_agent"),
            max_iterations=reader.positive_int("max_iterations", 3),
            condition=reader.condition(),
        )
    raise ConfigError(
        f'pipeline[{index}]: unknown phase "{kind}" (expected one of {", ".join(PHASE_KINDS)})'
    )


def referenced_agents(phase: PhaseConfig) -> list[str]:
    names: list[str] = []
    match phase:
        case SpecPhase(agent=agent, reviews=reviews):
            names.append(agent)
            steps: list[ReviewStepConfig | QaStepConfig] = list(reviews)
        case DecomposePhase(agent=agent):
            names.append(agent)
            steps = []
        case DesignPhase(agent=agent, reviews=reviews, clarification_agent=clarifier):
            names.append(agent)
            if clarifier:
                names.append(clarifier)
            steps = list(reviews)
        case ImplementPhase():
            names.append(phase.agent)
            if phase.clarification_agent:
                names.append(phase.clarification_agent)
            steps = list(phase.reviews)
            if phase.qa is not None:
                steps.append(phase.qa)
            if phase.cross_model is not None:
                steps.append(phase.cross_model)
        case CrossModelReviewPhase(agent=agent, fix_agent=fix_agent):
            names.extend([agent, fix_agent])
            steps = []
        case VerifyPhase(fix_agent=fix_agent):
            names.append(fix_agent)
            steps = []
    for step in steps:
        names.append(step.agent)
        if isinstance(step, ReviewStepConfig) and step.clarification_agent:
            names.append(step.clarification_agent)
    return names


def _parse_verify(data: Any) -> VerifyCommands | None:
    if data is None:
        return None
    reader = _Reader(data, "verify")
    commands = VerifyCommands(
        build=reader.optional_string("build"),
        test=reader.optional_string("test"),
        lint=reader.optional_string("lint"),
    )
    return None if commands.is_empty() else commands


def parse_pipeline_config(raw: Mapping[str, Any]) -> PipelineConfig:
    """Validate a raw configuration document into a :class:`PipelineConfig`.

    Raises :class:`ConfigError` naming the offending path for every
    structural problem, and for agents that phases reference but the
    ``agents`` table does not declare.
    """
    reader = _Reader(raw, "config")
    primary_model = reader.optional_string("primary_model", DEFAULT_PRIMARY_MODEL)
    review_model = reader.optional_string("review_model", DEFAULT_REVIEW_MODEL)

    agents_raw = raw.get("agents")
    if not isinstance(agents_raw, Mapping) or not agents_raw:
        raise ConfigError('config: "agents" must be a non-empty table')
    agents: dict[str, str] = {}
    for name, source in agents_raw.items():
        if not isinstance(source, str) or not source.strip():
            raise ConfigError(
                f'Agent "{name}" must have a non-empty string source '
                '(e.g. "builtin:pm" or a file path)'
            )
        agents[str(name)] = source

    pipeline_raw = raw.get("pipeline")
    if not isinstance(pipeline_raw, list) or not pipeline_raw:
        raise ConfigError('config: "pipeline" must be a non-empty array of phases')
    phases = tuple(_parse_phase(item, index) for index, item in enumerate(pipeline_raw))

    for index, phase in enumerate(phases):
        for agent in referenced_agents(phase):
            if agent not in agents:
                raise ConfigError(
                    f'pipeline[{index}] (phase: {phase.kind}) references unknown agent "{agent}"'
                )

    return PipelineConfig(
        primary_model=primary_model or DEFAULT_PRIMARY_MODEL,
        review_model=review_model or DEFAULT_REVIEW_MODEL,
        agents=agents,
        pipeline=phases,
        verify=_parse_verify(raw.get("verify")),
    )


DEFAULT_PIPELINE_DOCUMENT: dict[str, Any] = {
    "primary_model": DEFAULT_PRIMARY_MODEL,
    "review_model": DEFAULT_REVIEW_MODEL,
    "agents": {
        "pm": "builtin:pm",
        "spec-reviewer": "builtin:pm-reviewer",
        "designer": "builtin:designer",
        "design-reviewer": "builtin:design-reviewer",
        "engineer": "builtin:engineer",
        "code-reviewer": "builtin:eng-code-reviewer",
        "tester": "builtin:tester",
        "cross-model-reviewer": "builtin:cross-model-reviewer",
    },
    "pipeline": [
        {
            "phase": "spec",
            "agent": "pm",
            "reviews": [
                {"agent": "spec-reviewer", "max_iterations": 3, "approval_keyword": "APPROVED"}
            ],
        },
        {"phase": "decompose", "agent": "pm", "frontend_marker": DEFAULT_FRONTEND_MARKER},
        {
            "phase": "design",
            "agent": "designer",
            "condition": "hasFrontendTasks",
            "clarification_agent": "pm",
            "reviews": [
                {
                    "agent": "design-reviewer",
                    "max_iterations": 3,
                    "approval_keyword": "APPROVED",
                    "clarification_keyword": DEFAULT_CLARIFICATION_KEYWORD,
                    "clarification_agent": "pm",
                }
            ],
        },
        {
            "phase": "implement",
            "agent": "engineer",
            "parallel": True,
            "clarification_agent": "pm",
            "reviews": [
                {"agent": "code-reviewer", "max_iterations": 3, "approval_keyword": "APPROVED"}
            ],
            "qa": {"agent": "tester", "max_iterations": 5, "approval_keyword": "ALL_PASSED"},
        },
        {
            "phase": "cross-model-review",
            "agent": "cross-model-reviewer",
            "fix_agent": "engineer",
            "max_iterations": 3,
            "approval_keyword": "APPROVED",
            "condition": "differentReviewModel",
        },
        {"phase": "verify", "fix_agent": "engineer", "max_iterations": 3},
    ],
}


def default_pipeline() -> PipelineConfig:
    return parse_pipeline_config(DEFAULT_PIPELINE_DOCUMENT)

