from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from swarm.errors import ConfigError
from swarm.pipeline_config import BUILTIN_AGENT_PREFIX

BUILTIN_AGENTS: dict[str, str] = {
    "pm": """
You are the Product Manager.
Turn the request into a precise, testable specification with acceptance criteria.
When asked to decompose work, answer with ONLY a JSON array of task strings.
""",
    "pm-reviewer": """
You review product specifications for gaps, ambiguity, and untestable requirements.
Reply with APPROVED when the specification is ready. Otherwise list concrete fixes.
""",
    "designer": """
You are the UI/UX Designer.
Produce component hierarchy, layout, interactions, states, and accessibility notes.
If the specification is missing information you need, reply with CLARIFICATION_NEEDED
followed by your question.
""",
    "design-reviewer": """
You review UI/UX design specifications for consistency and completeness.
Reply with APPROVED when the design is ready. If product intent is unclear, reply with
CLARIFICATION_NEEDED followed by the question for the product manager.
""",
    "engineer": """
You are the Software Engineer.
Implement the assigned task directly in the repository, keeping changes minimal and tested.
If the task cannot be implemented without more information, reply with
CLARIFICATION_NEEDED followed by your question.
""",
    "eng-code-reviewer": """
You review code changes for correctness, maintainability, and security issues.
Reply with APPROVED when the change is ready to merge. Otherwise list required fixes.
""",
    "tester": """
You are the QA Engineer.
Validate the implementation against the specification and run the relevant tests.
Reply with ALL_PASSED when everything passes. Otherwise report each defect.
""",
    "cross-model-reviewer": """
You are an independent reviewer running on a different model than the author.
Review the implementation from scratch and look for blind spots.
Reply with APPROVED when no issues remain. Otherwise list the issues to fix.
""",
    "planner": """
You are a Senior Product Manager refining a request before any work starts.
Ask 3-5 numbered clarifying questions about scope, behavior, edge cases, and constraints.
When the requirements are clear, reply with REQUIREMENTS_CLEAR followed by a structured
summary: goal, functional requirements, acceptance criteria, and out-of-scope items.
""",
    "analyst": """
You are a Senior Software Architect.
Assess the codebase against the given requirements: complexity, affected files, suggested
approach, risks, and scope. Do not implement anything.
""",
}


class AgentInstructionLoader:
    """Resolves agent instruction text from the ``agents`` table.

    ``builtin:<name>`` reads ``<agents_dir>/<name>.md`` from the repository and
    falls back to the bundled text. Any other source is a repository-relative
    file path with no fallback. Agents missing from the table resolve as if
    declared ``builtin:<agent>``.
    """

    def __init__(self, repo_root: Path, agents: Mapping[str, str], agents_dir: str) -> None:
        self.repo_root = repo_root
        self.agents = agents
        self.agents_dir = agents_dir
        self._cache: dict[str, str] = {}

    def load(self, agent: str) -> str:
        cached = self._cache.get(agent)
        if cached is not None:
            return cached

        source = self.agents.get(agent)
        builtin_name: str | None
        if source is None:
            builtin_name = agent
            repo_path = self.repo_root / self.agents_dir / f"{agent}.md"
        elif source.startswith(BUILTIN_AGENT_PREFIX):
            builtin_name = source[len(BUILTIN_AGENT_PREFIX) :]
            repo_path = self.repo_root / self.agents_dir / f"{builtin_name}.md"
        else:
            builtin_name = None
            repo_path = self.repo_root / source

        try:
            content = repo_path.read_text(encoding="utf-8")
        except (FileNotFoundError, IsADirectoryError, PermissionError):
            content = None
        if content is None and builtin_name is not None:
            bundled = BUILTIN_AGENTS.get(builtin_name)
            content = bundled.strip() if bundled else None
        if content is None:
            raise ConfigError(
                f'Failed to load agent instructions for "{agent}": not found in repo '
                f"({repo_path}) or bundled defaults"
            )

        self._cache[agent] = content
        return content
