"""Prompt templates handed to the coding agent."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from storyloop.actionability import VagueTermFinding
    from storyloop.plan import Plan, Story

PLAN_SCHEMA_EXAMPLE = {
    "project_name": "descriptive project name",
    "branch_name": "feature/branch-name",
    "context": "shared background every story needs",
    "test_spec": "how the project is tested and which command runs the suite",
    "stories": [
        {
            "id": "story-1",
            "title": "Story title",
            "description": "Detailed description",
            "acceptance_criteria": ["criterion 1", "criterion 2"],
            "test_guidance": "Integration test guidance: 1) start app, 2) call X, 3) assert Y.",
            "priority": 1,
            "passes": False,
        }
    ],
}

PLANNING_INSTRUCTIONS = """
Follow this process:

1. PROJECT ANALYSIS
   - Scan the working directory to understand the existing codebase.
   - Identify the technology stack, conventions and test setup.
2. CREATE THE PLAN
   - Break the work into user stories, each implementable in one iteration.
   - Give every story acceptance criteria and a priority (1 = most urgent).
   - Give every story test_guidance describing an integration test that
     checks runtime behavior, following the project's test conventions.
3. MEASURABLE LANGUAGE
   - Avoid vague wording such as "improve", "optimize" or "robust" unless the
     same sentence states a measurable target (a number, unit or limit).
""".strip()

NEW_PROJECT_NOTE = """
The working directory contains no source files yet. Plan the initial project
setup (layout, tooling, test runner) as the first story.
""".strip()

REFINEMENT_INSTRUCTIONS = """
Rewrite the flagged sentences so each one states a measurable outcome
(a number, unit, threshold or explicit comparison). Keep story ids, priorities
and passes values unchanged and do not add or remove stories.
""".strip()

IMPLEMENTATION_PROCESS = """
IMPLEMENTATION PROCESS:

1. Read the existing code and tests to learn the project's conventions.
2. Implement the story completely.
3. Write an integration test for this story that checks runtime behavior,
   named and placed the way the project's existing tests are.
4. Run the new test and every previous test; do not continue until they pass.
5. Update the plan file: set "passes" to true for this story only when its
   tests pass. Leave other stories and fields untouched.
""".strip()


def _plan_file_instruction(plan_file: str) -> str:
    return (
        f"Write the plan as raw JSON (no markdown, no commentary) to the file "
        f"{plan_file} in the working directory, using this shape:"
    )


def plan_generation(user_prompt: str, plan_file: str, *, new_project: bool = False) -> str:
    parts = [
        f"You are an autonomous software development agent. Your task is to plan: {user_prompt}",
        PLANNING_INSTRUCTIONS,
    ]
    if new_project:
        parts.append(NEW_PROJECT_NOTE)
    parts.append(_plan_file_instruction(plan_file))
    parts.append(json.dumps(PLAN_SCHEMA_EXAMPLE, ensure_ascii=False, indent=2))
    parts.append("Do not implement any story yet; only write the plan file.")
    return "\n\n".join(parts)


def plan_refinement(
    plan_json: str, plan_file: str, findings: Sequence[VagueTermFinding]
) -> str:
    flagged = "\n".join(f"- {finding.describe()}" for finding in findings)
    return "\n\n".join(
        [
            f"The plan in {plan_file} contains sentences that are not measurable:",
            flagged,
            REFINEMENT_INSTRUCTIONS,
            "Current plan:",
            plan_json.strip(),
            f"Overwrite {plan_file} with the corrected plan as raw JSON.",
        ]
    )


def story_implementation(story: Story, plan: Plan, plan_file: str, iteration: int) -> str:
    criteria = "\n".join(f"- {item}" for item in story.acceptance_criteria) or "- (none)"
    guidance = story.test_guidance or "No test guidance provided; create and run appropriate tests."
    parts = [
        f"You are implementing story {story.id}: {story.title}",
        f"Description:\n{story.description}",
        f"Acceptance criteria:\n{criteria}",
        f"Test guidance:\n{guidance}",
        (
            f"Progress: iteration {iteration} "
            f"({plan.completed_count()}/{len(plan.stories)} stories done)"
        ),
    ]
    if plan.context:
        parts.append(f"Project context:\n{plan.context}")
    if plan.test_spec:
        parts.append(f"Project test spec:\n{plan.test_spec}")
    parts.append(IMPLEMENTATION_PROCESS)
    parts.append(f"The plan file is {plan_file}.")
    return "\n\n".join(parts)
