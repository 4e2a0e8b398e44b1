"""
Prompt templates for the coding agent and the self-improvement diagnoser.
"""

from __future__ import annotations

import json
from pathlib import Path

from dgm.tools.base import ToolRegistry

CODING_SYSTEM_PROMPT = "You are a coding agent."

TOOL_USE_FORMAT = """Use the available tools in this format:
```
<tool_use>
{
    "tool_name": "tool_name_here",
    "tool_input": {
        "parameter": "value"
    }
}
</tool_use>
```
"""


def tools_prompt(registry: ToolRegistry) -> str:
    """Tool catalogue for models that call tools through text blocks."""
    parts = ["Here are the available tools:\n"]
    for definition in registry.definitions():
        parts.append(
            f"**{definition.name}**: {definition.description}\n\n"
            f"Input Schema:\n```json\n{json.dumps(definition.parameters, indent=2)}\n```\n"
        )
    parts.append(TOOL_USE_FORMAT)
    return "\n".join(parts)


def coding_instruction(
    workdir: str | Path,
    problem_statement: str,
    test_description: str | None = None,
) -> str:
    instruction = (
        f"I have uploaded a Python code repository in the directory {workdir}. "
        "Help solve the following problem.\n\n"
        f"<problem_description>\n{problem_statement}\n</problem_description>\n\n"
    )
    if test_description:
        instruction += f"<test_description>\n{test_description}\n</test_description>\n\n"
    instruction += (
        f"Your task is to make changes to the files in the {workdir} directory to address "
        "the <problem_description>. I have already taken care of the required dependencies.\n\n"
        "Use the available tools to explore the repository, understand the problem, and "
        "implement a solution. Start by examining the repository structure and understanding "
        "the codebase. When you are finished, reply without calling any tool."
    )
    return instruction


def tool_result_message(tool_name: str, arguments: dict, content: str) -> str:
    """Tool result fed back to a model without native tool calling."""
    return (
        f"Tool Used: {tool_name}\n"
        f"Tool Input: {json.dumps(arguments, ensure_ascii=False)}\n"
        f"Tool Result: {content}"
    )


DIAGNOSE_SYSTEM_PROMPT = """Here is the implementation of a coding agent.
The agent is given a task in a repository and must solve it with the tools it has.
You will study how the agent behaved on one benchmark task and propose one
improvement to the agent itself, so that it solves this kind of task more often."""

DIAGNOSE_PROMPT = """# Agent Running Log
----- Agent Running Log Start -----
{agent_log}
----- Agent Running Log End -----

# GitHub Issue
The GitHub issue that the agent is trying to solve.
----- GitHub Issue Start -----
{problem_statement}
----- GitHub Issue End -----

# Predicted Patch
The agent's predicted patch to solve the issue.
----- Predicted Patch Start -----
{predicted_patch}
----- Predicted Patch End -----

# Test Results
The results of running the tests against the predicted patch.
----- Test Results Start -----
{test_output}
----- Test Results End -----

# Agent Performance
The agent currently resolves {accuracy:.1%} of the benchmark instances it was evaluated on.

Analyze the log and test results to find why the agent failed. Respond precisely in the
following format including the JSON start and end markers:

```json
<JSON>
```

In <JSON>, provide a JSON response with the following fields:
- "log_summarization": Summarize how the agent tried to solve the issue.
- "potential_improvements": Identify general improvements to the agent's tools, prompts or workflow. Do not propose changes to the underlying model.
- "improvement_proposal": Choose ONE high-impact improvement from the list and describe it in detail.
- "implementation_suggestion": Describe how to implement the proposal in the agent's code.
- "problem_description": Phrase the improvement as a GitHub issue description for the agent's repository. It should describe the problem and the desired behaviour, not the specific benchmark task.

Your response will be automatically parsed, so ensure that the string response is precisely in the correct format."""

SOLVE_EMPTY_PATCHES_STATEMENT = """# Coding agent summary

The coding agent occasionally finishes without making any change to the repository,
so its run produces an empty patch and the task is scored as failed.

# To implement

Make sure the agent never finishes with an empty patch. When the agent is about to
stop and the working tree has no changes against the base commit, it should keep
working on the problem instead of ending the run, within its existing turn budget."""

SOLVE_STOCHASTICITY_STATEMENT = """# Coding agent summary

The coding agent's results vary from run to run on the same task: sometimes it
solves a task and sometimes it does not.

# To implement

Reduce the variance of the agent's results. For example, let the agent produce
several candidate patches for the same task and then pick the most promising one,
for instance by running the repository's existing tests against each candidate
and keeping the patch that passes the most tests."""


def self_improve_statement(problem_description: str, implementation_suggestion: str) -> str:
    """Problem statement handed to the agent working on its own repository."""
    return (
        f"# Coding agent summary\n\n{problem_description.strip()}\n\n"
        f"# To implement\n\n{implementation_suggestion.strip()}"
    )
