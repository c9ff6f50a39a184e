from __future__ import annotations

from pathlib import Path

from taskloop.models import StoreConfig, Task

DEFAULT_PROMPT_TEMPLATE = """# Autonomous Iteration Prompt

You are one iteration of an autonomous coding loop. Every iteration starts
with a fresh context: everything you need is in the repository and below.

## How an iteration works

1. The loop has already picked the task for this iteration (see "Current Task").
   Work on that task only.
2. Read `CLAUDE.md` or `AGENTS.md` for the project's guardrails, and the
   progress log for learnings from earlier iterations.
3. Implement the task. Write tests alongside the code and keep the change
   focused on this one task.
4. Run the quality checks listed below and fix what they report.
5. Stop when the checks pass.

## Rules

- Do NOT commit. The loop runs the quality checks itself and commits your
  changes with a conventional commit message when they pass.
- Do NOT edit the task store (`prd.json`). The loop owns task status.
- If the task cannot be done, explain why in your final message and leave
  the working tree unchanged. An operator will block or reset the task.
- Record insights for later iterations in your final message; the loop
  appends a summary to the progress log.
"""


def render_prompt_file(config: StoreConfig, *, store_file: str, progress_file: str) -> str:
    """Default prompt file content, written once by ``taskloop init``."""
    lines = [DEFAULT_PROMPT_TEMPLATE, "## Project-Specific Configuration", ""]
    lines.append(f"- **AI Tool**: {config.ai_tool}")
    lines.append(f"- **Max Iterations**: {config.max_iterations}")
    lines.append(f"- **Task Store**: {store_file}")
    lines.append(f"- **Progress Log**: {progress_file}")
    if config.quality_checks:
        lines.extend(["", "### Quality Checks", "", "```bash", *config.quality_checks, "```"])
    return "\n".join(lines) + "\n"


def load_base_prompt(repo_root: Path, config: StoreConfig) -> str:
    prompt_path = Path(config.ai_prompt_file)
    if not prompt_path.is_absolute():
        prompt_path = repo_root / prompt_path
    if prompt_path.is_file():
        return prompt_path.read_text(encoding="utf-8")
    return DEFAULT_PROMPT_TEMPLATE


def build_task_prompt(
    base_prompt: str,
    task: Task,
    *,
    iteration: int,
    quality_checks: list[str],
    progress_tail: list[str] | None = None,
) -> str:
    sections = [base_prompt.rstrip(), "", "## Current Task", ""]
    sections.append(f"- **ID**: {task.id}")
    sections.append(f"- **Title**: {task.title}")
    sections.append(f"- **Priority**: {task.priority}")
    sections.append(f"- **Complexity**: {task.complexity}")
    sections.append(f"- **Iteration**: {iteration}")
    if task.depends_on:
        sections.append(f"- **Builds on**: {', '.join(task.depends_on)}")
    if task.description:
        sections.extend(["", task.description.strip()])
    for heading, items in (
        ("Files to create", task.files_to_create),
        ("Files to modify", task.files_to_modify),
        ("Guardrails", task.guardrails),
    ):
        if items:
            sections.extend(["", f"### {heading}", "", *(f"- {item}" for item in items)])
    if quality_checks:
        sections.extend(["", "### Checks that must pass", "", "```bash", *quality_checks, "```"])
    if progress_tail:
        sections.extend(["", "### Recent progress", "", "```", *progress_tail, "```"])
    return "\n".join(sections) + "\n"
