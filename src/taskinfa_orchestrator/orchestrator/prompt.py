"""Agent prompt assembly."""

from __future__ import annotations

import re
from pathlib import Path

from taskinfa_orchestrator.orchestrator.models import Project, Task

COMPLETION_CONVENTION = (
    "Do the task. When done, update .memory/context.md with what you accomplished."
)

_SLUG_SEPARATORS = re.compile(r"[^a-z0-9]+")


def branch_name(task: Task) -> str:
    """Deterministic `task/<id8>/<title-slug>` branch for a task."""

    short_id = task.task_id.removeprefix("task_")[:8]
    slug = _SLUG_SEPARATORS.sub("-", task.title.lower()).strip("-")[:40]
    return f"task/{short_id}/{slug}"


def build_prompt(
    *,
    task: Task,
    project: Project | None,
    working_directory: Path,
    git_workflow: bool,
) -> str:
    claude_md = working_directory / "CLAUDE.md"
    context_md = working_directory / ".memory" / "context.md"

    lines = [
        f"Project: {project.name if project is not None else 'Unknown'}",
        f"Read {claude_md} for project rules." if claude_md.exists() else "",
        f"Read {context_md} for current context." if context_md.exists() else "",
        "",
        f"Task: {task.title}",
        (task.description or "").strip(),
        "",
        COMPLETION_CONVENTION,
        _git_workflow(task) if git_workflow else "",
    ]
    return "\n".join(line for line in lines if line)


def _git_workflow(task: Task) -> str:
    branch = branch_name(task)
    title = task.title.replace('"', "'")
    return (
        "\n## Git Workflow\n"
        "\n"
        "After completing the task, create a PR for review:\n"
        "1. Start from main: git checkout main && git pull origin main\n"
        f"2. Create branch: git checkout -b {branch}\n"
        "3. Stage all changes including memory: git add -A\n"
        '4. Commit (conventional commits, e.g. "feat: ..." or "fix: ...")\n'
        f"5. Push: git push -u origin {branch}\n"
        f'6. Create PR: gh pr create --title "{title}" '
        f'--body "Automated PR for task {task.task_id}"\n'
        "7. Capture the PR URL from the gh output, then update the task:\n"
        '   curl -s -X PATCH "$KANBAN_API_URL/api/tasks/$KANBAN_TASK_ID" \\\n'
        '     -H "Authorization: Bearer $KANBAN_API_KEY" \\\n'
        '     -H "Content-Type: application/json" \\\n'
        f"     -d '{{\"pr_url\":\"<PR_URL>\",\"branch_name\":\"{branch}\"}}'\n"
        "   (Replace <PR_URL> with the actual URL returned by gh pr create)\n"
        "\n"
        "IMPORTANT: You MUST create the branch, commit, push, and create the PR. "
        "The PR URL must be saved to the task.\n"
    )
