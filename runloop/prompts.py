"""
Prompt templates for agent interaction.

Every agent gets the same loop prompt: pick one unit of work from the sandbox
task list, verify it, record the outcome, commit once.
"""

from typing import Optional

from .models import Task

COMPLETION_SENTINEL = "<promise>COMPLETE</promise>"

PLAN_FILE = "plans/prd.json"
PROGRESS_FILE = "progress.txt"

LOOP_PROMPT = f"""@{PLAN_FILE} @{PROGRESS_FILE}
1. Find the highest-priority feature to work on and work only on that feature.
This should be the one YOU decide has the highest priority - not necessarily the first in the list.
2. Verify your work: check that the types check and that the tests pass (use the project's own commands, e.g. npm run typecheck / npm test, or whatever this repository uses).
3. Update the PRD with the work that was done (set "passes" on the feature you finished).
4. Append your progress to the {PROGRESS_FILE} file.
Use this to leave a note for the next person working in the codebase.
5. Make exactly one git commit of the feature. NEVER git push. ONLY commit.
ONLY WORK ON A SINGLE FEATURE.
If, while implementing the feature, you notice the PRD is complete, output {COMPLETION_SENTINEL}"""


def get_loop_prompt(coding_style: str = "", task: Optional[Task] = None) -> str:
    """Build the per-iteration prompt, with optional coding style and task focus."""
    prompt = LOOP_PROMPT

    if task is not None:
        steps = "\n".join(f"  {i}. {step}" for i, step in enumerate(task.steps, 1))
        focus = f"<current-task>\nid: {task.id}\n"
        if task.title:
            focus += f"title: {task.title}\n"
        if task.description:
            focus += f"description: {task.description}\n"
        if steps:
            focus += f"acceptance steps:\n{steps}\n"
        if task.failure_notes:
            focus += f"previous failure:\n{task.failure_notes}\n"
        focus += "</current-task>"
        prompt += (
            "\n\nThe run supervisor has picked this task as the highest priority; "
            f"prefer it unless it is blocked.\n{focus}"
        )

    if coding_style:
        prompt += f"\n\n<coding-style>\n{coding_style}\n</coding-style>"

    return prompt


def has_completion_sentinel(output: str) -> bool:
    return bool(output) and COMPLETION_SENTINEL in output
