"""Decoders for the OpusFlow CLI's standard output.

The CLI prints markdown-ish text rather than a structured format, and that
text has changed between releases. Each decoder therefore keeps an ordered
tuple of patterns, newest format first, and takes the first one that
matches. Decoders are pure: they look only at the text they are given and
never retry.

Mandatory fields that cannot be located raise ``DecodeError`` carrying the
raw text. Optional fields fall back to ``None`` (or an empty value) since
older releases simply do not print them.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from typing import cast

from flowpilot.errors import DecodeError
from flowpilot.protocol.models import (
    AgentInfo,
    AgentStatus,
    DecomposeResult,
    MapResult,
    PlanResult,
    SpecResult,
    TaskInfo,
    TaskResult,
    TaskStatusName,
    VerifyResult,
    VerifyStatusName,
    WorkflowGuidance,
    WorkflowStatus,
)

TASK_STATUS_GLYPHS: dict[str, TaskStatusName] = {
    "⬜": "pending",
    "🔄": "in_progress",
    "✅": "done",
    "❌": "failed",
}
AGENT_AVAILABILITY_GLYPHS: dict[str, bool] = {
    "✅": True,
    "❌": False,
}
VERIFY_STATUS_WORDS: set[str] = {"passed", "failed", "partial"}
NONE_MARKER = "(none)"

PLAN_PATH_PATTERNS = (re.compile(r"Created plan: (.+)"),)
VERIFY_PATH_PATTERNS = (
    re.compile(r"Report saved: (.+)"),
    re.compile(r"Verification report created: (.+)"),
)
VERIFY_STATUS_PATTERN = re.compile(r"\*\*Status\*\*:\s*(?:✅|❌|⚠️?)\s*(\w+)")
VERIFY_CHECKS_PATTERN = re.compile(r"\*\*Checks\*\*:\s*(\d+)/(\d+)")
SPEC_PATH_PATTERNS = (
    re.compile(r"📄 File: (.+)"),
    re.compile(r"Created spec(?:ification)?: (.+)"),
)
SPEC_TITLE_PATTERNS = (re.compile(r"📝 Title: (.+)"),)
MAP_FILES_PATTERN = re.compile(r"Files: (\d+)")
MAP_SYMBOLS_PATTERN = re.compile(r"Symbols: (\d+)")
MAP_LANGUAGES_PATTERN = re.compile(r"Languages: ([^\n]+)")
TASK_QUEUE_HEADER_PATTERN = re.compile(r"# Task Queue: (.+)")
TASK_HEADER_PATTERN = re.compile(r"^## (\S+) (task-\d+): (.+)$")
FILES_BLOCK_PATTERN = re.compile(r"^\*\*Files(?: to modify/create)?\*\*:\s*$")
FILE_ITEM_PATTERN = re.compile(r"^- `([^`]+)`\s*$")
TASK_ID_PATTERNS = (
    re.compile(r"\*\*Task ID\*\*: (task-\d+)"),
    re.compile(r"\*\*ID\*\*: (task-\d+)"),
)
TASK_TITLE_PATTERNS = (
    re.compile(r"^# (?:Next Task|Execute Task): (.+)$", re.MULTILINE),
    re.compile(r"^# Executing: (.+)$", re.MULTILINE),
)
ALL_TASKS_DONE_MARKERS = ("All tasks completed", "🎉")
EXEC_FAILURE_PATTERNS = (
    re.compile(r"^❌ Task failed!.*$", re.MULTILINE),
    re.compile(r"^❌ Agent '[^']+' is not installed\..*$", re.MULTILINE),
)
WORKFLOW_ID_PATTERN = re.compile(r"# Workflow Status: (\S+)")
WORKFLOW_NAME_PATTERN = re.compile(r"\*\*Name\*\*: (.+)")
WORKFLOW_PHASE_PATTERN = re.compile(r"\*\*Current Phase\*\*: (\w+)")
WORKFLOW_NEXT_PATTERN = re.compile(r"Suggested next phase: \*\*(\w+)\*\*")
WORKFLOW_HISTORY_PATTERN = re.compile(r"(\d+) transitions recorded")
GUIDANCE_CURRENT_PATTERN = re.compile(r"Current phase: (\w+)")
GUIDANCE_NEXT_PATTERN = re.compile(r"Suggested next: (\w+)")
AGENT_LINE_PATTERN = re.compile(r"^- \*\*(.+?)\*\*: (\S+) (.+)$")
AGENT_INSTALL_PATTERN = re.compile(r"^Install: `([^`]+)`")


def _search(patterns: Sequence[re.Pattern[str]], text: str) -> re.Match[str] | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def _artifact_pattern(label: str) -> re.Pattern[str]:
    return re.compile(rf"^\s*(?:- )?{label}: ([^\n]+)$", re.MULTILINE)


WORKFLOW_ARTIFACT_PATTERNS = {
    "spec_path": _artifact_pattern("Spec"),
    "plan_path": _artifact_pattern("Plan"),
    "task_queue_path": _artifact_pattern("Tasks"),
    "verify_path": _artifact_pattern("Verification"),
}


def _basename(path: str) -> str:
    return path.replace("\\", "/").rsplit("/", maxsplit=1)[-1]


def task_status_for_glyph(glyph: str) -> TaskStatusName:
    """Unknown glyphs read as ``pending`` so newer CLI releases still decode."""
    return TASK_STATUS_GLYPHS.get(glyph, "pending")


def decode_plan(stdout: str) -> PlanResult:
    match = _search(PLAN_PATH_PATTERNS, stdout)
    if not match:
        raise DecodeError("plan", stdout)
    full_path = match.group(1).strip()
    return PlanResult(full_path=full_path, filename=_basename(full_path))


def decode_verify(stdout: str) -> VerifyResult:
    match = _search(VERIFY_PATH_PATTERNS, stdout)
    if not match:
        raise DecodeError("verify", stdout)

    status: VerifyStatusName | None = None
    status_match = VERIFY_STATUS_PATTERN.search(stdout)
    if status_match:
        word = status_match.group(1).lower()
        if word in VERIFY_STATUS_WORDS:
            status = cast(VerifyStatusName, word)

    checks_passed: int | None = None
    checks_total: int | None = None
    checks_match = VERIFY_CHECKS_PATTERN.search(stdout)
    if checks_match:
        checks_passed = int(checks_match.group(1))
        checks_total = int(checks_match.group(2))

    return VerifyResult(
        full_path=match.group(1).strip(),
        status=status,
        checks_passed=checks_passed,
        checks_total=checks_total,
    )


def decode_prompt(stdout: str) -> str:
    return stdout.strip()


def decode_spec(stdout: str) -> SpecResult:
    match = _search(SPEC_PATH_PATTERNS, stdout)
    if not match:
        raise DecodeError("spec", stdout)
    full_path = match.group(1).strip()
    title_match = _search(SPEC_TITLE_PATTERNS, stdout)
    return SpecResult(
        full_path=full_path,
        filename=_basename(full_path),
        title=title_match.group(1).strip() if title_match else "",
    )


def decode_map(stdout: str) -> MapResult:
    files_match = MAP_FILES_PATTERN.search(stdout)
    symbols_match = MAP_SYMBOLS_PATTERN.search(stdout)
    languages_match = MAP_LANGUAGES_PATTERN.search(stdout)
    languages: tuple[str, ...] = ()
    if languages_match:
        languages = tuple(
            item.strip() for item in languages_match.group(1).split(",") if item.strip()
        )
    return MapResult(
        content=stdout,
        files_count=int(files_match.group(1)) if files_match else 0,
        symbols_count=int(symbols_match.group(1)) if symbols_match else 0,
        languages=languages,
    )


def _collect_files(lines: list[str], start: int) -> list[str]:
    files: list[str] = []
    for line in lines[start:]:
        item = FILE_ITEM_PATTERN.match(line.strip())
        if not item:
            break
        files.append(item.group(1))
    return files


def decode_task_list(stdout: str) -> DecomposeResult:
    """Decode ``decompose`` and ``tasks list`` output.

    Tasks are accumulated one per ``## <glyph> task-N: title`` line, in
    source order. A ``**Files**:`` block below a header belongs to that task.
    """
    header = TASK_QUEUE_HEADER_PATTERN.search(stdout)
    lines = stdout.splitlines()
    pending: list[dict] = []
    for index, raw_line in enumerate(lines):
        line = raw_line.strip()
        task_match = TASK_HEADER_PATTERN.match(line)
        if task_match:
            pending.append(
                {
                    "id": task_match.group(2),
                    "title": task_match.group(3).strip(),
                    "status": task_status_for_glyph(task_match.group(1)),
                    "files": [],
                }
            )
            continue
        if pending and FILES_BLOCK_PATTERN.match(line):
            pending[-1]["files"].extend(_collect_files(lines, index + 1))

    tasks = tuple(
        TaskInfo(
            id=item["id"],
            title=item["title"],
            status=item["status"],
            files=tuple(item["files"]),
        )
        for item in pending
    )
    return DecomposeResult(
        plan_ref=header.group(1).strip() if header else "",
        tasks_count=len(tasks),
        tasks=tasks,
    )


def decode_task_next(stdout: str) -> TaskResult:
    if any(marker in stdout for marker in ALL_TASKS_DONE_MARKERS):
        return TaskResult(task=None, prompt="", all_completed=True)

    id_match = _search(TASK_ID_PATTERNS, stdout)
    if not id_match:
        return TaskResult(task=None, prompt=stdout, all_completed=False)

    title_match = _search(TASK_TITLE_PATTERNS, stdout)
    lines = stdout.splitlines()
    files: list[str] = []
    for index, raw_line in enumerate(lines):
        if FILES_BLOCK_PATTERN.match(raw_line.strip()):
            files = _collect_files(lines, index + 1)
            break

    task = TaskInfo(
        id=id_match.group(1),
        title=title_match.group(1).strip() if title_match else "",
        status="pending",
        files=tuple(files),
    )
    return TaskResult(task=task, prompt=stdout, all_completed=False)


def _artifact(stdout: str, key: str) -> str | None:
    match = WORKFLOW_ARTIFACT_PATTERNS[key].search(stdout)
    if not match:
        return None
    value = match.group(1).strip()
    if NONE_MARKER in value or not value:
        return None
    return value


def decode_workflow_status(stdout: str) -> WorkflowStatus:
    id_match = WORKFLOW_ID_PATTERN.search(stdout)
    if not id_match:
        raise DecodeError("workflow status", stdout)
    name_match = WORKFLOW_NAME_PATTERN.search(stdout)
    phase_match = WORKFLOW_PHASE_PATTERN.search(stdout)
    next_match = WORKFLOW_NEXT_PATTERN.search(stdout)
    history_match = WORKFLOW_HISTORY_PATTERN.search(stdout)
    return WorkflowStatus(
        id=id_match.group(1),
        name=name_match.group(1).strip() if name_match else "default",
        current_phase=phase_match.group(1) if phase_match else "idle",
        next_phase=next_match.group(1) if next_match else "",
        history_count=int(history_match.group(1)) if history_match else 0,
        spec_path=_artifact(stdout, "spec_path"),
        plan_path=_artifact(stdout, "plan_path"),
        task_queue_path=_artifact(stdout, "task_queue_path"),
        verify_path=_artifact(stdout, "verify_path"),
    )


def decode_workflow_guidance(stdout: str) -> WorkflowGuidance:
    current = GUIDANCE_CURRENT_PATTERN.search(stdout)
    suggested = GUIDANCE_NEXT_PATTERN.search(stdout)
    return WorkflowGuidance(
        current_phase=current.group(1) if current else "idle",
        next_phase=suggested.group(1) if suggested else "",
        guidance=stdout,
    )


def decode_agents(stdout: str) -> AgentStatus:
    agents: list[AgentInfo] = []
    for raw_line in stdout.splitlines():
        line = raw_line.strip()
        agent_match = AGENT_LINE_PATTERN.match(line)
        if agent_match:
            agents.append(
                AgentInfo(
                    name=agent_match.group(1),
                    available=AGENT_AVAILABILITY_GLYPHS.get(agent_match.group(2), False),
                )
            )
            continue
        install_match = AGENT_INSTALL_PATTERN.match(line)
        if install_match and agents and not agents[-1].available:
            previous = agents[-1]
            agents[-1] = AgentInfo(
                name=previous.name,
                available=False,
                install_command=install_match.group(1),
            )
    return AgentStatus(agents=tuple(agents))


def decode_exec_failure(stdout: str) -> str | None:
    """Return the failure line ``opusflow exec`` printed, if any.

    The CLI reports agent failures on stdout and still exits 0.
    """
    match = _search(EXEC_FAILURE_PATTERNS, stdout)
    return match.group(0).strip() if match else None
