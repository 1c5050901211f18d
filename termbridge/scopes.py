"""Launch profiles — the startup command each session scope runs."""

from __future__ import annotations

import shlex

from termbridge.models import SessionScope

DEFAULT_AGENT_PROMPT = (
    "You are already in the correct worktree. Read TASK.md first, then implement the task. "
    "Treat AI context and todo checklist as highest-priority instructions."
)

_LABELS: dict[SessionScope, str] = {
    SessionScope.TERMINAL: "Terminal",
    SessionScope.CLAUDE: "Claude",
    SessionScope.CODEX: "Codex",
    SessionScope.GEMINI: "Gemini CLI",
    SessionScope.OPENCODE: "OpenCode",
}

_SKIP_PERMISSION_FLAGS: dict[SessionScope, str] = {
    SessionScope.CLAUDE: "--dangerously-skip-permissions",
    SessionScope.CODEX: "--dangerously-bypass-approvals-and-sandbox",
    SessionScope.GEMINI: "--yolo",
}


def scope_label(scope: SessionScope) -> str:
    """Human-readable name for a scope."""
    return _LABELS[scope]


def build_startup_command(
    scope: SessionScope,
    prompt: str | None = None,
    skip_permissions: bool = False,
) -> str | None:
    """
    Build the command the login shell runs for a scope.

    Agent commands start with ``exec`` so the shell is replaced by the agent
    and the pty's exit code is the agent's own. Plain terminals return None,
    meaning an interactive shell.
    """
    if not scope.is_agent:
        return None

    program = scope.value
    args: list[str] = []
    prefix = ""

    if skip_permissions:
        if scope is SessionScope.OPENCODE:
            prefix = "env OPENCODE_PERMISSION=" + shlex.quote('{"*":"allow"}') + " "
        else:
            args.append(_SKIP_PERMISSION_FLAGS[scope])

    if prompt:
        quoted = shlex.quote(prompt)
        if scope is SessionScope.GEMINI:
            args.extend(["-i", quoted])
        elif scope is SessionScope.OPENCODE:
            args.extend(["--prompt", quoted])
        else:
            args.append(quoted)

    invocation = " ".join([program, *args])
    return f"exec {prefix}{invocation}"
