"""Tool definitions and implementations for the codebase Q&A agent."""

import fnmatch
import os
import shutil
import subprocess
import sys
from enum import Enum
from pathlib import Path

from .report import ConfigError, ErrorCode, ToolError


class ToolKind(str, Enum):
    READ_FILE = "read_file"
    LIST_DIR = "list_dir"
    SEARCH_TEXT = "search_text"
    GIT_STATUS = "git_status"
    GIT_DIFF = "git_diff"
    WRITE_FILE = "write_file"
    RUN_COMMAND = "run_command"


READONLY_TOOLS = frozenset(
    {
        ToolKind.READ_FILE,
        ToolKind.LIST_DIR,
        ToolKind.SEARCH_TEXT,
        ToolKind.GIT_STATUS,
        ToolKind.GIT_DIFF,
    }
)
WRITE_TOOLS = frozenset({ToolKind.WRITE_FILE, ToolKind.RUN_COMMAND})

TOOL_SCHEMAS = {
    ToolKind.READ_FILE: {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": (
                "Read a text file from the workspace. Returns lines prefixed with "
                "their line numbers. Use start_line/end_line to read a range."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file, relative to the workspace root.",
                    },
                    "start_line": {
                        "type": "integer",
                        "description": "First line to return (1-based, inclusive).",
                    },
                    "end_line": {
                        "type": "integer",
                        "description": "Last line to return (1-based, inclusive).",
                    },
                },
                "required": ["path"],
            },
        },
    },
    ToolKind.LIST_DIR: {
        "type": "function",
        "function": {
            "name": "list_dir",
            "description": (
                "List a directory. Subdirectories are shown with a trailing /."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Directory to list. Defaults to the workspace root.",
                    },
                },
            },
        },
    },
    ToolKind.SEARCH_TEXT: {
        "type": "function",
        "function": {
            "name": "search_text",
            "description": (
                "Search file contents across the workspace. Returns matching lines "
                "as path:line: text. Search for code identifiers, not English words."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "Text or regex to search for.",
                    },
                    "glob": {
                        "type": "string",
                        "description": 'Optional glob to restrict the files searched (e.g. "**/*.py").',
                    },
                    "max_results": {
                        "type": "integer",
                        "description": "Maximum number of matching lines. Defaults to 20.",
                    },
                },
                "required": ["query"],
            },
        },
    },
    ToolKind.GIT_STATUS: {
        "type": "function",
        "function": {
            "name": "git_status",
            "description": "Show the git branch and the short working tree status.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
    ToolKind.GIT_DIFF: {
        "type": "function",
        "function": {
            "name": "git_diff",
            "description": "Show uncommitted changes, optionally staged only or for one path.",
            "parameters": {
                "type": "object",
                "properties": {
                    "staged": {
                        "type": "boolean",
                        "description": "Show staged changes instead of unstaged ones.",
                    },
                    "path": {
                        "type": "string",
                        "description": "Restrict the diff to this path.",
                    },
                },
            },
        },
    },
    ToolKind.WRITE_FILE: {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Create, overwrite or append to a file in the workspace.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path to the file, relative to the workspace root.",
                    },
                    "content": {
                        "type": "string",
                        "description": "Text to write.",
                    },
                    "mode": {
                        "type": "string",
                        "enum": ["overwrite", "append"],
                        "description": "Defaults to overwrite.",
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    ToolKind.RUN_COMMAND: {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": "Run a command and return its output. Only whitelisted commands are allowed.",
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": 'Command as an array of strings (NOT a single string). Correct: ["ls", "-la", "src/"]. Wrong: "ls -la src/".',
                    },
                    "timeout": {
                        "type": "integer",
                        "description": "Timeout in seconds (1-120). Defaults to 30.",
                        "default": 30,
                    },
                },
                "required": ["command"],
            },
        },
    },
}

MAX_READ_BYTES = 500 * 1024  # 500 KB
MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_ENTRIES = 200
DEFAULT_SEARCH_RESULTS = 20
MAX_SEARCH_RESULTS = 100
SEARCH_TIMEOUT = 10  # seconds
GIT_TIMEOUT = 30
MAX_TIMEOUT = 120
_SKIP_DIRS = {"node_modules", "__pycache__"}


def parse_tool_kind(name: str) -> ToolKind:
    """Map a model-supplied tool name onto the closed tool vocabulary."""
    try:
        return ToolKind(name)
    except ValueError:
        raise ToolError(f"unknown tool: {name!r}", ErrorCode.TOOL_NOT_FOUND) from None


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Resolves symlinks for both the base directory and the target path.

    Raises:
        ValueError: If the resolved path escapes the base directory.
    """
    base = Path(base_dir).resolve()

    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if resolved.is_relative_to(base):
        return resolved

    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside base directory {base}"
    )


def resolve_commands(allowed: list[str] | set[str], base_dir: str) -> dict[str, str]:
    """Pin each whitelisted command name to an absolute executable path.

    Commands that live inside the workspace are refused, since the model
    could rewrite them.
    """
    resolved: dict[str, str] = {}
    base_resolved = Path(base_dir).resolve()
    for name in sorted(allowed):
        cmd_path = shutil.which(name)
        if cmd_path is None:
            raise ConfigError(f"allowed command {name!r} not found on PATH")
        abs_path = Path(cmd_path).resolve()
        if abs_path.is_relative_to(base_resolved):
            raise ConfigError(
                f"allowed command {name!r} resolves to {abs_path}, "
                f"which is inside base directory {base_resolved}. "
                f"Commands inside the workspace can be modified by the model."
            )
        resolved[name] = str(abs_path)
    return resolved


# -- Argument helpers ------------------------------------------------------------


def _require_str(args: dict, key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolError(
            f'argument "{key}" must be a non-empty string', ErrorCode.INPUT_MISSING
        )
    return value


def _optional_int(args: dict, key: str, default: int | None = None) -> int | None:
    value = args.get(key, default)
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ToolError(f'argument "{key}" must be an integer')
    return value


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _relative(path: Path, base: Path) -> str:
    try:
        return str(path.relative_to(base))
    except ValueError:
        return str(path)


# -- Handlers --------------------------------------------------------------------


def _read_file(ex: "ToolExecutor", args: dict) -> str:
    file_path = _require_str(args, "path")
    resolved = ex.resolve(file_path)
    if not resolved.exists():
        raise ToolError(
            f"file not found: {file_path}", ErrorCode.INPUT_FILE_NOT_FOUND
        )
    if resolved.is_dir():
        raise ToolError(f"{file_path} is a directory, use list_dir instead")

    try:
        if _is_binary(resolved):
            raise ToolError(f"binary file detected: {file_path}")
        with open(resolved, "rb") as f:
            data = f.read(MAX_READ_BYTES + 1)
    except OSError as e:
        raise ToolError(f"failed to read {file_path}: {e}") from e

    warning = ""
    if len(data) > MAX_READ_BYTES:
        data = data[:MAX_READ_BYTES]
        cut = data.rfind(b"\n")
        if cut != -1:
            data = data[: cut + 1]
        warning = "\n[WARNING: File exceeds 500KB. Only the first 500KB is shown.]"
    text = data.decode("utf-8", errors="replace")

    lines = text.splitlines()
    start = max(_optional_int(args, "start_line", 1) or 1, 1)
    end = _optional_int(args, "end_line")
    end = len(lines) if end is None else min(end, len(lines))

    numbered = []
    for i, line in enumerate(lines[start - 1 : end], start=start):
        if len(line) > MAX_LINE_LENGTH:
            line = line[:MAX_LINE_LENGTH]
        numbered.append(f"{i}: {line}")
    if not numbered:
        return f"(no lines in range {start}-{end}; file has {len(lines)} lines)"
    return "\n".join(numbered) + warning


def _list_dir(ex: "ToolExecutor", args: dict) -> str:
    path = args.get("path") or "."
    resolved = ex.resolve(path)
    if not resolved.exists():
        raise ToolError(f"path does not exist: {path}", ErrorCode.INPUT_FILE_NOT_FOUND)
    if not resolved.is_dir():
        raise ToolError(f"path is not a directory: {path}")

    try:
        children = sorted(c for c in resolved.iterdir() if c.name != ".git")
    except OSError as e:
        raise ToolError(f"failed to list {path}: {e}") from e

    entries = [c.name + ("/" if c.is_dir() else "") for c in children]
    if not entries:
        return "(empty directory)"
    result = "\n".join(entries[:MAX_LIST_ENTRIES])
    if len(entries) > MAX_LIST_ENTRIES:
        result += f"\n[… {len(entries) - MAX_LIST_ENTRIES} more entries]"
    return result


def _rg_search(query: str, root: Path, glob: str | None, max_results: int) -> list[str]:
    """Search with ripgrep. Raises OSError or RuntimeError when it cannot be used."""
    cmd = [
        "rg",
        "--line-number",
        "--no-heading",
        "--color=never",
        f"--max-count={max_results}",
    ]
    if glob:
        cmd += ["--glob", glob]
    cmd += ["-e", query, "."]
    try:
        proc = subprocess.run(
            cmd,
            cwd=root,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=SEARCH_TIMEOUT,
        )
    except subprocess.TimeoutExpired as e:
        raise RuntimeError("ripgrep timed out") from e
    # 1 means no matches
    if proc.returncode not in (0, 1):
        raise RuntimeError(f"rg exited with code {proc.returncode}: {proc.stderr}")

    results = []
    for raw in proc.stdout.splitlines():
        parts = raw.split(":", 2)
        if len(parts) != 3:
            continue
        path, line_no, text = parts
        results.append(f"{path.removeprefix('./')}:{line_no}: {text.strip()}")
        if len(results) >= max_results:
            break
    return results


def _glob_matches(rel: str, name: str, glob: str) -> bool:
    if fnmatch.fnmatch(rel, glob) or fnmatch.fnmatch(name, glob):
        return True
    return glob.startswith("**/") and fnmatch.fnmatch(name, glob[3:])


def _walk_search(query: str, root: Path, glob: str | None, max_results: int) -> list[str]:
    """Case-insensitive substring search used when ripgrep is unavailable."""
    needle = query.lower()
    results: list[str] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = sorted(
            d for d in dirs if not d.startswith(".") and d not in _SKIP_DIRS
        )
        for filename in sorted(files):
            filepath = Path(dirpath) / filename
            rel = _relative(filepath, root)
            if glob and not _glob_matches(rel, filename, glob):
                continue
            try:
                if _is_binary(filepath):
                    continue
                text = filepath.read_text(encoding="utf-8", errors="replace")
            except OSError:
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if needle in line.lower():
                    results.append(f"{rel}:{line_no}: {line.strip()[:MAX_LINE_LENGTH]}")
                    if len(results) >= max_results:
                        return results
    return results


def _search_text(ex: "ToolExecutor", args: dict) -> str:
    query = _require_str(args, "query")
    glob = args.get("glob") or None
    max_results = _optional_int(args, "max_results", DEFAULT_SEARCH_RESULTS)
    if max_results is None or max_results <= 0:
        max_results = DEFAULT_SEARCH_RESULTS
    max_results = min(max_results, MAX_SEARCH_RESULTS)

    try:
        matches = _rg_search(query, ex.root, glob, max_results)
    except (OSError, RuntimeError):
        matches = _walk_search(query, ex.root, glob, max_results)

    if not matches:
        return "No matches found."
    return "\n".join(matches)


def _git(ex: "ToolExecutor", *git_args: str) -> str:
    try:
        proc = subprocess.run(
            ["git", *git_args],
            cwd=ex.root,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=GIT_TIMEOUT,
        )
    except FileNotFoundError as e:
        raise ToolError("git is not installed") from e
    except subprocess.TimeoutExpired as e:
        raise ToolError(f"git timed out after {GIT_TIMEOUT}s") from e
    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"exit code {proc.returncode}"
        raise ToolError(f"git {git_args[0]} failed: {detail}")
    return proc.stdout


def _git_status(ex: "ToolExecutor", args: dict) -> str:
    out = _git(ex, "status", "--short", "--branch").rstrip()
    lines = out.splitlines()
    if len(lines) <= 1:
        return (out + "\n" if out else "") + "Working tree clean."
    return out


def _git_diff(ex: "ToolExecutor", args: dict) -> str:
    git_args = ["diff"]
    if args.get("staged"):
        git_args.append("--staged")
    path = args.get("path")
    if path:
        ex.resolve(path)
        git_args += ["--", path]
    out = _git(ex, *git_args)
    if not out.strip():
        return "No changes."
    encoded = out.encode("utf-8")
    if len(encoded) > MAX_OUTPUT_BYTES:
        out = encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
        out += "\n[diff truncated at 50KB]"
    return out.rstrip()


def _write_file(ex: "ToolExecutor", args: dict) -> str:
    file_path = _require_str(args, "path")
    content = args.get("content")
    if not isinstance(content, str):
        raise ToolError('argument "content" must be a string', ErrorCode.INPUT_MISSING)
    mode = args.get("mode") or "overwrite"
    if mode not in ("overwrite", "append"):
        raise ToolError(f'argument "mode" must be overwrite or append, got {mode!r}')

    resolved = ex.resolve(file_path)
    data = content.encode("utf-8")
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        with open(resolved, "ab" if mode == "append" else "wb") as f:
            f.write(data)
    except OSError as e:
        raise ToolError(f"failed to write {file_path}: {e}") from e
    verb = "Appended" if mode == "append" else "Wrote"
    return f"{verb} {len(data)} bytes to {file_path}"


def _run_command(ex: "ToolExecutor", args: dict) -> str:
    command = args.get("command")
    if isinstance(command, str):
        raise ToolError(
            '"command" must be a JSON array of strings, not a single string. '
            'Right: ["grep", "-n", "pattern", "file.py"]'
        )
    if not command or not all(isinstance(c, str) for c in command):
        raise ToolError("command list is empty", ErrorCode.INPUT_MISSING)

    cmd_name = command[0]
    allowed = ", ".join(sorted(ex.resolved_commands)) or "(none)"
    if "/" in cmd_name or "\\" in cmd_name:
        raise ToolError(
            f"command must be a bare name, not a path: {cmd_name!r}. "
            f"Allowed commands: {allowed}",
            ErrorCode.TOOL_DENIED,
        )
    resolved_path = ex.resolved_commands.get(cmd_name)
    if resolved_path is None:
        raise ToolError(
            f"command {cmd_name!r} is not allowed. Allowed commands: {allowed}",
            ErrorCode.TOOL_DENIED,
        )

    timeout = _optional_int(args, "timeout", 30)
    timeout = max(1, min(timeout, MAX_TIMEOUT))

    run_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=ex.root,
        timeout=timeout,
    )
    if sys.platform != "win32":
        run_kwargs["start_new_session"] = True
    try:
        proc = subprocess.run([resolved_path] + command[1:], **run_kwargs)
    except subprocess.TimeoutExpired as e:
        raise ToolError(f"command timed out after {timeout}s") from e
    except OSError as e:
        raise ToolError(f"failed to start command: {e}") from e

    raw = proc.stdout or b""
    truncated = len(raw) > MAX_OUTPUT_BYTES
    output = raw[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace")

    parts = []
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if output:
        parts.append(output.rstrip())
    if truncated:
        parts.append("[output truncated at 50KB]")
    return "\n".join(parts) if parts else "(no output)"


_HANDLERS = {
    ToolKind.READ_FILE: _read_file,
    ToolKind.LIST_DIR: _list_dir,
    ToolKind.SEARCH_TEXT: _search_text,
    ToolKind.GIT_STATUS: _git_status,
    ToolKind.GIT_DIFF: _git_diff,
    ToolKind.WRITE_FILE: _write_file,
    ToolKind.RUN_COMMAND: _run_command,
}


def _confirm_with_prompt(message: str) -> bool:
    from prompt_toolkit.shortcuts import confirm

    return confirm(message)


def _describe_call(kind: ToolKind, args: dict) -> str:
    if kind is ToolKind.WRITE_FILE:
        return f"write_file {args.get('path')!r}"
    command = args.get("command")
    if isinstance(command, list):
        command = " ".join(str(c) for c in command)
    return f"run_command {command!r}"


class ToolExecutor:
    """Runs tools inside one workspace root.

    Every failure is raised as a ToolError carrying an ErrorCode; the agent
    loop turns those into tool-result text.
    """

    def __init__(
        self,
        workspace_root: str,
        *,
        allow_writes: bool = False,
        tool_policy: str = "ask",
        resolved_commands: dict[str, str] | None = None,
        confirm=None,
    ):
        self.root = Path(workspace_root).resolve()
        self.allow_writes = allow_writes
        self.tool_policy = tool_policy
        self.resolved_commands = resolved_commands or {}
        self._confirm = confirm or _confirm_with_prompt

    def resolve(self, path: str) -> Path:
        try:
            return safe_resolve(path, str(self.root))
        except ValueError as e:
            raise ToolError(str(e), ErrorCode.TOOL_DENIED) from e

    def available(self) -> list[ToolKind]:
        kinds = [k for k in ToolKind if k in READONLY_TOOLS]
        if self.allow_writes and self.tool_policy != "never":
            kinds.append(ToolKind.WRITE_FILE)
            if self.resolved_commands:
                kinds.append(ToolKind.RUN_COMMAND)
        return kinds

    def schemas(self) -> list[dict]:
        return [TOOL_SCHEMAS[k] for k in self.available()]

    def _check_write_allowed(self, kind: ToolKind, args: dict) -> None:
        if not self.allow_writes:
            raise ToolError(
                f"{kind.value} is disabled; start with --allow-writes to enable it",
                ErrorCode.TOOL_DENIED,
            )
        if self.tool_policy == "never":
            raise ToolError(
                f"{kind.value} is blocked by tool_policy=never", ErrorCode.TOOL_DENIED
            )
        if self.tool_policy == "ask":
            if not self._confirm(f"Allow {_describe_call(kind, args)}? "):
                raise ToolError(
                    f"{kind.value} was declined by the user", ErrorCode.TOOL_DENIED
                )

    def execute(self, name: str, args: dict | None) -> str:
        kind = parse_tool_kind(name)
        args = args or {}
        if kind in WRITE_TOOLS:
            self._check_write_allowed(kind, args)
        return _HANDLERS[kind](self, args)
