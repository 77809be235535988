"""CODEASK.md: persistent, user-editable project notes.

The notes file is read into the system prompt on every question. When it
does not exist, a lighter overview is discovered from the workspace
instead. After each answered question the files and searches the agent
used are folded into an auto-maintained "Frequently Accessed Files"
section.
"""

import json
import re
import tomllib
from collections import Counter
from pathlib import Path

NOTES_FILENAME = "CODEASK.md"
MAX_NOTES_CHARS = 10_000
MAX_TREE_DEPTH = 3
MAX_TOP_FILES = 15
MAX_QUERIES = 10

USAGE_SECTION_HEADER = "## Frequently Accessed Files"
USAGE_SECTION_MARKER = "<!-- codeask-auto-usage -->"

_NOISE_DIRS = {
    "node_modules",
    "dist",
    "build",
    "coverage",
    "__pycache__",
    "target",
    "out",
    "venv",
}
_USAGE_LINE_RE = re.compile(r"^- `(?P<path>[^`]+)` \((?P<count>\d+)x\)$")

# (marker file, language, extension hint); first match wins
_LANGUAGE_MARKERS = [
    ("tsconfig.json", "TypeScript", "`.ts` / `.tsx`"),
    ("package.json", "JavaScript", "`.js` / `.jsx`"),
    ("pyproject.toml", "Python", "`.py`"),
    ("setup.py", "Python", "`.py`"),
    ("requirements.txt", "Python", "`.py`"),
    ("go.mod", "Go", "`.go`"),
    ("Cargo.toml", "Rust", "`.rs`"),
]


def notes_path(root: str) -> Path:
    return Path(root).resolve() / NOTES_FILENAME


def load_notes(root: str) -> str | None:
    """Return the contents of CODEASK.md, or None if there is none."""
    path = notes_path(root)
    if not path.is_file():
        return None
    try:
        with path.open(encoding="utf-8", errors="replace") as f:
            content = f.read(MAX_NOTES_CHARS + 1)
    except OSError:
        return None
    if len(content) > MAX_NOTES_CHARS:
        content = (
            content[:MAX_NOTES_CHARS]
            + f"\n[truncated: {NOTES_FILENAME} exceeds {MAX_NOTES_CHARS} character limit]"
        )
    return content


# -- Discovery ---------------------------------------------------------------------


def build_tree(directory: Path, prefix: str = "", depth: int = 0) -> list[str]:
    """Directory tree lines, directories first, hidden and build dirs skipped."""
    if depth > MAX_TREE_DEPTH:
        return []
    try:
        entries = [
            e
            for e in directory.iterdir()
            if not e.name.startswith(".") and e.name not in _NOISE_DIRS
        ]
    except OSError:
        return []
    entries.sort(key=lambda e: (not e.is_dir(), e.name))

    lines = []
    for i, entry in enumerate(entries):
        last = i == len(entries) - 1
        connector = "└── " if last else "├── "
        if entry.is_dir():
            lines.append(f"{prefix}{connector}{entry.name}/")
            child_prefix = prefix + ("    " if last else "│   ")
            lines.extend(build_tree(entry, child_prefix, depth + 1))
        else:
            lines.append(f"{prefix}{connector}{entry.name}")
    return lines


def _python_metadata(root: Path) -> dict:
    try:
        with (root / "pyproject.toml").open("rb") as f:
            project = tomllib.load(f).get("project", {})
    except (OSError, tomllib.TOMLDecodeError):
        return {}
    deps = [re.split(r"[<>=!~\[; ]", d, maxsplit=1)[0] for d in project.get("dependencies", [])]
    return {
        "name": project.get("name"),
        "description": project.get("description", ""),
        "dependencies": [d for d in deps if d],
        "scripts": dict(project.get("scripts", {})),
    }


def _node_metadata(root: Path) -> dict:
    try:
        pkg = json.loads((root / "package.json").read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if not isinstance(pkg, dict):
        return {}
    return {
        "name": pkg.get("name"),
        "description": pkg.get("description", ""),
        "dependencies": list(pkg.get("dependencies", {}) or {}),
        "scripts": dict(pkg.get("scripts", {}) or {}),
    }


def discover_project(root: str) -> dict:
    """Best-effort facts about the project at ``root``."""
    base = Path(root).resolve()
    info = {
        "name": base.name,
        "language": "unknown",
        "extensions": "",
        "description": "",
        "dependencies": [],
        "scripts": {},
    }
    for marker, language, extensions in _LANGUAGE_MARKERS:
        if (base / marker).exists():
            info["language"] = language
            info["extensions"] = extensions
            break

    meta = _node_metadata(base) if (base / "package.json").exists() else {}
    if not meta:
        meta = _python_metadata(base)
    for key, value in meta.items():
        if value:
            info[key] = value
    return info


def build_workspace_context(root: str) -> str:
    """Short overview used in place of CODEASK.md when that file is missing."""
    info = discover_project(root)
    lines = [f"Project: {info['name']}", f"Language: {info['language']}"]
    if info["extensions"]:
        lines.append(f"Source files: {info['extensions']}")
    if info["description"]:
        lines.append(f"Description: {info['description']}")
    if info["dependencies"]:
        lines.append("Dependencies: " + ", ".join(info["dependencies"][:20]))
    tree = build_tree(Path(root).resolve(), depth=1)
    if tree:
        lines += ["", "Structure:", *tree]
    return "\n".join(lines)


def generate_notes(root: str) -> str:
    """Build a starter CODEASK.md for ``--init-notes``."""
    info = discover_project(root)
    out = [
        f"# {info['name']}",
        "",
        "> Generated by `codeask --init-notes`. Edit freely: codeask reads this",
        "> file before answering every question about the project.",
        "",
        "## Overview",
        "",
    ]
    if info["description"]:
        out += [info["description"], ""]
    out += ["| Property | Value |", "|----------|-------|"]
    out.append(f"| Language | {info['language']} |")
    if info["extensions"]:
        out.append(f"| File extensions | {info['extensions']} |")
    out.append("")

    if info["scripts"]:
        out += ["## Scripts", "", "```"]
        out += [f"{name}  # {cmd}" for name, cmd in info["scripts"].items()]
        out += ["```", ""]

    tree = build_tree(Path(root).resolve())
    if tree:
        out += ["## Directory Structure", "", "```", *tree, "```", ""]

    if info["dependencies"]:
        out += ["## Key Dependencies", ""]
        out += [f"- `{dep}`" for dep in info["dependencies"]]
        out.append("")

    for title, hint in [
        ("Architecture Notes", "key patterns, design decisions"),
        ("Coding Conventions", "naming, style, import patterns"),
        ("Important Context", "anything else worth knowing when answering questions"),
    ]:
        out += [f"## {title}", "", f"<!-- {hint} -->", ""]
    return "\n".join(out)


def write_notes(root: str, content: str) -> Path:
    path = notes_path(root)
    path.write_text(content, encoding="utf-8")
    return path


# -- Usage section -----------------------------------------------------------------


def _usage_span(text: str) -> tuple[int, int] | None:
    """Character span of the existing usage section, header included."""
    start = text.find(USAGE_SECTION_MARKER)
    if start == -1:
        return None
    end = text.find(USAGE_SECTION_MARKER, start + len(USAGE_SECTION_MARKER))
    if end == -1:
        return None
    header = text.rfind(USAGE_SECTION_HEADER, 0, start)
    return (header if header != -1 else start), end + len(USAGE_SECTION_MARKER)


def parse_usage_counts(text: str) -> Counter:
    span = _usage_span(text)
    counts: Counter = Counter()
    if span is None:
        return counts
    for line in text[span[0] : span[1]].splitlines():
        match = _USAGE_LINE_RE.match(line.strip())
        if match:
            counts[match["path"]] += int(match["count"])
    return counts


def render_usage_section(counts: Counter, queries: list[str]) -> str:
    top = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))[:MAX_TOP_FILES]
    lines = [
        USAGE_SECTION_HEADER,
        "",
        USAGE_SECTION_MARKER,
        "",
        "> Maintained by codeask. These are the files examined most often when",
        "> answering questions; they are good places to start searching.",
        "",
        *(f"- `{path}` ({count}x)" for path, count in top),
        "",
    ]
    if queries:
        lines += ["### Common Search Patterns", ""]
        lines += [f"- `{q}`" for q in queries[:MAX_QUERIES]]
        lines.append("")
    lines.append(USAGE_SECTION_MARKER)
    return "\n".join(lines)


def update_notes(root: str, access_log) -> bool:
    """Fold one run's file reads and searches into CODEASK.md.

    Does nothing (and returns False) when there is no notes file or the run
    read no files. Raises OSError if the file cannot be rewritten and
    UnicodeDecodeError if it is not UTF-8; the file is left untouched then.
    """
    path = notes_path(root)
    if not path.is_file() or not access_log.files_read:
        return False
    existing = path.read_text(encoding="utf-8")

    counts = parse_usage_counts(existing)
    counts.update(sorted(access_log.files_read))
    section = render_usage_section(counts, sorted(access_log.search_queries))

    span = _usage_span(existing)
    if span is not None:
        updated = existing[: span[0]] + section + existing[span[1] :]
    else:
        updated = existing.rstrip() + "\n\n" + section + "\n"
    path.write_text(updated, encoding="utf-8")
    return True
