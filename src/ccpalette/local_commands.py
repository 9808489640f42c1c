"""Custom slash commands stored as markdown files.

Project commands live in ``<project>/.claude/commands`` and user commands in
``~/.claude/commands``. A file may start with YAML frontmatter::

    ---
    description: Optimise the selected code
    allowed-tools: [Read, Edit]
    argument-hint: <path>
    ---
    Please optimise $ARGUMENTS

Sub-directories become ``:``-separated namespaces, so
``frontend/component.md`` is invoked as ``/frontend:component``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Iterable, Literal

import yaml
from pydantic import ValidationError

from ccpalette.schema import CommandDescriptor, CommandSource, normalize_command_name

logger = logging.getLogger(__name__)

Scope = Literal["project", "user"]
ARGUMENTS_PLACEHOLDER = "$ARGUMENTS"
_FRONTMATTER_END = re.compile(r"\n---\s*(?:\n|$)")


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split markdown into (frontmatter, body); bad YAML keeps the whole text as body."""
    if not content.startswith("---"):
        return {}, content
    end = _FRONTMATTER_END.search(content, 3)
    if end is None:
        return {}, content
    try:
        meta = yaml.safe_load(content[3 : end.start()]) or {}
    except yaml.YAMLError as exc:
        logger.debug("Ignoring malformed frontmatter: %s", exc)
        return {}, content
    if not isinstance(meta, dict):
        return {}, content
    return meta, content[end.end() :].lstrip("\n")


def _tools(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if isinstance(value, Iterable):
        return tuple(str(item) for item in value)
    return ()


def expand_arguments(descriptor: CommandDescriptor, argument: str) -> str:
    """Render a custom command body for dispatch."""
    body = descriptor.content or descriptor.summary
    if ARGUMENTS_PLACEHOLDER in body:
        return body.replace(ARGUMENTS_PLACEHOLDER, argument)
    return f"{body}\n\n{argument}".strip() if argument else body


class LocalCommandStore:
    """Discover, save and delete markdown custom commands."""

    def __init__(self, project_dir: Path | None, user_dir: Path | None) -> None:
        self.project_root = project_dir / ".claude" / "commands" if project_dir else None
        self.user_root = user_dir / "commands" if user_dir else None

    def _root(self, scope: Scope) -> Path:
        root = self.project_root if scope == "project" else self.user_root
        if root is None:
            raise ValueError(f"no directory configured for {scope} commands")
        return root

    def load(self) -> list[CommandDescriptor]:
        """Project commands first; a user command with the same name is skipped."""
        seen: dict[str, CommandDescriptor] = {}
        roots: list[tuple[Scope, Path | None]] = [("project", self.project_root), ("user", self.user_root)]
        for scope, root in roots:
            if root is None or not root.is_dir():
                continue
            for path in sorted(self._markdown_files(root)):
                try:
                    descriptor = self._load_file(path, root, scope)
                except (OSError, UnicodeDecodeError, ValueError, ValidationError) as exc:
                    logger.warning("Skipping custom command %s: %s", path, exc)
                    continue
                if descriptor.name in seen:
                    logger.debug("Custom command /%s from %s shadowed", descriptor.name, path)
                    continue
                seen[descriptor.name] = descriptor
        logger.debug("Loaded %d custom commands", len(seen))
        return list(seen.values())

    @staticmethod
    def _markdown_files(root: Path) -> Iterable[Path]:
        for path in root.rglob("*.md"):
            relative = path.relative_to(root)
            if any(part.startswith(".") for part in relative.parts):
                continue
            if path.is_file():
                yield path

    @staticmethod
    def _load_file(path: Path, root: Path, scope: Scope) -> CommandDescriptor:
        meta, body = parse_frontmatter(path.read_text(encoding="utf-8"))
        parts = path.relative_to(root).with_suffix("").parts
        namespace = ":".join(parts[:-1]) or None
        name = ":".join(parts)
        description = meta.get("description")
        hint = str(meta.get("argument-hint") or "")
        return CommandDescriptor(
            name=name,
            summary=str(description) if description else _first_line(body),
            source=CommandSource.LOCAL_OVERRIDE,
            hint=hint,
            accepts_arguments=ARGUMENTS_PLACEHOLDER in body or bool(hint),
            namespace=namespace,
            scope=scope,
            file_path=str(path),
            content=body,
            allowed_tools=_tools(meta.get("allowed-tools")),
            has_bash_commands="!`" in body,
            has_file_references="@" in body,
        )

    def save(
        self,
        scope: Scope,
        name: str,
        content: str,
        *,
        namespace: str | None = None,
        description: str | None = None,
        allowed_tools: Iterable[str] = (),
    ) -> CommandDescriptor:
        """Create or overwrite a custom command file and return it as loaded."""
        name = normalize_command_name(name)
        if not name or ":" in name or "/" in name:
            raise ValueError("command name cannot be empty or contain ':' or '/'")
        root = self._root(scope)
        directory = root
        for component in (namespace or "").split(":"):
            if component:
                directory = directory / component
        directory.mkdir(parents=True, exist_ok=True)

        meta: dict[str, Any] = {}
        if description:
            meta["description"] = description
        tools = list(allowed_tools)
        if tools:
            meta["allowed-tools"] = tools
        text = content
        if meta:
            text = f"---\n{yaml.safe_dump(meta, sort_keys=False)}---\n\n{content}"

        path = directory / f"{name}.md"
        path.write_text(text, encoding="utf-8")
        logger.info("Saved custom command %s", path)
        return self._load_file(path, root, scope)

    def delete(self, name: str, scope: Scope) -> Path:
        """Remove ``/name`` from ``scope`` and prune empty namespace directories."""
        root = self._root(scope)
        parts = normalize_command_name(name).split(":")
        path = root.joinpath(*parts[:-1], f"{parts[-1]}.md")
        if not path.is_file():
            raise FileNotFoundError(f"no {scope} command /{name}")
        path.unlink()
        parent = path.parent
        while parent != root and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent
        logger.info("Deleted custom command %s", path)
        return path


def _first_line(body: str) -> str:
    for line in body.splitlines():
        stripped = line.strip().lstrip("#").strip()
        if stripped:
            return stripped[:100]
    return ""
