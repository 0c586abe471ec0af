"""Prompt catalog kept in ``prompts/prompts.json``.

Entries are `string.Template` text addressed by dotted keys
(``answer.web_search``). Long prompts may be stored as a list of lines.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any, Iterator

PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


def _walk(node: dict[str, Any], prefix: str = "") -> Iterator[tuple[str, Any]]:
    for name, value in node.items():
        key = f"{prefix}{name}"
        if isinstance(value, dict):
            yield from _walk(value, f"{key}.")
        else:
            yield key, value


def _as_text(key: str, value: Any) -> str:
    if isinstance(value, list):
        value = "\n".join(str(line) for line in value)
    if not isinstance(value, str):
        raise TypeError(f"Prompt {key} is not text")
    return value


class PromptCatalog:
    """Flattened templates from one JSON file, re-read when the file changes."""

    def __init__(self, path: Path | str = PROMPTS_PATH):
        self.path = Path(path)
        self._templates: dict[str, Template] = {}
        self._mtime_ns: int | None = None

    def _refresh(self) -> dict[str, Template]:
        mtime_ns = self.path.stat().st_mtime_ns
        if self._mtime_ns == mtime_ns:
            return self._templates
        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"{self.path.name} must hold a JSON object")
        self._templates = {key: Template(_as_text(key, value)) for key, value in _walk(payload)}
        self._mtime_ns = mtime_ns
        return self._templates

    def keys(self) -> list[str]:
        return sorted(self._refresh())

    def template(self, key: str) -> Template:
        try:
            return self._refresh()[key]
        except KeyError:
            raise KeyError(f"Unknown prompt: {key}") from None

    def render(self, key: str, **values: Any) -> str:
        template = self.template(key)
        missing = [name for name in template.get_identifiers() if name not in values]
        if missing:
            raise KeyError(f"Prompt {key} needs values for {', '.join(missing)}")
        return template.substitute(**values)


catalog = PromptCatalog()


def render_prompt(key: str, **values: Any) -> str:
    return catalog.render(key, **values)
