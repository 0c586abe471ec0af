from __future__ import annotations

import json
import os

import pytest

from ragquery.services.prompt_store import PromptCatalog, catalog


def _write(path, payload, mtime_ns):
    path.write_text(json.dumps(payload), encoding="utf-8")
    os.utime(path, ns=(mtime_ns, mtime_ns))


def test_shipped_catalog_covers_every_rendered_prompt():
    assert {
        "planner.system",
        "planner.user",
        "answer.web_search",
        "answer.stored_sources",
        "answer.source_block",
        "answer.no_sources",
    } <= set(catalog.keys())


def test_list_entries_are_joined_into_lines(tmp_path):
    path = tmp_path / "prompts.json"
    _write(path, {"greet": {"long": ["Hello $name.", "Bye."]}}, 1_000_000_000)

    assert PromptCatalog(path).render("greet.long", name="Ada") == "Hello Ada.\nBye."


def test_missing_values_are_all_named(tmp_path):
    path = tmp_path / "prompts.json"
    _write(path, {"p": "$a and $b, but $$c is literal"}, 1_000_000_000)
    prompts = PromptCatalog(path)

    with pytest.raises(KeyError, match="a, b"):
        prompts.render("p")
    assert prompts.render("p", a=1, b=2) == "1 and 2, but $c is literal"


def test_unknown_key_and_non_text_entry(tmp_path):
    path = tmp_path / "prompts.json"
    _write(path, {"n": 3}, 1_000_000_000)

    with pytest.raises(TypeError, match="n is not text"):
        PromptCatalog(path).keys()

    _write(path, {"n": "x"}, 2_000_000_000)
    with pytest.raises(KeyError, match="Unknown prompt: m"):
        PromptCatalog(path).render("m")


def test_edited_file_is_reloaded(tmp_path):
    path = tmp_path / "prompts.json"
    _write(path, {"p": "old"}, 1_000_000_000)
    prompts = PromptCatalog(path)
    assert prompts.render("p") == "old"

    _write(path, {"p": "new"}, 2_000_000_000)

    assert prompts.render("p") == "new"
