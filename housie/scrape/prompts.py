"""Extraction prompts: the instruction handed to the scrape delegate."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

import yaml

from housie.orchestrator.errors import PromptError


class PromptProvider(Protocol):
    async def active_prompt(self) -> str: ...


@dataclass
class Prompt:
    """A named extraction prompt; at most one is active at a time."""

    id: str
    name: str
    prompt: str
    description: Optional[str] = None
    is_active: bool = False


def load_prompts(path: Path) -> List[Prompt]:
    """Parse the ``prompts:`` list; a malformed file raises ``PromptError``."""
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict) or not isinstance(data.get("prompts", []), list):
        raise PromptError(f"{path} must map 'prompts' to a list of entries")
    prompts = []
    for index, item in enumerate(data.get("prompts", [])):
        if not isinstance(item, dict) or "id" not in item or "prompt" not in item:
            raise PromptError(f"Prompt entry {index} in {path} needs an 'id' and a 'prompt'")
        prompts.append(
            Prompt(
                id=str(item["id"]),
                name=str(item.get("name", item["id"])),
                prompt=str(item["prompt"]),
                description=item.get("description"),
                is_active=bool(item.get("active", False)),
            )
        )
    return prompts


class FilePromptProvider:
    """Reads the active prompt from a YAML file on every call.

    Re-reading lets operators switch prompts without restarting the worker.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    async def active_prompt(self) -> str:
        try:
            prompts = load_prompts(self._path)
        except (OSError, yaml.YAMLError) as exc:
            raise PromptError(f"Could not load prompts from {self._path}", cause=exc) from exc
        for prompt in prompts:
            if prompt.is_active:
                return prompt.prompt
        raise PromptError(f"No active prompt in {self._path}")


class StaticPromptProvider:
    def __init__(self, prompt: str) -> None:
        self._prompt = prompt

    async def active_prompt(self) -> str:
        return self._prompt
