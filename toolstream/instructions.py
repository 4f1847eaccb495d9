"""Prompt templates for the loop's own backend calls.

Two prompts ship with the package: history compression and tool-result
extraction. A file of the same name in the personal directory
(``~/.toolstream/instructions/`` or ``$TOOLSTREAM_INSTRUCTIONS_DIR``) replaces
the packaged one.
"""

from __future__ import annotations

import os
from pathlib import Path

COMPRESS_HISTORY = "compress_history_prompt.md"
TOOL_RESULT_EXTRACTION = "tool_result_extraction_prompt.md"

PACKAGED_DIR = Path(__file__).resolve().parent / "instructions"


def _default_personal_dir() -> Path:
    configured = os.getenv("TOOLSTREAM_INSTRUCTIONS_DIR")
    return Path(configured or "~/.toolstream/instructions").expanduser()


class _KeepUnknownPlaceholders(dict[str, str]):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Find, cache and fill prompt templates."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = Path(base_dir).expanduser() if base_dir is not None else PACKAGED_DIR
        self.personal_dir = (
            Path(personal_dir).expanduser() if personal_dir is not None else _default_personal_dir()
        )
        self._templates: dict[str, str] = {}

    def is_overridden(self, name: str) -> bool:
        return (self.personal_dir / name).is_file()

    def load(self, name: str) -> str:
        """Return template text, personal copy first.

        Raises:
            FileNotFoundError if neither directory holds ``name``
        """
        if name in self._templates:
            return self._templates[name]

        candidates = [self.personal_dir / name, self.base_dir / name]
        for path in candidates:
            if path.is_file():
                text = path.read_text(encoding="utf-8").strip()
                self._templates[name] = text
                return text
        tried = ", ".join(str(p) for p in candidates)
        raise FileNotFoundError(f"Prompt template {name} not found (tried {tried})")

    def render(self, name: str, **values: object) -> str:
        """Fill ``{placeholders}``; unknown ones are left as written."""
        filled = _KeepUnknownPlaceholders({key: str(value) for key, value in values.items()})
        return self.load(name).format_map(filled)

    def compression_prompt(self, history: str) -> str:
        return self.render(COMPRESS_HISTORY, history=history)

    def extraction_prompt(
        self,
        user_query: str,
        tool_name: str,
        tool_arguments: str,
        tool_result: str,
    ) -> str:
        return self.render(
            TOOL_RESULT_EXTRACTION,
            user_query=user_query,
            tool_name=tool_name,
            tool_arguments=tool_arguments,
            tool_result=tool_result,
        )


_loader: InstructionLoader | None = None


def get_instructions() -> InstructionLoader:
    """Shared loader for the default directories."""
    global _loader
    if _loader is None:
        _loader = InstructionLoader()
    return _loader
