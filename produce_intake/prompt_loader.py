from __future__ import annotations

from pathlib import Path
from string import Template


def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt template as UTF-8 text and strip BOM if present.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: None; pure function reading the filesystem.
    Dependencies: Uses Path.read_text/read_bytes; used by the AI collaborators.
    Failure Modes: UnicodeDecodeError triggers a tolerant decode that drops invalid bytes;
        a missing file raises FileNotFoundError.
    If Removed: Order parsing and invoice extraction have no instructions to send.
    Testing Notes: Validate BOM-stripping and fallback decoding on non-UTF8 files.
    """
    # Read as UTF-8 and fall back to a tolerant decode if needed.
    try:
        return prompt_path.read_text(encoding="utf-8").lstrip("\ufeff")
    except UnicodeDecodeError:
        raw = prompt_path.read_bytes()
        return raw.decode("utf-8", errors="ignore").lstrip("\ufeff")


def render_prompt(prompts_dir: Path, name: str, **values: object) -> str:
    """Fill ``$placeholders`` in prompts/<name>.md; JSON braces in the template are left alone."""
    template = Template(load_prompt(prompts_dir / f"{name}.md"))
    return template.safe_substitute({key: str(value) for key, value in values.items()})
