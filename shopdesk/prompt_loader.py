from __future__ import annotations

from functools import lru_cache
from pathlib import Path


@lru_cache(maxsize=32)
def load_prompt(prompt_path: Path) -> str:
    """Purpose: Load a prompt template once as UTF-8 text, without a BOM.
    Inputs/Outputs: Input is a Path to the prompt file; output is the decoded string.
    Side Effects / State: Caches file contents per path for the process lifetime.
    Dependencies: Path.read_bytes; used by the reply, compaction and extractor calls.
    Failure Modes: Missing files raise FileNotFoundError; undecodable bytes are dropped.
    If Removed: Every LLM call would need its prompt inlined in code.
    Testing Notes: Write a BOM-prefixed file and check the BOM is gone.
    """
    # Decode tolerantly so a stray byte never blocks a turn.
    raw = prompt_path.read_bytes()
    return raw.decode("utf-8", errors="ignore").lstrip("\ufeff")


def render_prompt(prompt_path: Path, **values: str) -> str:
    """Fill <<NAME>> placeholders in a prompt template."""
    text = load_prompt(prompt_path)
    for name, value in values.items():
        text = text.replace(f"<<{name.upper()}>>", value)
    return text
