"""Inline script metadata (PEP 723) for Python skills.

A Python entry script may carry its own requirements::

    # /// script
    # requires-python = ">=3.11"
    # dependencies = [
    #     "requests>=2.31",
    # ]
    # ///

``requires-python`` becomes the skill's minimum interpreter version and
``dependencies`` tells pre-warm whether there is anything to fetch.
A missing or malformed block yields empty metadata; it never fails an
install.
"""

import logging
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

BLOCK_START = "# /// script"
BLOCK_END = "# ///"

_SPECIFIER = re.compile(r"^\s*(>=|~=|==|>)\s*(\d+(?:\.\d+)*)(?:\.\*)?\s*$")


@dataclass(frozen=True)
class ScriptMetadata:
    """Parsed ``# /// script`` block"""

    requires_python: Optional[str] = None
    dependencies: Tuple[str, ...] = ()
    tool: Dict[str, Any] = field(default_factory=dict)
    found: bool = False


def _extract_block(source: str) -> Optional[str]:
    in_block = False
    lines = []
    for line in source.splitlines():
        stripped = line.strip()
        if not in_block:
            if stripped == BLOCK_START:
                in_block = True
            continue
        if stripped == BLOCK_END:
            break
        if stripped.startswith("# "):
            lines.append(stripped[2:])
        elif stripped == "#":
            lines.append("")
        else:
            # Code inside the block: not a metadata block after all
            return None
    if not lines:
        return None
    return "\n".join(lines)


def parse_inline_metadata(source: str) -> ScriptMetadata:
    """Metadata from Python source; empty metadata when absent or malformed."""
    block = _extract_block(source)
    if block is None:
        return ScriptMetadata()
    try:
        table = tomllib.loads(block)
    except tomllib.TOMLDecodeError as e:
        logger.warning(f"Ignoring malformed inline script metadata: {e}")
        return ScriptMetadata()

    requires_python = table.get("requires-python")
    dependencies = table.get("dependencies")
    tool = table.get("tool")
    return ScriptMetadata(
        requires_python=requires_python if isinstance(requires_python, str) else None,
        dependencies=tuple(d for d in dependencies if isinstance(d, str)) if isinstance(dependencies, list) else (),
        tool=tool if isinstance(tool, dict) else {},
        found=True,
    )


def parse_script_metadata(path: Path) -> ScriptMetadata:
    """
    Metadata of a script file

    Raises:
        OSError: If the file cannot be read
    """
    return parse_inline_metadata(Path(path).read_text(encoding="utf-8"))


def minimum_python(requires_python: Optional[str]) -> Optional[str]:
    """
    Lower bound of a ``requires-python`` specifier

    ``">=3.11"`` -> ``"3.11"``; ``">=3.9, <4"`` -> ``"3.9"``. Returns None
    when the specifier sets no lower bound.
    """
    if not requires_python:
        return None
    best: Optional[Tuple[int, ...]] = None
    for clause in requires_python.split(","):
        match = _SPECIFIER.match(clause)
        if not match:
            continue
        parts = tuple(int(p) for p in match.group(2).split(".")[:3])
        if best is None or parts > best:
            best = parts
    if best is None:
        return None
    return ".".join(str(p) for p in best)


def find_entry_script(command: Sequence[str], cwd: Optional[str]) -> Optional[Path]:
    """First ``.py`` argument of an entry command, resolved against ``cwd``."""
    for part in command[1:]:
        if not part.endswith(".py"):
            continue
        path = Path(part)
        if not path.is_absolute() and cwd:
            path = Path(cwd) / path
        return path
    return None
