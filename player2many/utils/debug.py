"""
Diagnostic graph export.
"""

from __future__ import annotations

import asyncio
from pathlib import Path


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


async def write_dot(directory: Path, name: str, content: str) -> Path:
    """
    Write a Graphviz DOT document to ``directory/name`` off the event loop.
    """

    return await asyncio.to_thread(_write, Path(directory) / name, content)
