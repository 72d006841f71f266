"""
Output Manager
==============
Versioned output blocks produced by a run.

Every write creates a new version; versions of a block start at 1 and strictly
increase regardless of how writes interleave. Output blocks are retained when a
run fails or is aborted.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from loguru import logger

# Change log bound: trimmed to half once exceeded
MAX_CHANGE_LOG = 500


@dataclass(frozen=True)
class OutputBlock:
    """One version of an output block."""
    id: str
    content: str
    version: int
    updated_at: float
    updated_by: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "version": self.version,
            "updated_at": self.updated_at,
            "updated_by": self.updated_by,
        }


class OutputManager:
    """
    Thread-safe store of versioned output blocks.

    Usage:
        outputs = OutputManager()
        outputs.write("draft", "Once upon a time...", "writer")
        outputs.read("draft").version  # 1
    """

    def __init__(self):
        self._blocks: Dict[str, List[OutputBlock]] = {}
        self._changes: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def write(self, block_id: str, content: Any, author_id: str = "") -> OutputBlock:
        if not block_id:
            raise ValueError("Output block id must be non-empty")
        text = "" if content is None else str(content)

        with self._lock:
            versions = self._blocks.setdefault(block_id, [])
            version = versions[-1].version + 1 if versions else 1
            block = OutputBlock(
                id=block_id,
                content=text,
                version=version,
                updated_at=time.time(),
                updated_by=author_id,
            )
            versions.append(block)
            self._changes.append({
                "block_id": block_id,
                "version": version,
                "author": author_id,
                "length": len(text),
                "timestamp": block.updated_at,
            })
            if len(self._changes) > MAX_CHANGE_LOG:
                self._changes = self._changes[-(MAX_CHANGE_LOG // 2):]

        logger.debug(f"Output block '{block_id}' updated to v{version} by {author_id or 'unknown'}")
        return block

    def read(self, block_id: str, version: Optional[int] = None) -> Optional[OutputBlock]:
        """Latest version, or a specific one. None when absent."""
        versions = self._blocks.get(block_id)
        if not versions:
            return None
        if version is None:
            return versions[-1]
        for block in versions:
            if block.version == version:
                return block
        return None

    def current_content(self, block_id: str) -> Optional[str]:
        block = self.read(block_id)
        return None if block is None else block.content

    def history(self, block_id: str, limit: Optional[int] = None) -> List[OutputBlock]:
        versions = list(self._blocks.get(block_id, []))
        if limit is not None:
            versions = versions[-limit:] if limit > 0 else []
        return versions

    def changes(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent writes across all blocks, oldest first."""
        return list(self._changes[-limit:])

    def blocks(self) -> List[str]:
        return sorted(self._blocks)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """Latest version of every block."""
        return {block_id: versions[-1].to_dict() for block_id, versions in self._blocks.items() if versions}
