from __future__ import annotations

import shutil
from pathlib import Path
from typing import Protocol


class FileSystem(Protocol):
    """Minimal file operations the patch engine needs, relative to one root."""

    def exists(self, rel_path: str) -> bool: ...

    def read_text(self, rel_path: str) -> str: ...

    def write_text(self, rel_path: str, content: str) -> None: ...

    def copy(self, src_rel: str, dst_rel: str) -> None: ...

    def resolve(self, rel_path: str) -> Path: ...


class LocalFileSystem:
    """File system rooted at a directory on local disk.

    Every path is resolved against the root and refused if it resolves
    outside of it.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def resolve(self, rel_path: str) -> Path:
        full = (self.root / rel_path).resolve()
        if full != self.root and self.root not in full.parents:
            raise ValueError(f"Path escapes project root: {rel_path}")
        return full

    def exists(self, rel_path: str) -> bool:
        return self.resolve(rel_path).is_file()

    def read_text(self, rel_path: str) -> str:
        return self.resolve(rel_path).read_text(encoding="utf-8")

    def write_text(self, rel_path: str, content: str) -> None:
        full = self.resolve(rel_path)
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_text(content, encoding="utf-8")

    def copy(self, src_rel: str, dst_rel: str) -> None:
        dst = self.resolve(dst_rel)
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.resolve(src_rel), dst)
