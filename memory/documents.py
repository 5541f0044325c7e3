"""Document store — sandboxed access to the vault.

All paths are vault-relative (``Notes/today.md``) and are resolved inside
the vault root; anything that would escape it is rejected.
"""

import os
from typing import Protocol

from agent.errors import DocumentNotFoundError, SandboxViolationError, StoreError


class DocumentStore(Protocol):
    def read(self, path: str) -> str: ...

    def write(self, path: str, content: str) -> None: ...

    def append(self, path: str, content: str) -> None: ...

    def list(self, prefix: str) -> list[str]: ...

    def exists(self, path: str) -> bool: ...

    def remove(self, path: str) -> None: ...


class FileSystemStore:
    """`DocumentStore` backed by a directory on disk."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    # ── Public API ────────────────────────────────────────────────────────

    def read(self, path: str) -> str:
        abs_path = self._resolve_path(path)
        if not os.path.isfile(abs_path):
            raise DocumentNotFoundError(f"File does not exist — {path}")
        try:
            with open(abs_path, "r", encoding="utf-8") as f:
                return f.read()
        except UnicodeDecodeError as e:
            raise StoreError(f"File is not valid UTF-8 text — {path}") from e
        except OSError as e:
            raise StoreError(f"Error reading {path}: {e}") from e

    def write(self, path: str, content: str) -> None:
        abs_path = self._resolve_path(path)
        try:
            os.makedirs(os.path.dirname(abs_path), exist_ok=True)
            with open(abs_path, "w", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise StoreError(f"Error writing {path}: {e}") from e

    def append(self, path: str, content: str) -> None:
        abs_path = self._resolve_path(path)
        try:
            os.makedirs(os.path.dirname(abs_path), exist_ok=True)
            with open(abs_path, "a", encoding="utf-8") as f:
                f.write(content)
        except OSError as e:
            raise StoreError(f"Error appending to {path}: {e}") from e

    def list(self, prefix: str = "") -> list[str]:
        """Every file whose vault-relative path starts with *prefix*, sorted."""
        paths: list[str] = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for filename in filenames:
                if filename.startswith("."):
                    continue
                rel = os.path.relpath(os.path.join(dirpath, filename), self.root)
                rel = rel.replace(os.sep, "/")
                if rel.startswith(prefix):
                    paths.append(rel)
        return sorted(paths)

    def exists(self, path: str) -> bool:
        return os.path.exists(self._resolve_path(path))

    def remove(self, path: str) -> None:
        abs_path = self._resolve_path(path)
        if not os.path.isfile(abs_path):
            raise DocumentNotFoundError(f"File does not exist — {path}")
        os.remove(abs_path)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _resolve_path(self, path: str) -> str:
        """Resolve a path inside the vault. Reject escapes."""
        abs_path = os.path.abspath(os.path.join(self.root, path))
        if os.path.commonpath([abs_path, self.root]) != self.root:
            raise SandboxViolationError(f"Access denied: {path} escapes the vault")
        return abs_path
