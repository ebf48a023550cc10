from __future__ import annotations

import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from .errors import PathSecurityError


_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class PathContext:
    """Sandbox for file access restricted to a set of allowed root directories.

    Every public operation validates its path first: the path must be nested
    under one of the roots and neither the path itself nor any directory
    between the root and the path may be a symbolic link.
    """

    def __init__(self, allowed_roots: Iterable[str]) -> None:
        roots = [self._normalize_root(p) for p in allowed_roots]
        self._allowed_roots = sorted({r for r in roots if r})

    def _normalize_root(self, root: str) -> Optional[str]:
        if not root:
            return None
        return os.path.realpath(os.path.abspath(root))

    def _normalize_case(self, path: str) -> str:
        if os.name == "nt":
            return os.path.normcase(path)
        return path

    def _best_root(self, abs_path: str) -> Optional[str]:
        norm_ap = self._normalize_case(abs_path)
        best_root: Optional[str] = None
        for root in self._allowed_roots:
            norm_root = self._normalize_case(root)
            try:
                common = os.path.commonpath([norm_ap, norm_root])
            except ValueError:
                continue
            if common == norm_root and (best_root is None or len(root) > len(best_root)):
                best_root = root
        return best_root

    def ensure_allowed(self, path: str | Path) -> str:
        """Return the normalized absolute path, or raise PathSecurityError."""
        if not self._allowed_roots:
            raise PathSecurityError("No allowed root directories configured.")
        raw = str(path)
        if not raw or _CONTROL_CHARS.search(raw):
            raise PathSecurityError(f"Invalid path: {raw!r}")
        ap = os.path.normpath(os.path.abspath(raw))
        root = self._best_root(ap)
        if root is None:
            raise PathSecurityError(f"Root directory is not allowed: {ap}")

        rel = os.path.relpath(ap, start=root)
        current = root
        for part in [p for p in rel.split(os.sep) if p and p != "."]:
            current = os.path.join(current, part)
            if os.path.islink(current):
                raise PathSecurityError(f"Symbolic links are not allowed: {current}")
        real = os.path.realpath(ap)
        if self._best_root(real) is None:
            raise PathSecurityError(f"Path '{ap}' resolves outside allowed roots.")
        return ap

    def resolve_path(self, path: str | Path) -> Path:
        return Path(self.ensure_allowed(path))

    def open_file(
        self,
        path: str | Path,
        mode: str = "r",
        *,
        encoding: Optional[str] = None,
        errors: Optional[str] = None,
    ):
        if any(flag in mode for flag in ("w", "a", "+", "x")):
            raise ValueError("PathContext.open_file only supports read modes. Use write_text.")
        fd = self._open_file_no_symlink_race(path)
        return os.fdopen(fd, mode, encoding=encoding, errors=errors)

    def _open_file_no_symlink_race(self, path: str | Path) -> int:
        """Open *path* for reading without a symlink TOCTOU window.

        The path is validated and opened through dirfd-relative ``open`` calls
        with ``O_NOFOLLOW`` on each path component.
        """
        normalized_abs = self.ensure_allowed(path)
        best_root = self._best_root(normalized_abs)
        if not best_root:
            raise PathSecurityError(f"Root directory is not allowed: {normalized_abs}")

        rel = os.path.relpath(normalized_abs, start=best_root)
        parts = [p for p in rel.split(os.sep) if p and p != "."]

        cloexec_flag = os.O_CLOEXEC if hasattr(os, "O_CLOEXEC") else 0
        nofollow_flag = os.O_NOFOLLOW if hasattr(os, "O_NOFOLLOW") else 0
        dir_flag = os.O_DIRECTORY if hasattr(os, "O_DIRECTORY") else 0

        if not parts:
            raise IsADirectoryError(f"Expected a file path, got allowed root directory: {best_root}")
        if os.open not in os.supports_dir_fd:
            return os.open(normalized_abs, os.O_RDONLY | nofollow_flag | cloexec_flag)

        base_fd = os.open(best_root, os.O_RDONLY | dir_flag | cloexec_flag)
        current_fd = base_fd
        try:
            for index, part in enumerate(parts):
                is_last = index == len(parts) - 1
                flags = os.O_RDONLY | nofollow_flag | cloexec_flag
                if not is_last:
                    flags |= dir_flag
                try:
                    next_fd = os.open(part, flags, dir_fd=current_fd)
                except OSError as exc:
                    if os.path.islink(os.path.join(best_root, *parts[: index + 1])):
                        raise PathSecurityError(
                            f"Symbolic links are not allowed: {normalized_abs}"
                        ) from exc
                    raise
                if current_fd != base_fd:
                    os.close(current_fd)
                current_fd = next_fd
            return current_fd
        except Exception:
            if current_fd != base_fd:
                os.close(current_fd)
            raise
        finally:
            os.close(base_fd)

    def read_text(self, path: str | Path, *, encoding: str = "utf-8") -> str:
        with self.open_file(path, "r", encoding=encoding) as f:
            return f.read()

    def list_dir(self, path: str | Path) -> List[Path]:
        resolved = self.resolve_path(path)
        return sorted(Path(resolved).iterdir())

    def iter_files(self, root: str | Path) -> Iterator[Path]:
        resolved_root = self.resolve_path(root)
        stack = [Path(resolved_root)]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as entries:
                    for entry in sorted(entries, key=lambda e: e.name, reverse=True):
                        candidate = Path(entry.path)
                        try:
                            if entry.is_symlink():
                                continue
                            if entry.is_dir(follow_symlinks=False):
                                stack.append(candidate)
                                continue
                            if entry.is_file(follow_symlinks=False):
                                yield candidate
                        except OSError:
                            logging.debug("Skipping unreadable filesystem entry: %s", entry.path, exc_info=True)
                            continue
            except OSError:
                logging.debug("Skipping unreadable directory during traversal: %s", current, exc_info=True)
                continue

    def stat(self, path: str | Path) -> os.stat_result:
        resolved = self.resolve_path(path)
        return os.lstat(resolved)

    def makedirs(self, path: str | Path, *, exist_ok: bool = True) -> None:
        resolved = self.resolve_path(path)
        os.makedirs(resolved, exist_ok=exist_ok)

    def write_text(self, path: str | Path, text: str, *, encoding: str = "utf-8") -> None:
        """Create or overwrite a file atomically, creating missing parent directories."""
        resolved = self.resolve_path(path)
        self.makedirs(resolved.parent)
        fd, temp_path = tempfile.mkstemp(dir=resolved.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding=encoding) as handle:
                handle.write(text)
            if resolved.exists():
                shutil.copymode(resolved, temp_path)
            os.replace(temp_path, resolved)
        finally:
            if os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    logging.debug("Failed to cleanup temp file %s", temp_path, exc_info=True)
