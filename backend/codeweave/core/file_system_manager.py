# backend/codeweave/core/file_system_manager.py
import hashlib
import logging
import os
import re
import shutil
import time
from pathlib import Path
from typing import List, Optional, Set

from .exceptions import PathSecurityError

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".codeweave"  # Hidden directory inside the workspace for orchestrator state.

# Directories that are never listed and never written by generated operations.
EXCLUDED_DIRS: Set[str] = {".git", ".venv", "venv", "__pycache__", "node_modules", STATE_DIR_NAME, "dist", "build"}
EXCLUDED_EXTENSIONS: Set[str] = {".pyc", ".pyo", ".pyd", ".log", ".bak", ".sqlite3", ".DS_Store"}
WINDOWS_DRIVE_REGEX = re.compile(r"^[A-Za-z]:")


class FileSystemManager:
    """
    The filesystem collaborator: reads, writes, deletes and lists files securely
    within a workspace root directory (a "sandbox").

    Every public method resolves its path through `_resolve_safe_path` first, so
    no operation can touch anything outside the workspace. All paths accepted and
    returned are workspace-relative.
    """
    def __init__(self, workspace_root: str | Path):
        """
        Initializes the FileSystemManager.

        Args:
            workspace_root: The absolute or relative path to the workspace directory.

        Raises:
            ValueError: If workspace_root is not provided.
            FileNotFoundError: If the resolved workspace_root does not exist.
            NotADirectoryError: If the resolved workspace_root is not a directory.
        """
        if not workspace_root:
            raise ValueError("FileSystemManager requires a valid workspace_root.")

        try:
            # `strict=True` confirms the sandbox exists.
            self.workspace_root = Path(workspace_root).resolve(strict=True)
        except FileNotFoundError:
            logger.error(f"Workspace root does not exist: {Path(workspace_root).resolve()}")
            raise
        if not self.workspace_root.is_dir():
            logger.error(f"Workspace root is not a directory: {self.workspace_root}")
            raise NotADirectoryError(f"Workspace root exists but is not a directory: {self.workspace_root}")

        self.trash_dir = self.workspace_root / STATE_DIR_NAME / "trash"
        logger.info(f"FileSystemManager initialized. Workspace root set to: {self.workspace_root}")

    def _resolve_safe_path(self, relative_path: str | Path) -> Path:
        """
        Resolves a relative path against the workspace root and confirms that the
        resulting absolute path is strictly within that root directory.

        Raises:
            PathSecurityError: If the path is empty, absolute, contains '..' or null
                               bytes, or resolves (e.g. via a symlink) outside the root.
        """
        relative_path_str = str(relative_path) if relative_path is not None else ""

        if not relative_path_str or '\0' in relative_path_str:
            raise PathSecurityError("Invalid relative path provided: cannot be empty or contain null bytes.", relative_path_str)
        if os.path.isabs(relative_path_str) or relative_path_str.startswith(("/", "\\")) or WINDOWS_DRIVE_REGEX.match(relative_path_str):
            logger.error(f"Security Risk: Absolute path provided ('{relative_path_str}'). Operation blocked.")
            raise PathSecurityError("Absolute paths are not allowed.", relative_path_str)
        if ".." in Path(relative_path_str.replace("\\", "/")).parts:
            logger.error(f"Security Risk: Path traversal detected ('{relative_path_str}'). Operation blocked.")
            raise PathSecurityError("Path traversal using '..' is not allowed.", relative_path_str)

        normalized_relative = os.path.normpath(relative_path_str).strip(os.sep + (os.altsep or ''))
        if not normalized_relative or normalized_relative == '.':
            raise PathSecurityError(f"Invalid relative path provided after normalization: '{relative_path_str}'", relative_path_str)

        absolute_path = (self.workspace_root / normalized_relative).resolve()

        # Even after resolving symlinks the final path must still be inside the root.
        try:
            absolute_path.relative_to(self.workspace_root)
        except ValueError:
            logger.error(f"Security Risk: Resolved path '{absolute_path}' is outside the workspace root '{self.workspace_root}'. Original input: '{relative_path_str}'. Operation blocked.")
            raise PathSecurityError(f"Path traversal detected: '{relative_path_str}' resolves outside the workspace root.", relative_path_str)
        logger.debug(f"Path resolved safely: '{relative_path_str}' -> '{absolute_path}'")
        return absolute_path

    def write_file(self, relative_path: str | Path, content: str, encoding: str = 'utf-8') -> None:
        """
        Safely writes content to a file, creating parent directories and overwriting
        any existing file.

        Raises:
            PathSecurityError: If the path is invalid or outside the workspace root.
            RuntimeError: If any OS-level or encoding error occurs while writing.
        """
        target_path = self._resolve_safe_path(relative_path)
        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            with open(target_path, 'w', encoding=encoding, newline='') as f:
                f.write(content)
            logger.info(f"Wrote {len(content)} characters to '{relative_path}'")
        except (OSError, UnicodeError) as e:
            logger.exception(f"Error writing file '{relative_path}'")
            raise RuntimeError(f"Failed to write file '{relative_path}': {e}") from e

    def read_file(self, relative_path: str | Path, encoding: str = 'utf-8') -> str:
        """
        Safely reads a file within the workspace root.

        Raises:
            PathSecurityError: If the path is invalid or outside the workspace root.
            FileNotFoundError: If the file does not exist.
            RuntimeError: If any other OS-level error occurs, or the file cannot be decoded.
        """
        target_path = self._resolve_safe_path(relative_path)
        if not target_path.is_file():
            raise FileNotFoundError(f"File not found: '{relative_path}'")
        try:
            with open(target_path, 'r', encoding=encoding, newline='') as f:
                content = f.read()
            logger.debug(f"Read {len(content)} characters from '{relative_path}'")
            return content
        except (OSError, UnicodeError) as e:
            logger.exception(f"Error reading file '{relative_path}'")
            raise RuntimeError(f"Failed to read file '{relative_path}': {e}") from e

    def delete_file(self, relative_path: str | Path) -> None:
        """
        Soft-deletes a file by moving it into the trash directory under the
        orchestrator's state directory. Deleting a missing file is a no-op.

        Raises:
            PathSecurityError: If the path is invalid or outside the workspace root.
            RuntimeError: If the move fails.
        """
        target_path = self._resolve_safe_path(relative_path)
        if not target_path.is_file():
            logger.info(f"File '{relative_path}' does not exist. Nothing to delete.")
            return
        try:
            self.trash_dir.mkdir(parents=True, exist_ok=True)
            timestamp = time.strftime("%Y%m%d_%H%M%S")
            sanitized_rel_path = str(relative_path).replace('/', '_').replace('\\', '_').replace(':', '_')
            trash_path = self.trash_dir / f"{sanitized_rel_path}.{timestamp}.{time.monotonic_ns()}.deleted"
            shutil.move(str(target_path), trash_path)
            logger.info(f"Moved file '{relative_path}' to trash at '{trash_path}'.")
        except (OSError, IOError) as e:
            logger.exception(f"Error deleting file '{relative_path}'")
            raise RuntimeError(f"Failed to delete file '{relative_path}': {e}") from e

    def file_exists(self, relative_path: str | Path) -> bool:
        """Returns False if the path is invalid, outside the root, or not a file."""
        try:
            return self._resolve_safe_path(relative_path).is_file()
        except PathSecurityError:
            return False

    def list_files(self, root: str | Path = "") -> List[str]:
        """
        Recursively lists workspace-relative file paths below `root` (the whole
        workspace by default), skipping excluded directories and extensions.
        """
        base = self._resolve_safe_path(root) if str(root) not in ("", ".") else self.workspace_root
        if not base.is_dir():
            return []

        all_files: List[str] = []
        for current_root, dirs, files in os.walk(base, topdown=True):
            # Modify dirs in-place to prevent recursion into excluded directories.
            dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
            for filename in sorted(files):
                if filename in EXCLUDED_EXTENSIONS or Path(filename).suffix in EXCLUDED_EXTENSIONS:
                    continue
                full_path = Path(current_root) / filename
                all_files.append(full_path.relative_to(self.workspace_root).as_posix())
        return all_files

    def get_file_hash(self, relative_path: str | Path) -> Optional[str]:
        """Returns the SHA-256 hex digest of a file, or None if it cannot be read."""
        try:
            target_path = self._resolve_safe_path(relative_path)
            if not target_path.is_file():
                return None
            hasher = hashlib.sha256()
            with open(target_path, 'rb') as f:
                for chunk in iter(lambda: f.read(8192), b""):
                    hasher.update(chunk)
            return hasher.hexdigest()
        except (PathSecurityError, OSError) as e:
            logger.warning(f"Could not hash '{relative_path}': {e}")
            return None
