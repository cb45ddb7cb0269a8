"""
Virtual filesystem tools.

The agent never touches the host filesystem directly: every file tool goes
through a ``FileSystemBackend``. ``InMemoryFileSystemBackend`` is the
default backend and also stores offloaded history and evicted tool results.

Paths are absolute, ``/``-separated and may not escape the root.
"""

import fnmatch
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Error: Filesystem not configured."
DEFAULT_READ_LIMIT = 100


class FileSystemError(Exception):
    """Base class for filesystem backend failures."""

    def __init__(self, message: str, path: Optional[str] = None):
        self.message = message
        self.path = path
        super().__init__(message)


class InvalidPathError(FileSystemError):
    pass


class PathNotFoundError(FileSystemError):
    pass


class PathIsDirectoryError(FileSystemError):
    pass


class PathExistsError(FileSystemError):
    pass


class FileSystemIOError(FileSystemError):
    pass


def normalize_path(path: str) -> str:
    """
    Canonicalize a virtual path.

    Rejects traversal (``..``) and home expansion (``~``), converts
    backslashes, forces a leading slash and strips the trailing one.

    Raises:
        InvalidPathError: If the path is empty or escapes the root
    """
    if path is None or not str(path).strip():
        raise InvalidPathError("Path must not be empty", path=path)
    raw = str(path).strip().replace("\\", "/")
    if raw.startswith("~"):
        raise InvalidPathError(f"Home-relative paths are not allowed: {path}", path=path)
    segments = [segment for segment in raw.split("/") if segment]
    if any(segment == ".." for segment in segments):
        raise InvalidPathError(f"Path traversal is not allowed: {path}", path=path)
    segments = [segment for segment in segments if segment != "."]
    return "/" + "/".join(segments)


@dataclass
class FileEntry:
    path: str
    is_dir: bool = False


@dataclass
class GrepMatch:
    path: str
    line: int
    text: str


class FileSystemBackend(ABC):
    """Storage the file tools operate on."""

    @abstractmethod
    async def list(self, path: str = "/") -> List[FileEntry]:
        ...

    @abstractmethod
    async def read(self, path: str) -> str:
        ...

    @abstractmethod
    async def write(self, path: str, content: str) -> None:
        """Create a new file. Raises PathExistsError if it already exists."""

    @abstractmethod
    async def edit(self, path: str, old: str, new: str, replace_all: bool = False) -> int:
        """Replace ``old`` with ``new``; returns the number of replacements."""

    @abstractmethod
    async def glob(self, pattern: str, path: str = "/") -> List[str]:
        ...

    @abstractmethod
    async def grep(self, pattern: str, path: str = "/", glob: Optional[str] = None) -> List[GrepMatch]:
        ...

    async def exists(self, path: str) -> bool:
        try:
            await self.read(path)
            return True
        except FileSystemError:
            return False


class InMemoryFileSystemBackend(FileSystemBackend):
    """Dictionary-backed filesystem; directories are implied by file paths."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self._files: Dict[str, str] = {}
        for path, content in (files or {}).items():
            self._files[normalize_path(path)] = content

    def _is_dir(self, path: str) -> bool:
        if path == "/":
            return True
        prefix = path + "/"
        return any(name.startswith(prefix) for name in self._files)

    async def list(self, path: str = "/") -> List[FileEntry]:
        root = normalize_path(path)
        if root in self._files:
            return [FileEntry(path=root)]
        if not self._is_dir(root):
            raise PathNotFoundError(f"No such directory: {root}", path=root)
        prefix = "/" if root == "/" else root + "/"
        children: Dict[str, bool] = {}
        for name in self._files:
            if not name.startswith(prefix):
                continue
            head, _, rest = name[len(prefix):].partition("/")
            child = prefix + head
            children[child] = children.get(child, False) or bool(rest)
        return [FileEntry(path=child, is_dir=is_dir) for child, is_dir in sorted(children.items())]

    async def read(self, path: str) -> str:
        target = normalize_path(path)
        if target in self._files:
            return self._files[target]
        if self._is_dir(target):
            raise PathIsDirectoryError(f"Is a directory: {target}", path=target)
        raise PathNotFoundError(f"File not found: {target}", path=target)

    async def write(self, path: str, content: str) -> None:
        target = normalize_path(path)
        if target in self._files:
            raise PathExistsError(f"File already exists: {target}", path=target)
        if self._is_dir(target):
            raise PathIsDirectoryError(f"Is a directory: {target}", path=target)
        self._files[target] = content

    async def edit(self, path: str, old: str, new: str, replace_all: bool = False) -> int:
        target = normalize_path(path)
        content = await self.read(target)
        occurrences = content.count(old) if old else 0
        if occurrences == 0:
            raise FileSystemIOError(f"String not found in {target}", path=target)
        if occurrences > 1 and not replace_all:
            raise FileSystemIOError(
                f"String occurs {occurrences} times in {target}; pass replace_all to replace every occurrence",
                path=target,
            )
        if replace_all:
            self._files[target] = content.replace(old, new)
            return occurrences
        self._files[target] = content.replace(old, new, 1)
        return 1

    async def glob(self, pattern: str, path: str = "/") -> List[str]:
        root = normalize_path(path)
        prefix = "/" if root == "/" else root + "/"
        matches = []
        for name in sorted(self._files):
            if not name.startswith(prefix):
                continue
            relative = name[len(prefix):]
            if fnmatch.fnmatch(relative, pattern) or fnmatch.fnmatch(name, pattern):
                matches.append(name)
        return matches

    async def grep(self, pattern: str, path: str = "/", glob: Optional[str] = None) -> List[GrepMatch]:
        candidates = await self.glob(glob or "*", path)
        results = []
        for name in candidates:
            for number, line in enumerate(self._files[name].splitlines(), start=1):
                if pattern in line:
                    results.append(GrepMatch(path=name, line=number, text=line))
        return results


async def write_or_overwrite(backend: FileSystemBackend, path: str, content: str) -> None:
    """Create ``path`` or replace its whole content if it already exists."""
    try:
        await backend.write(path, content)
    except PathExistsError:
        existing = await backend.read(path)
        if existing == content:
            return
        if existing:
            await backend.edit(path, existing, content)
        else:
            raise FileSystemIOError(f"Cannot overwrite empty file: {path}", path=path)


async def append_file(backend: FileSystemBackend, path: str, content: str) -> bool:
    """
    Append ``content`` to ``path`` separated by a blank line.

    A missing file is created; an existing empty file is left untouched.

    Returns:
        True when ``content`` was written
    """
    try:
        existing = await backend.read(path)
    except PathNotFoundError:
        await backend.write(path, content)
        return True
    if not existing:
        logger.warning(f"Not appending to empty file {path}; {len(content)} characters dropped")
        return False
    await backend.edit(path, existing, existing + "\n\n" + content)
    return True


# ── Tool handlers ─────────────────────────────────────────────────────

async def ls(backend: Optional[FileSystemBackend], args: Dict[str, Any]) -> str:
    if backend is None:
        return NOT_CONFIGURED
    entries = await backend.list(args.get("path") or "/")
    return "\n".join(entry.path + ("/" if entry.is_dir else "") for entry in entries)


async def read_file(backend: Optional[FileSystemBackend], args: Dict[str, Any]) -> str:
    if backend is None:
        return NOT_CONFIGURED
    content = await backend.read(args["file_path"])
    offset = max(0, int(args.get("offset") or 0))
    limit = args.get("limit")
    limit = DEFAULT_READ_LIMIT if limit is None else max(0, int(limit))
    lines = content.splitlines()[offset:offset + limit]
    return "\n".join(f"{offset + index + 1:6d}\t{line}" for index, line in enumerate(lines))


async def write_file(backend: Optional[FileSystemBackend], args: Dict[str, Any]) -> str:
    if backend is None:
        return NOT_CONFIGURED
    path = normalize_path(args["file_path"])
    await backend.write(path, args.get("content", ""))
    return f"OK: wrote {path}"


async def edit_file(backend: Optional[FileSystemBackend], args: Dict[str, Any]) -> str:
    if backend is None:
        return NOT_CONFIGURED
    path = normalize_path(args["file_path"])
    count = await backend.edit(
        path,
        args["old_string"],
        args.get("new_string", ""),
        replace_all=bool(args.get("replace_all", False)),
    )
    return f"OK: edited {path} ({count} replacement(s))"


async def glob(backend: Optional[FileSystemBackend], args: Dict[str, Any]) -> str:
    if backend is None:
        return NOT_CONFIGURED
    return "\n".join(await backend.glob(args["pattern"], args.get("path") or "/"))


async def grep(backend: Optional[FileSystemBackend], args: Dict[str, Any]) -> str:
    if backend is None:
        return NOT_CONFIGURED
    matches = await backend.grep(args["pattern"], args.get("path") or "/", args.get("glob"))
    return "\n".join(f"{match.path}:{match.line}: {match.text}" for match in matches)
