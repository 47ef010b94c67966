"""File operation tools."""

import asyncio
import re
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles

from ..errors import ToolExecutionError

SKIP_DIRS = {"node_modules", "__pycache__", "venv", "dist", "build", "target", "vendor"}


async def read_file(file_path: Path) -> str:
    """Read a text file."""
    if not file_path.exists():
        raise FileNotFoundError(f"File not found: {file_path}")
    if file_path.is_dir():
        raise IsADirectoryError(f"Path is a directory: {file_path}")
    async with aiofiles.open(file_path, "r", encoding="utf-8", errors="replace") as f:
        return await f.read()


async def write_file(file_path: Path, content: str, create_dirs: bool = True) -> str:
    """Write content to a file, creating parent directories."""
    if create_dirs:
        file_path.parent.mkdir(parents=True, exist_ok=True)
    existed = file_path.exists()
    async with aiofiles.open(file_path, "w", encoding="utf-8") as f:
        await f.write(content)
    verb = "updated" if existed else "created"
    return f"The content was successfully saved to {file_path} ({verb}, {len(content)} chars)."


_SEARCH_REPLACE_PATTERNS = (
    # <<<<<<< SEARCH / ======= / >>>>>>> REPLACE
    re.compile(r"<{7}\s*SEARCH\s*\n(.*?)\n?={7}\s*\n(.*?)\n?>{7}\s*REPLACE", re.DOTALL),
    # ------- SEARCH / ======= / +++++++ REPLACE
    re.compile(r"-{3,}\s*SEARCH\s*\n(.*?)\n?={7}\s*\n(.*?)\n?\+{3,}\s*REPLACE", re.DOTALL),
)


def parse_search_replace_blocks(diff: str) -> List[Tuple[str, str]]:
    """Parse SEARCH/REPLACE blocks from a diff string."""
    diff = diff.replace("\r\n", "\n").replace("\r", "\n")
    for pattern in _SEARCH_REPLACE_PATTERNS:
        blocks = [(m.group(1), m.group(2)) for m in pattern.finditer(diff)]
        if blocks:
            return blocks
    return []


async def replace_in_file(file_path: Path, diff: str) -> str:
    """Apply SEARCH/REPLACE blocks to a file, in order."""
    content = await read_file(file_path)
    blocks = parse_search_replace_blocks(diff)
    if not blocks:
        raise ToolExecutionError("No valid SEARCH/REPLACE blocks found in diff.")

    normalized = content.replace("\r\n", "\n")
    position = 0
    for search, replace in blocks:
        if not search:
            # Empty SEARCH on an empty file means "write everything"
            if normalized.strip():
                raise ToolExecutionError("Empty SEARCH block is only allowed for empty files.")
            normalized = replace
            continue
        index = normalized.find(search, position)
        if index == -1:
            index = normalized.find(search)
        if index == -1:
            raise ToolExecutionError(
                f"The SEARCH block:\n{search}\n...does not match anything in {file_path.name}. "
                "The file was not modified."
            )
        normalized = normalized[:index] + replace + normalized[index + len(search):]
        position = index + len(replace)

    async with aiofiles.open(file_path, "w", encoding="utf-8") as f:
        await f.write(normalized)
    return (
        f"Applied {len(blocks)} SEARCH/REPLACE block(s) to {file_path}. Final content:\n\n"
        f"<final_file_content path=\"{file_path}\">\n{normalized}\n</final_file_content>"
    )


def _should_skip(p: Path, root: Path, include_hidden: bool) -> bool:
    if include_hidden:
        return False
    for part in p.relative_to(root).parts:
        if part.startswith(".") or part in SKIP_DIRS:
            return True
    return False


def _list_files_sync(path: Path, recursive: bool, include_hidden: bool, max_items: int) -> str:
    if not path.exists():
        raise FileNotFoundError(f"Directory not found: {path}")
    items: List[str] = []
    truncated = False
    candidates = sorted(path.rglob("*")) if recursive else sorted(path.iterdir())
    for p in candidates:
        if _should_skip(p, path, include_hidden):
            continue
        if len(items) >= max_items:
            truncated = True
            break
        suffix = "/" if p.is_dir() else ""
        items.append(f"{p.relative_to(path).as_posix()}{suffix}")
    if not items:
        return "No files found."
    result = "\n".join(items)
    if truncated:
        result += "\n\n(File list truncated. Use list_files on specific subdirectories if you need to explore further.)"
    return result


async def list_files(path: Path, recursive: bool = False, include_hidden: bool = False,
                     max_items: int = 200) -> str:
    """List directory entries, directories marked with a trailing slash."""
    return await asyncio.to_thread(_list_files_sync, path, recursive, include_hidden, max_items)


def _search_files_sync(path: Path, regex: str, file_pattern: str, include_hidden: bool,
                       max_results: int) -> str:
    if not path.exists():
        raise FileNotFoundError(f"Directory not found: {path}")
    try:
        pattern = re.compile(regex)
    except re.error as e:
        raise ValueError(f"Invalid regex: {e}") from e

    results: List[str] = []
    for file in sorted(path.rglob(file_pattern)):
        if not file.is_file() or _should_skip(file, path, include_hidden):
            continue
        try:
            if file.stat().st_size > 1024 * 1024:
                continue
            text = file.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            continue
        for number, line in enumerate(text.splitlines(), 1):
            if pattern.search(line):
                results.append(f"{file.relative_to(path).as_posix()}:{number}: {line[:200]}")
                if len(results) >= max_results:
                    return "\n".join(results) + f"\n\n(Showing first {max_results} results.)"
    if not results:
        return "Found 0 results."
    return f"Found {len(results)} results.\n\n" + "\n".join(results)


async def search_files(path: Path, regex: str, file_pattern: Optional[str] = None,
                       include_hidden: bool = False, max_results: int = 300) -> str:
    """Regex search over files below ``path``."""
    return await asyncio.to_thread(
        _search_files_sync, path, regex, file_pattern or "*", include_hidden, max_results
    )
