"""
File operation utilities
"""

from pathlib import Path
from typing import Iterable, Optional


def resolve_photo_path(file_path: Optional[str],
                       excluded_folders: Iterable[str] = ()) -> Optional[Path]:
    """Return the stored path if it exists and is not inside an excluded folder"""
    if not file_path:
        return None

    path = Path(file_path)
    excluded = set(excluded_folders)
    if excluded.intersection(path.parts[:-1]):
        return None
    if '.thumb.' in path.name:
        return None

    return path if path.is_file() else None


def unique_destination(dest_dir: Path, file_name: str) -> Path:
    """First free path in dest_dir for file_name, appending _1, _2, ... on collision"""
    candidate = dest_dir / file_name
    stem, suffix = Path(file_name).stem, Path(file_name).suffix
    counter = 1
    while candidate.exists():
        candidate = dest_dir / f"{stem}_{counter}{suffix}"
        counter += 1
    return candidate


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"
