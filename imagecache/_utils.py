from __future__ import annotations

import typing as tp
from datetime import datetime, timezone
from pathlib import Path

T = tp.TypeVar("T")


def filter_mapping(mapping: tp.Mapping[str, T], keys_to_exclude: tp.Iterable[str]) -> tp.Dict[str, T]:
    """
    Filter out specified keys from a string-keyed mapping using case-insensitive comparison.

    Args:
        mapping: The input mapping with string keys to filter.
        keys_to_exclude: An iterable of string keys to exclude (case-insensitive).

    Returns:
        A new dictionary with the specified keys excluded.

    Example:
    ```python
        original = {'a': 1, 'B': 2, 'c': 3}
        filtered = filter_mapping(original, ['b'])
        # filtered will be {'a': 1, 'c': 3}
    ```
    """
    exclude_set = {k.lower() for k in keys_to_exclude}
    return {k: v for k, v in mapping.items() if k.lower() not in exclude_set}


def ensure_cache_dict(base_path: Path | None = None) -> Path:
    _base_path = base_path if base_path is not None else Path(".cache/imagecache")
    _gitignore_file = _base_path / ".gitignore"

    _base_path.mkdir(parents=True, exist_ok=True)

    if not _gitignore_file.is_file():
        with open(_gitignore_file, "w", encoding="utf-8") as f:
            f.write("# Automatically created by imagecache\n*")
    return _base_path


def generate_iso_timestamp() -> str:
    """
    Generate a UTC ISO-8601 timestamp with millisecond precision.

    Example output: '2025-10-26T12:34:56.789Z'
    """
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def batched(items: tp.Sequence[T], size: int) -> tp.List[tp.List[T]]:
    """
    Split a sequence into consecutive lists of at most `size` items.

    Examples:
        >>> batched([1, 2, 3, 4, 5], 2)
        [[1, 2], [3, 4], [5]]
    """
    if size < 1:
        raise ValueError("size must be at least 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]
