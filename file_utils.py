# file_utils.py - Atomic file writes for exports

from pathlib import Path


def _replace_atomically(path: Path, write) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        write(tmp)
        tmp.replace(path)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def atomic_write_text(path: Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to path atomically (write to temp, then replace).
    A reader never sees a half-written export.
    """
    _replace_atomically(path, lambda tmp: tmp.write_text(content, encoding=encoding, newline=""))


def atomic_write_bytes(path: Path, content: bytes) -> None:
    """Binary counterpart of atomic_write_text (XLSX workbooks)."""
    _replace_atomically(path, lambda tmp: tmp.write_bytes(content))
