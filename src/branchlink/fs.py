from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9._-]+")


def _sanitize_component(value: str, *, default: str = "") -> str:
    value = value.strip()
    if not value:
        return default
    sanitized = _SANITIZE_PATTERN.sub("-", value)
    sanitized = sanitized.strip("-._")
    return sanitized or (default or "untitled")


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def utcnow_iso() -> str:
    return utcnow().strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, accepting a trailing Z. Naive values are UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now_ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


def backup_file(p: Path, keep: int = 3, tag: str | None = None) -> Optional[Path]:
    """Copy ``p`` into a sibling ``.backups`` directory and rotate old copies.

    Returns the path of the new backup, or None when ``p`` does not exist.
    """
    if not p.exists():
        return None
    backups_dir = p.parent / ".backups"
    backups_dir.mkdir(parents=True, exist_ok=True)
    tag = _sanitize_component(tag or p.stem, default=p.stem)
    ts = _now_ts()
    # ensure uniqueness even within same second
    dest = backups_dir / f"{tag}.{ts}{p.suffix}"
    i = 1
    while dest.exists():
        dest = backups_dir / f"{tag}.{ts}.{i}{p.suffix}"
        i += 1
    shutil.copy2(p, dest)
    if keep > 0:
        bks = [x for x in backups_dir.glob(f"{tag}.*{p.suffix}") if x.is_file()]
        # keep the newest N
        bks = sorted(bks, key=lambda x: (x.stat().st_mtime, x.name), reverse=True)
        for old in bks[keep:]:
            try:
                old.unlink()
            except OSError:
                pass
    return dest


def read_text(p: Path) -> str:
    return p.read_text(encoding="utf-8")


def atomic_write_json(p: Path, data: Any) -> None:
    """Write JSON to ``p`` via temp file + rename.

    A crash mid-write leaves the previous content of ``p`` intact.
    Raises OSError (or TypeError for unserialisable data) on failure.
    """
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=p.parent, prefix=f".{p.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, p)
    except Exception:
        # Clean up temp file on failure
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def canonical_path(value: str | os.PathLike[str]) -> Path:
    """Expand, absolutise and resolve symlinks; normalise case where the OS folds it."""
    path = Path(os.path.expanduser(os.path.expandvars(str(value))))
    try:
        path = path.resolve(strict=False)
    except (OSError, RuntimeError, ValueError):
        path = Path(os.path.abspath(path))
    return Path(os.path.normcase(str(path)))


def workspace_key(path: Path) -> str:
    """Stable file-name-safe key for a workspace directory."""
    digest = hashlib.sha256(str(path).encode("utf-8")).hexdigest()[:12]
    return f"{_sanitize_component(path.name, default='workspace')}-{digest}"
