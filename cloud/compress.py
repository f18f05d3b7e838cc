"""Stage files for upload, gzip-compressing the ones that benefit."""
from __future__ import annotations

import gzip
import logging
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

LOGGER = logging.getLogger("checkpoint.cloud")

# Formats that do not shrink under gzip.
COMPRESSED_EXTENSIONS = frozenset(
    {
        ".gz", ".tgz", ".bz2", ".xz", ".zst", ".zip", ".7z", ".rar", ".age",
        ".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic", ".avif",
        ".mp3", ".m4a", ".aac", ".ogg", ".flac", ".opus",
        ".mp4", ".mov", ".mkv", ".webm", ".avi",
        ".pdf", ".docx", ".xlsx", ".pptx", ".jar", ".whl",
    }
)

_CHUNK = 1024 * 1024


@dataclass(slots=True)
class StagedFile:
    rel: str
    source: Path
    staged: Optional[Path] = None
    compressed: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.staged is not None and self.error is None


def should_compress(path: Path) -> bool:
    return path.suffix.lower() not in COMPRESSED_EXTENSIONS


def _stage_one(item: StagedFile, staging: Path, compress: bool) -> StagedFile:
    try:
        if compress and should_compress(item.source):
            target = staging / f"{item.rel}.gz"
            target.parent.mkdir(parents=True, exist_ok=True)
            with item.source.open("rb") as src, gzip.open(target, "wb") as dst:
                shutil.copyfileobj(src, dst, _CHUNK)
            item.compressed = True
        else:
            target = staging / item.rel
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(item.source, target)
        item.staged = target
    except OSError as exc:
        item.error = str(exc)
        LOGGER.warning("staging failed for %s: %s", item.rel, exc)
    return item


def stage_files(
    entries: Iterable[Tuple[str, Path]],
    staging: Path,
    *,
    compress: bool = True,
    workers: int = 1,
    parallel_threshold: int = 8,
) -> List[StagedFile]:
    """Copy ``(rel, source)`` pairs under *staging*, gzipping where useful.

    Batches larger than *parallel_threshold* are spread over a thread pool.
    """

    items: Sequence[StagedFile] = [StagedFile(rel=rel, source=source) for rel, source in entries]
    staging.mkdir(parents=True, exist_ok=True)
    if len(items) > parallel_threshold and workers > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="cloud-stage") as pool:
            return list(pool.map(lambda item: _stage_one(item, staging, compress), items))
    return [_stage_one(item, staging, compress) for item in items]


__all__ = ["COMPRESSED_EXTENSIONS", "StagedFile", "should_compress", "stage_files"]
