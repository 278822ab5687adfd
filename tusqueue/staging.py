"""Payload staging: turn a source file into a stable, uploadable artifact.

A resumed upload must send exactly the bytes the first attempt sent, so the
staged file for an item is created once and reused from then on.  Its name
derives from the item id alone.
"""

from __future__ import annotations

import logging
import mimetypes
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from tusqueue.utils.path_helpers import human_readable_size, safe_filename

logger = logging.getLogger(__name__)

_STAGED_PREFIX = "upload_"
_REENCODE_FORMAT = "PNG"
_REENCODE_SUFFIX = ".png"
_REENCODE_CONTENT_TYPE = "image/png"
_PNG_MODES = frozenset({"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"})


class StagingError(Exception):
    """Raised when a source cannot be turned into an uploadable payload."""


@dataclass(frozen=True)
class StagedPayload:
    """A staged artifact ready for upload."""

    path: Path
    size: int
    content_type: str
    reused: bool

    @property
    def filename(self) -> str:
        return self.path.name


class PayloadStager:
    """Copies (or re-encodes) sources into a staging directory."""

    def __init__(self, staging_dir: str | Path) -> None:
        """Initialise, creating *staging_dir* if necessary."""
        self._dir = Path(staging_dir)
        self._dir.mkdir(parents=True, exist_ok=True)

    @property
    def staging_dir(self) -> Path:
        return self._dir

    def staged_path(self, item_id: str, source: str, reencode: bool = False) -> Path:
        """Return the deterministic staging path for *item_id*."""
        suffix = _REENCODE_SUFFIX if reencode else Path(source).suffix.lower()
        return self._dir / f"{_STAGED_PREFIX}{safe_filename(item_id)}{suffix}"

    def stage(self, item_id: str, source: str, reencode: bool = False) -> StagedPayload:
        """Stage *source* for *item_id*, reusing an existing artifact.

        Raises:
            StagingError: The source is missing, unreadable or (when
                re-encoding) not a decodable, complete image.
            OSError: Writing to the staging directory failed.
        """
        target = self.staged_path(item_id, source, reencode)
        content_type = self._content_type(source, reencode)

        if target.is_file():
            size = target.stat().st_size
            logger.info("Reusing staged payload %s (%s)", target.name, human_readable_size(size))
            return StagedPayload(path=target, size=size, content_type=content_type, reused=True)

        src = Path(source)
        if not src.is_file():
            raise StagingError(f"Source file not found: {source}")

        tmp = target.with_name(target.name + ".tmp")
        try:
            if reencode:
                self._reencode(src, tmp)
            else:
                self._copy(src, tmp)
            os.replace(tmp, target)
        except BaseException:
            tmp.unlink(missing_ok=True)
            raise

        size = target.stat().st_size
        logger.info(
            "Staged %s → %s (%s)", source, target.name, human_readable_size(size)
        )
        return StagedPayload(path=target, size=size, content_type=content_type, reused=False)

    def discard(self, path: str | Path) -> None:
        """Delete a staged artifact once it is no longer needed."""
        try:
            Path(path).unlink(missing_ok=True)
            logger.debug("Discarded staged payload %s", path)
        except OSError as exc:
            logger.warning("Could not discard staged payload %s: %s", path, exc)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _copy(self, src: Path, dst: Path) -> None:
        try:
            in_fh = open(src, "rb")
        except PermissionError as exc:
            raise StagingError(f"Cannot read source {src}: {exc}") from exc
        with in_fh, open(dst, "wb") as out_fh:
            shutil.copyfileobj(in_fh, out_fh)

    def _reencode(self, src: Path, dst: Path) -> None:
        try:
            image = Image.open(src)
        except UnidentifiedImageError as exc:
            raise StagingError(f"Source is not a decodable image: {src}") from exc
        except OSError as exc:
            raise StagingError(f"Cannot read source {src}: {exc}") from exc
        try:
            image.load()
        except OSError as exc:
            # Truncated or corrupt pixel data
            image.close()
            raise StagingError(f"Source image is damaged: {src}: {exc}") from exc
        with image:
            # PNG cannot hold CMYK/YCbCr pixels
            if image.mode not in _PNG_MODES:
                image = image.convert("RGBA")
            image.save(dst, format=_REENCODE_FORMAT)

    def _content_type(self, source: str, reencode: bool) -> str:
        if reencode:
            return _REENCODE_CONTENT_TYPE
        guessed, _ = mimetypes.guess_type(source)
        return guessed or "application/octet-stream"
