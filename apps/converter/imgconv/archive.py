"""Bundle previously converted outputs into a ZIP archive."""

from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Iterable, List

from .errors import FailureReason
from .pipeline import ConversionFailure, ConversionResult, ConversionSuccess
from .tools import zip_outputs

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def _archive_name(name: str) -> str:
    stem = Path(name or "").name
    if stem.lower().endswith(".zip"):
        stem = stem[:-4]
    stem = _UNSAFE_NAME.sub("_", stem).strip("._")[:64] or "converted-images"
    return f"{stem}_{uuid.uuid4().hex[:8]}.zip"


class ArchiveBuilder:
    """Resolve output references inside ``output_dir`` and zip the ones still on disk."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)

    def resolve(self, references: Iterable[str]) -> List[Path]:
        """Map references to existing files, dropping missing or duplicate ones.

        Only the final path component of a reference is used, so references can
        never point outside the output directory.
        """
        files: List[Path] = []
        seen = set()
        for reference in references:
            name = Path(str(reference or "")).name
            if not name or name in seen:
                continue
            candidate = self.output_dir / name
            if candidate.is_file():
                files.append(candidate)
                seen.add(name)
            else:
                logger.info("Skipping missing archive entry %s", name)
        return files

    def build(self, references: Iterable[str], name: str) -> ConversionResult:
        files = self.resolve(references)
        if not files:
            return ConversionFailure(
                reason=FailureReason.INVALID_INPUT,
                message="No valid files to archive.",
                original_name=name,
            )
        self.output_dir.mkdir(parents=True, exist_ok=True)
        zip_path = self.output_dir / _archive_name(name)
        try:
            zip_outputs(files, zip_path)
        except OSError as error:
            zip_path.unlink(missing_ok=True)
            logger.warning("Archive %s failed: %s", zip_path.name, error)
            return ConversionFailure(
                reason=FailureReason.CONVERSION_FAILED,
                message="The archive could not be created. Please retry.",
                original_name=name,
            )
        logger.info("Archived %d files into %s", len(files), zip_path.name)
        return ConversionSuccess(
            output_path=zip_path,
            output_format="zip",
            strategy="zip",
            original_name=name,
        )
