"""Service façade used by the hosting web layer, plus a command-line entry point."""

import argparse
import json
import logging
import mimetypes
import re
import shutil
import sys
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .archive import ArchiveBuilder
from .capabilities import CapabilityRegistry
from .config import Settings
from .errors import ConversionError, InvalidInput
from .external import ExternalConverter, MagickConverter
from .pipeline import (
    BatchCoordinator,
    BatchJob,
    BatchResult,
    ConversionFailure,
    ConversionOrchestrator,
    ConversionRequest,
    ConversionResult,
)

logger = logging.getLogger(__name__)

_UNSAFE_SUFFIX = re.compile(r"[^a-z0-9.]+")
_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class Upload:
    """A staged upload: a service-owned file plus what the client told us about it."""

    path: Path
    filename: str
    mimetype: Optional[str] = None


class ConversionService:
    """Stage uploads and run single, batch and archive conversions."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        external: Optional[ExternalConverter] = None,
    ) -> None:
        """Create the upload/output directories and wire the pipeline."""
        self.settings = settings or Settings.from_env()
        self.external = external or MagickConverter(
            binary=self.settings.magick_binary,
            tracer=self.settings.potrace_binary,
            timeout=self.settings.tool_timeout,
        )
        self.settings.upload_dir.mkdir(parents=True, exist_ok=True)
        self.settings.output_dir.mkdir(parents=True, exist_ok=True)
        self.registry = CapabilityRegistry(self.external)
        self.orchestrator = ConversionOrchestrator(
            self.external,
            self.registry,
            output_dir=self.settings.output_dir,
            work_root=self.settings.upload_dir,
        )
        self.batches = BatchCoordinator(self.orchestrator, max_size=self.settings.max_batch)
        self.archives = ArchiveBuilder(self.settings.output_dir)
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="imgconv"
        )

    def receive(
        self,
        source: Union[Path, str, bytes, BinaryIO],
        filename: str,
        mimetype: Optional[str] = None,
    ) -> Upload:
        """Copy uploaded content to a fresh, uniquely named path in the upload directory."""
        suffix = _UNSAFE_SUFFIX.sub("", Path(filename or "").suffix.lower())[:12]
        target = self.settings.upload_dir / f"{uuid.uuid4().hex}{suffix}"
        if isinstance(source, bytes):
            target.write_bytes(source)
        elif isinstance(source, (str, Path)):
            shutil.copyfile(source, target)
        else:
            with target.open("wb") as handle:
                shutil.copyfileobj(source, handle, _CHUNK_SIZE)
        logger.debug("Staged upload %s as %s", filename, target.name)
        return Upload(path=target, filename=Path(filename or target.name).name, mimetype=mimetype)

    def convert(self, upload: Upload, target_format: str) -> ConversionResult:
        """Convert one staged upload. The upload is consumed either way."""
        request = ConversionRequest.from_upload(upload.path, upload.filename, upload.mimetype, target_format)
        return self.orchestrator.convert(request)

    def convert_batch(self, uploads: Sequence[Upload], target_format: str) -> BatchResult:
        """
        Convert up to ``max_batch`` uploads to one shared target format.

        Raises:
            InvalidInput: If no uploads were given.
            ResourceExhausted: If the batch is larger than allowed; the uploads are deleted.
        """
        if not uploads:
            raise InvalidInput("No files uploaded.")
        target = (target_format or "").strip().lower()
        job = BatchJob(
            target_format=target,
            requests=tuple(
                ConversionRequest.from_upload(item.path, item.filename, item.mimetype, target)
                for item in uploads
            ),
        )
        return self.batches.run(job)

    def build_archive(self, references: Iterable[str], name: str) -> ConversionResult:
        """Zip previously returned outputs that are still on disk."""
        return self.archives.build(references, name)

    def capabilities(self, refresh: bool = False) -> Dict[str, Any]:
        """Describe external tool availability for client-side format gating."""
        snapshot = self.registry.refresh() if refresh else self.registry.get()
        return snapshot.to_dict()

    def submit_convert(self, upload: Upload, target_format: str) -> "Future[ConversionResult]":
        """Run ``convert`` on the worker pool so the caller's loop is never blocked."""
        return self._executor.submit(self.convert, upload, target_format)

    def submit_batch(self, uploads: Sequence[Upload], target_format: str) -> "Future[BatchResult]":
        """Run ``convert_batch`` on the worker pool; items still run one after another."""
        return self._executor.submit(self.convert_batch, uploads, target_format)

    def shutdown(self) -> None:
        """Wait for submitted work and stop the worker pool."""
        self._executor.shutdown(wait=True)

    def download_url(self, path: Path) -> str:
        return f"{self.settings.download_prefix}/{path.name}"

    def describe(self, result: ConversionResult) -> Dict[str, Any]:
        """Render a result as a JSON-ready payload."""
        if isinstance(result, ConversionFailure):
            return {
                "status": "failed",
                "original_name": result.original_name,
                "reason": result.reason.value,
                "cause": result.cause.value if result.cause else None,
                "error": result.message,
            }
        return {
            "status": "success",
            "original_name": result.original_name,
            "filename": result.output_path.name,
            "format": result.output_format,
            "download_url": self.download_url(result.output_path),
            "expires_at": self._expires_at(result.output_path),
        }

    def describe_batch(self, batch: BatchResult) -> Dict[str, Any]:
        return {
            "target_format": batch.target_format,
            "results": [self.describe(result) for result in batch.results],
            "total": batch.total,
            "successful": batch.successful,
            "failed": batch.failed,
        }

    def _expires_at(self, path: Path) -> str:
        try:
            produced = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        except OSError:
            produced = datetime.now(timezone.utc)
        return (produced + timedelta(seconds=self.settings.retention_seconds)).isoformat()


def build_parser() -> argparse.ArgumentParser:
    """Create and return the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="imgconv", description="Convert images between formats.")
    commands = parser.add_subparsers(dest="command", required=True)

    convert = commands.add_parser("convert", help="Convert one or more images")
    convert.add_argument("files", nargs="+", type=Path, help="Input image files")
    convert.add_argument("-t", "--to", dest="target", required=True, help="Target format, e.g. png")

    archive = commands.add_parser("archive", help="Zip previously converted files")
    archive.add_argument("references", nargs="+", help="Output file names or download URLs")
    archive.add_argument("-n", "--name", default="converted-images", help="Archive name")

    probe = commands.add_parser("capabilities", help="Show external tool capabilities")
    probe.add_argument("--refresh", action="store_true", help="Re-probe the external tool")
    return parser


def _run_command(service: ConversionService, args: argparse.Namespace) -> Tuple[Dict[str, Any], bool]:
    if args.command == "capabilities":
        return service.capabilities(refresh=args.refresh), True
    if args.command == "archive":
        result = service.build_archive(args.references, args.name)
        return service.describe(result), result.ok

    missing = [str(path) for path in args.files if not path.is_file()]
    if missing:
        raise InvalidInput(f"File not found: {', '.join(missing)}")
    uploads: List[Upload] = [
        service.receive(path, path.name, mimetypes.guess_type(path.name)[0]) for path in args.files
    ]
    if len(uploads) == 1:
        result = service.convert(uploads[0], args.target)
        return service.describe(result), result.ok
    batch = service.convert_batch(uploads, args.target)
    return service.describe_batch(batch), batch.failed == 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entrypoint for the ``imgconv`` command."""
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    service = ConversionService(settings)
    try:
        payload, ok = _run_command(service, args)
    except ConversionError as error:
        payload, ok = {"status": "failed", "reason": error.reason.value, "error": error.message}, False
    finally:
        service.shutdown()
    print(json.dumps(payload, indent=2))
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
