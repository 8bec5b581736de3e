"""Conversion orchestration: strategy planning, the per-file state machine and batches."""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Callable, List, Optional, Sequence, Tuple, Union

from .capabilities import CapabilityRegistry
from .errors import (
    ConversionError,
    ConversionFailed,
    ConverterError,
    FailureCause,
    FailureReason,
    InvalidInput,
    ResourceExhausted,
    ToolUnavailable,
    UnsupportedConversion,
    error_for,
    user_message,
)
from .external import ExternalConverter
from .formats import (
    DOCUMENT_FORMAT,
    STATIC_CAPABILITIES,
    Classification,
    classify,
    detect_input_format,
    needs_trace,
    normalize_format,
    output_extension,
)
from .tools import convert_fast, image_to_pdf, image_to_pdf_fitted, rasterize_pdf_page

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 20

# Pre-processing always produces PNG.
NORMALIZED_FORMAT = "png"

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class ConversionState(str, Enum):
    """Orchestrator states, recorded in order in each result's history."""

    RECEIVED = "received"
    CLASSIFIED = "classified"
    PREPROCESSING = "preprocessing"
    CONVERTING = "converting"
    VERIFYING = "verifying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ConversionRequest:
    """One uploaded file awaiting conversion. The orchestrator owns ``input_path``."""

    input_path: Path
    input_format: Optional[str]
    target_format: str
    original_name: str = ""

    @classmethod
    def from_upload(
        cls,
        input_path: Path,
        filename: Optional[str],
        mimetype: Optional[str],
        target_format: str,
    ) -> "ConversionRequest":
        """Build a request, deriving the input format from the client's filename or MIME type."""
        path = Path(input_path)
        return cls(
            input_path=path,
            input_format=detect_input_format(filename, mimetype),
            target_format=(target_format or "").strip().lower(),
            original_name=Path(filename).name if filename else path.name,
        )


@dataclass(frozen=True)
class ConversionSuccess:
    """A produced output file and the strategy that wrote it."""

    output_path: Path
    output_format: str
    strategy: str
    original_name: str = ""
    history: Tuple[ConversionState, ...] = ()

    ok = True


@dataclass(frozen=True)
class ConversionFailure:
    """Why a request failed; ``message`` is safe to show users."""

    reason: FailureReason
    message: str
    cause: Optional[FailureCause] = None
    original_name: str = ""
    history: Tuple[ConversionState, ...] = ()

    ok = False


ConversionResult = Union[ConversionSuccess, ConversionFailure]

Attempt = Callable[[Path, Path, Path], Path]


@dataclass(frozen=True)
class Strategy:
    """A named converter attempt: ``attempt(source, output, work_dir) -> output``."""

    name: str
    attempt: Attempt


def plan_strategies(
    classification: Classification,
    input_format: Optional[str],
    target_format: str,
    external: ExternalConverter,
) -> List[Strategy]:
    """
    Return the ordered fallback chain for a classified conversion.

    The orchestrator tries each strategy in turn until one produces output:

    * document target: page-sized embed, fit-to-box embed, then embed of an
      externally normalized raster;
    * fast path: Pillow, then the external tool (the single fallback);
    * external tool: direct conversion, preceded by grayscale and monochrome
      tracing when a raster source is converted to a vector format.
    """
    target = normalize_format(target_format)

    if classification.use_document_converter:

        def embed_normalized(source: Path, output: Path, work_dir: Path) -> Path:
            normalized = external.normalize(source, work_dir / "document_source.png", input_format)
            try:
                return image_to_pdf(normalized, output)
            except ConverterError:
                return image_to_pdf_fitted(normalized, output)

        return [
            Strategy("pdf-page", lambda source, output, _work: image_to_pdf(source, output)),
            Strategy("pdf-fitted", lambda source, output, _work: image_to_pdf_fitted(source, output)),
            Strategy("pdf-normalized", embed_normalized),
        ]

    direct = Strategy("external", lambda source, output, _work: external.convert(source, output, target))

    if classification.use_fast_path:
        return [
            Strategy("fast", lambda source, output, _work: convert_fast(source, output, target)),
            direct,
        ]

    if needs_trace(input_format, target):
        return [
            Strategy("trace-grayscale", lambda source, output, work: external.trace(source, output, "grayscale", work)),
            Strategy("trace-monochrome", lambda source, output, work: external.trace(source, output, "monochrome", work)),
            direct,
        ]
    return [direct]


def build_output_path(output_dir: Path, request: ConversionRequest) -> Path:
    """Return a unique output path derived from the client's filename."""
    stem = _UNSAFE_NAME.sub("_", Path(request.original_name or "output").stem).strip("._")[:64] or "output"
    return output_dir / f"{stem}_{uuid.uuid4().hex[:8]}{output_extension(request.target_format)}"


class Preprocessor:
    """Normalize exotic inputs to PNG before the main conversion."""

    def __init__(self, external: ExternalConverter) -> None:
        self._external = external

    def run(self, input_path: Path, input_format: Optional[str], work_dir: Path) -> Optional[Path]:
        """Return the normalized PNG, or None when normalization failed."""
        target = work_dir / "normalized.png"
        try:
            if normalize_format(input_format) == "pdf":
                rasterize_pdf_page(input_path, target)
            else:
                self._external.normalize(input_path, target, input_format)
        except Exception as error:  # noqa: BLE001
            target.unlink(missing_ok=True)
            logger.warning("Pre-processing %s failed, converting original: %s", input_path.name, error)
            return None
        if not target.exists() or target.stat().st_size == 0:
            target.unlink(missing_ok=True)
            return None
        return target


class ConversionOrchestrator:
    """Run one request through classify, pre-process, convert, verify and cleanup."""

    def __init__(
        self,
        external: ExternalConverter,
        capabilities: CapabilityRegistry,
        output_dir: Path,
        work_root: Path,
    ) -> None:
        self.external = external
        self.capabilities = capabilities
        self.output_dir = Path(output_dir)
        self.work_root = Path(work_root)
        self.preprocessor = Preprocessor(external)

    def convert(self, request: ConversionRequest, output_path: Optional[Path] = None) -> ConversionResult:
        """Convert one request. Never raises; the input file is always deleted."""
        history: List[ConversionState] = [ConversionState.RECEIVED]
        output = Path(output_path) if output_path else build_output_path(self.output_dir, request)
        try:
            strategy = self._run(request, output, history)
        except ConversionError as error:
            return self._fail(request, output, history, error.reason, error.message, error.cause)
        except Exception as error:  # noqa: BLE001
            logger.exception("Unexpected error converting %s", request.original_name)
            return self._fail(
                request,
                output,
                history,
                FailureReason.CONVERSION_FAILED,
                user_message(None, request.target_format),
                None,
            )
        request.input_path.unlink(missing_ok=True)
        history.append(ConversionState.SUCCEEDED)
        logger.info("Converted %s to %s via %s", request.original_name, output.name, strategy)
        return ConversionSuccess(
            output_path=output,
            output_format=normalize_format(request.target_format),
            strategy=strategy,
            original_name=request.original_name,
            history=tuple(history),
        )

    def _fail(
        self,
        request: ConversionRequest,
        output: Path,
        history: List[ConversionState],
        reason: FailureReason,
        message: str,
        cause: Optional[FailureCause],
    ) -> ConversionFailure:
        request.input_path.unlink(missing_ok=True)
        output.unlink(missing_ok=True)
        history.append(ConversionState.FAILED)
        logger.warning("Conversion of %s failed (%s): %s", request.original_name, reason.value, message)
        return ConversionFailure(
            reason=reason,
            message=message,
            cause=cause,
            original_name=request.original_name,
            history=tuple(history),
        )

    def _run(self, request: ConversionRequest, output: Path, history: List[ConversionState]) -> str:
        path = request.input_path
        if not path.is_file() or path.stat().st_size == 0:
            raise InvalidInput("No file was uploaded, or the upload is empty.")
        if request.input_format is None:
            raise InvalidInput("Invalid image file type. Upload an image such as PNG, JPG or WEBP.")
        target = normalize_format(request.target_format)
        if not target:
            raise InvalidInput("A target format is required.")

        classification = classify(request.input_format, target)
        history.append(ConversionState.CLASSIFIED)
        self._check_capability(classification, target)

        self.work_root.mkdir(parents=True, exist_ok=True)
        output.parent.mkdir(parents=True, exist_ok=True)
        with TemporaryDirectory(prefix="imgconv-", dir=self.work_root, ignore_cleanup_errors=True) as temp:
            work_dir = Path(temp)
            source, source_format = path, request.input_format
            if classification.needs_preprocessing:
                history.append(ConversionState.PREPROCESSING)
                normalized = self.preprocessor.run(path, request.input_format, work_dir)
                if normalized is not None:
                    source, source_format = normalized, NORMALIZED_FORMAT

            history.append(ConversionState.CONVERTING)
            strategies = plan_strategies(classification, source_format, target, self.external)
            # Every document tier failing is reported as a document error.
            terminal = FailureCause.DOCUMENT if classification.use_document_converter else None
            strategy = self._attempt(strategies, source, output, work_dir, request, terminal)

        history.append(ConversionState.VERIFYING)
        if not output.exists() or output.stat().st_size == 0:
            raise ConversionFailed(user_message(FailureCause.EMPTY_OUTPUT, target), FailureCause.EMPTY_OUTPUT)
        return strategy

    def _check_capability(self, classification: Classification, target: str) -> None:
        if target == DOCUMENT_FORMAT:
            return
        static = STATIC_CAPABILITIES.get(target)
        if static is None or not static.writable:
            raise UnsupportedConversion(
                f"Converting to {target.upper()} is not supported. Try PNG, JPG or WEBP instead."
            )
        if not classification.use_external_tool:
            return
        snapshot = self.capabilities.get()
        if not snapshot.tool_available:
            raise ToolUnavailable(user_message(FailureCause.TOOL_MISSING, target), FailureCause.TOOL_MISSING)
        capability = snapshot.get(target)
        if capability is None or not capability.writable_by_external_tool:
            raise UnsupportedConversion(
                user_message(FailureCause.ENCODE_UNSUPPORTED, target), FailureCause.ENCODE_UNSUPPORTED
            )

    def _attempt(
        self,
        strategies: Sequence[Strategy],
        source: Path,
        output: Path,
        work_dir: Path,
        request: ConversionRequest,
        terminal_cause: Optional[FailureCause] = None,
    ) -> str:
        """Try strategies in order; return the winner's name or raise the last failure."""
        last_error: Optional[ConverterError] = None
        for strategy in strategies:
            try:
                strategy.attempt(source, output, work_dir)
            except ConverterError as error:
                output.unlink(missing_ok=True)
                logger.warning("Strategy %s failed for %s: %s", strategy.name, request.original_name, error)
                # An absent fallback tool says nothing about why the earlier attempt failed.
                if last_error is None or error.cause is not FailureCause.TOOL_MISSING:
                    last_error = error
                continue
            if output.exists() and output.stat().st_size > 0:
                return strategy.name
            output.unlink(missing_ok=True)
            last_error = ConverterError(FailureCause.EMPTY_OUTPUT, f"{strategy.name} wrote no data")
        cause = terminal_cause or (last_error.cause if last_error else FailureCause.TOOL_FAILURE)
        raise error_for(cause, request.target_format)


@dataclass(frozen=True)
class BatchJob:
    """Requests sharing one target format, converted in order."""

    target_format: str
    requests: Tuple[ConversionRequest, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        target = normalize_format(self.target_format)
        for request in self.requests:
            if normalize_format(request.target_format) != target:
                raise ValueError("All requests in a batch must share one target format")


@dataclass(frozen=True)
class BatchResult:
    """Per-request results in submission order, with derived counts."""

    target_format: str
    results: Tuple[ConversionResult, ...]

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.ok)


class BatchCoordinator:
    """Convert a batch sequentially without letting one failure stop the rest."""

    def __init__(self, orchestrator: ConversionOrchestrator, max_size: int = MAX_BATCH_SIZE) -> None:
        self.orchestrator = orchestrator
        self.max_size = max_size

    def run(self, job: BatchJob) -> BatchResult:
        if len(job.requests) > self.max_size:
            for request in job.requests:
                request.input_path.unlink(missing_ok=True)
            raise ResourceExhausted(f"A batch may contain at most {self.max_size} files.")
        results: List[ConversionResult] = []
        for index, request in enumerate(job.requests, start=1):
            logger.info("Batch item %d/%d: %s", index, len(job.requests), request.original_name)
            results.append(self.orchestrator.convert(request))
        batch = BatchResult(target_format=job.target_format, results=tuple(results))
        logger.info("Batch finished: %d succeeded, %d failed", batch.successful, batch.failed)
        return batch
