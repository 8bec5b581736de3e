"""Error taxonomy for the conversion pipeline."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Top-level failure kinds reported to callers."""

    INVALID_INPUT = "invalid_input"
    UNSUPPORTED_CONVERSION = "unsupported_conversion"
    TOOL_UNAVAILABLE = "tool_unavailable"
    CONVERSION_FAILED = "conversion_failed"
    RESOURCE_EXHAUSTED = "resource_exhausted"


class FailureCause(str, Enum):
    """Converter-level sub-causes of a failed attempt."""

    ENCODE_UNSUPPORTED = "encode_unsupported"
    DECODE_UNSUPPORTED = "decode_unsupported"
    TIMEOUT = "timeout"
    EMPTY_OUTPUT = "empty_output"
    TOOL_FAILURE = "tool_failure"
    TOOL_MISSING = "tool_missing"
    DOCUMENT = "document"


@dataclass
class ConversionError(Exception):
    """Raised when a request cannot be served; ``message`` is safe to show users."""

    message: str
    cause: Optional[FailureCause] = None

    reason = FailureReason.CONVERSION_FAILED

    def __post_init__(self) -> None:
        """Initialize the base exception with the message."""
        super().__init__(self.message)


class InvalidInput(ConversionError):
    """Missing or unreadable upload, or an unrecognized file type."""

    reason = FailureReason.INVALID_INPUT


class UnsupportedConversion(ConversionError):
    """No converter can write the requested target format."""

    reason = FailureReason.UNSUPPORTED_CONVERSION


class ToolUnavailable(ConversionError):
    """The external image tool is required but not installed."""

    reason = FailureReason.TOOL_UNAVAILABLE


class ConversionFailed(ConversionError):
    """A converter ran and failed."""

    reason = FailureReason.CONVERSION_FAILED


class ResourceExhausted(ConversionError):
    """A request exceeded a resource bound such as the batch size."""

    reason = FailureReason.RESOURCE_EXHAUSTED


@dataclass
class ConverterError(Exception):
    """Recoverable signal raised by a single converter attempt.

    ``detail`` carries technical text (stderr, library messages) for the logs;
    it is never shown to end users.
    """

    cause: FailureCause
    detail: str = ""

    def __post_init__(self) -> None:
        """Initialize the base exception with a readable summary."""
        super().__init__(f"{self.cause.value}: {self.detail}" if self.detail else self.cause.value)


def user_message(cause: Optional[FailureCause], target_format: str) -> str:
    """Map a converter cause to actionable guidance for the end user."""
    target = target_format.upper()
    if cause is FailureCause.ENCODE_UNSUPPORTED:
        return f"{target} output is not supported on this server. Try converting to PNG or JPG instead."
    if cause is FailureCause.DECODE_UNSUPPORTED:
        return "The uploaded file could not be read. It may be corrupt or in an unsupported format."
    if cause is FailureCause.TIMEOUT:
        return "The conversion took too long and was stopped. Try a smaller image."
    if cause is FailureCause.EMPTY_OUTPUT:
        return f"Converting to {target} produced an empty file. Try a common format such as PNG."
    if cause is FailureCause.TOOL_MISSING:
        return f"Converting to {target} requires ImageMagick, which is not available on this server."
    if cause is FailureCause.DOCUMENT:
        return "The image could not be placed into a PDF. Try converting it to PNG first."
    return f"Conversion to {target} failed. Try a common format such as PNG or JPG."


def error_for(cause: FailureCause, target_format: str) -> ConversionError:
    """Translate a converter cause into the caller-facing exception kind."""
    message = user_message(cause, target_format)
    if cause is FailureCause.TOOL_MISSING:
        return ToolUnavailable(message, cause)
    return ConversionFailed(message, cause)
