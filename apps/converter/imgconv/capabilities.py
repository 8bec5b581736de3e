"""Process-wide capability snapshot, probed once from the external tool."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .external import ExternalConverter
from .formats import FAST_PATH_WRITABLE, FormatCapability, merge_probed_formats

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapabilitySnapshot:
    """Capabilities as observed at probe time."""

    tool_available: bool
    tool_version: Optional[str]
    tracer_available: bool
    formats: Mapping[str, FormatCapability] = field(default_factory=dict)

    def get(self, token: str) -> Optional[FormatCapability]:
        return self.formats.get(token)

    def advanced_formats(self) -> list[str]:
        """Formats only the external tool can write."""
        return sorted(
            token
            for token, capability in self.formats.items()
            if capability.writable_by_external_tool and token not in FAST_PATH_WRITABLE
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "external_tool": {
                "available": self.tool_available,
                "version": self.tool_version,
            },
            "vector_tracing": self.tracer_available,
            "fast_path_formats": sorted(FAST_PATH_WRITABLE),
            "advanced_formats": self.advanced_formats(),
        }


def probe(external: ExternalConverter) -> CapabilitySnapshot:
    """Probe the external tool. Never raises: a missing tool degrades capability."""
    try:
        available = external.is_available()
        probed = external.list_formats() if available else None
        version = external.version() if available else None
        tracer = external.tracer_available() if available else False
    except Exception as error:  # noqa: BLE001
        logger.warning("Capability probe failed, external tool disabled: %s", error)
        available, probed, version, tracer = False, None, None, False
    if not available:
        logger.warning("%s not found; advanced formats are disabled", external.name)
    return CapabilitySnapshot(
        tool_available=available and probed is not None,
        tool_version=version,
        tracer_available=tracer,
        formats=merge_probed_formats(probed),
    )


class CapabilityRegistry:
    """Holds the snapshot; the first ``get()`` probes, ``refresh()`` re-probes."""

    def __init__(self, external: ExternalConverter) -> None:
        self._external = external
        self._lock = threading.Lock()
        self._snapshot: Optional[CapabilitySnapshot] = None

    def get(self) -> CapabilitySnapshot:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = probe(self._external)
            return self._snapshot

    def refresh(self) -> CapabilitySnapshot:
        snapshot = probe(self._external)
        with self._lock:
            self._snapshot = snapshot
        logger.info("Capabilities refreshed (external tool available: %s)", snapshot.tool_available)
        return snapshot
