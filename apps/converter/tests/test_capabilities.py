from conftest import FakeExternalConverter
from imgconv.capabilities import CapabilityRegistry, probe


class _ExplodingConverter(FakeExternalConverter):
    def list_formats(self):
        raise RuntimeError("probe crashed")


def test_probe_with_tool() -> None:
    snapshot = probe(FakeExternalConverter())

    assert snapshot.tool_available
    assert snapshot.tracer_available
    assert snapshot.get("ico").writable_by_external_tool
    assert "ico" in snapshot.advanced_formats()
    assert "png" not in snapshot.advanced_formats()


def test_probe_without_tool_degrades() -> None:
    """A missing tool leaves only fast-path formats advertised."""
    snapshot = probe(FakeExternalConverter(available=False))

    assert not snapshot.tool_available
    assert snapshot.tool_version is None
    assert snapshot.advanced_formats() == []
    assert snapshot.get("png").writable


def test_probe_never_raises() -> None:
    snapshot = probe(_ExplodingConverter())
    assert not snapshot.tool_available
    assert snapshot.advanced_formats() == []


def test_registry_probes_once_until_refresh() -> None:
    external = FakeExternalConverter()
    registry = CapabilityRegistry(external)

    first = registry.get()
    assert registry.get() is first
    assert external.probes == 1

    external.available = False
    refreshed = registry.refresh()
    assert refreshed is registry.get()
    assert not refreshed.tool_available


def test_snapshot_payload() -> None:
    payload = probe(FakeExternalConverter(tracer=False)).to_dict()

    assert payload["external_tool"] == {"available": True, "version": "ImageMagick 7.1.1-fake"}
    assert payload["vector_tracing"] is False
    assert "jpg" in payload["fast_path_formats"]
    assert "svg" in payload["advanced_formats"]
