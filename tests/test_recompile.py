import hashlib
import threading

from PIL import Image

from livepreview.recompile import RecompileTrigger

from .helpers import FakeCompiler, RecordingRegistry


def _trigger(project, compiler=None):
    compiler = compiler or FakeCompiler(project / "doc.pdf")
    registry = RecordingRegistry()
    return RecompileTrigger(compiler, project / "doc.typ", registry), compiler, registry


def test_nothing_compiled_yet(project):
    trigger, _, _ = _trigger(project)
    art = trigger.current()
    assert art.version == 0
    assert not art.ready
    assert art.data == b""


def test_success_bumps_version_and_broadcasts(project):
    trigger, compiler, registry = _trigger(project)
    first = trigger.recompile()
    second = trigger.recompile()
    assert first.version == 1
    assert second.version == 2
    assert trigger.current() is second
    assert registry.versions == [1, 2]
    data = (project / "doc.pdf").read_bytes()
    assert second.data == data
    assert second.digest == hashlib.sha256(data).hexdigest()
    assert second.media_type == "application/pdf"
    assert second.last_success_at >= first.last_success_at
    assert trigger.last_error is None


def test_failure_keeps_previous_bytes_and_does_not_broadcast(project):
    trigger, compiler, registry = _trigger(project)
    good = trigger.recompile()
    compiler.fail = True
    compiler.corrupt_on_fail = True
    assert trigger.recompile() is None
    assert (project / "doc.pdf").read_bytes() == b"garbage"
    art = trigger.current()
    assert art is good
    assert art.version == 1
    assert art.data.startswith(b"%PDF-1.7 fake build 1")
    assert registry.versions == [1]
    assert trigger.failures == 1
    assert "compilation failed" in trigger.last_error["message"]
    assert "unknown variable" in trigger.last_error["message"]
    assert trigger.last_error["serving_version"] == 1


def test_recovery_after_failure_continues_numbering(project):
    trigger, compiler, registry = _trigger(project)
    trigger.recompile()
    compiler.fail = True
    trigger.recompile()
    compiler.fail = False
    art = trigger.recompile()
    assert art.version == 2
    assert registry.versions == [1, 2]
    assert trigger.last_error is None


def test_unexpected_compiler_exception_is_a_compile_failure(project):
    class Broken:
        def compile(self, source):
            raise ValueError("bad font table")

    trigger, _, registry = _trigger(project, Broken())
    assert trigger.recompile() is None
    assert "bad font table" in trigger.last_error["message"]
    assert registry.versions == []


def test_closed_trigger_discards_results(project):
    trigger, compiler, registry = _trigger(project)
    trigger.recompile()
    compiler.gate = threading.Event()
    worker = threading.Thread(target=trigger.recompile)
    worker.start()
    assert compiler.entered.wait(2)
    trigger.close()
    compiler.gate.set()
    worker.join(2)
    assert trigger.current().version == 1
    assert registry.versions == [1]
    assert trigger.recompile() is None


def test_compiles_never_overlap(project):
    trigger, compiler, registry = _trigger(project)
    threads = [threading.Thread(target=trigger.recompile) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)
    assert compiler.max_active == 1
    assert trigger.current().version == 6
    assert registry.versions == [1, 2, 3, 4, 5, 6]


def test_page_image_size_is_recorded(project):
    class PngCompiler:
        def compile(self, source):
            out = project / "doc.png"
            Image.new("RGB", (40, 30), "white").save(out)
            return out

    trigger, _, _ = _trigger(project, PngCompiler())
    art = trigger.recompile()
    assert art.media_type == "image/png"
    assert art.size == (40, 30)
    assert art.summary()["size"] == [40, 30]
