from protocol.models import FileMeta
from session.gate import SessionGate
from session.models import SessionConfig

CATALOGUE = [FileMeta(id="f1", name="a.txt", size=3)]


def _gate(password=None) -> SessionGate:
    return SessionGate(SessionConfig(password=password), lambda: list(CATALOGUE))


def test_open_session_shows_files():
    gate = _gate()
    assert not gate.locked
    manifest = gate.manifest_for("c1")
    assert manifest.locked is False
    assert manifest.files == CATALOGUE


def test_blank_password_means_open():
    assert not _gate("").locked


def test_locked_manifest_has_no_files():
    gate = _gate("hunter2")
    manifest = gate.manifest_for("c1")
    assert manifest.locked is True
    assert manifest.files is None
    assert manifest.to_wire() == {"locked": True}


def test_wrong_password_keeps_lock():
    gate = _gate("hunter2")
    assert gate.verify("c1", "hunter3") is False
    assert not gate.is_unlocked("c1")


def test_unlock_is_per_connection():
    gate = _gate("hunter2")
    assert gate.verify("c1", "hunter2") is True
    assert gate.manifest_for("c1").files == CATALOGUE
    assert gate.manifest_for("c2").locked is True
    assert gate.is_unlocked("c1") and not gate.is_unlocked("c2")


def test_forget_relocks():
    gate = _gate("hunter2")
    gate.verify("c1", "hunter2")
    gate.forget("c1")
    assert not gate.is_unlocked("c1")
