from protocol.models import FileMeta
from transfer.models import CompletedFile
from transfer.sink import safe_file_name, save_completed, unique_path, write_completed


def _completed(name: str, data: bytes) -> CompletedFile:
    return CompletedFile(meta=FileMeta(id="f1", name=name, size=len(data)), data=data)


def test_safe_file_name_strips_directories():
    assert safe_file_name("../../etc/passwd") == "passwd"
    assert safe_file_name("C:\\Users\\x\\notes.txt") == "notes.txt"
    assert safe_file_name("..") == "download"
    assert safe_file_name("   ") == "download"


def test_unique_path_numbers_collisions(tmp_path):
    (tmp_path / "a.txt").write_text("x")
    (tmp_path / "a (1).txt").write_text("x")
    assert unique_path(tmp_path, "a.txt") == tmp_path / "a (2).txt"
    assert unique_path(tmp_path, "b.txt") == tmp_path / "b.txt"


def test_write_completed_creates_directory(tmp_path):
    target = tmp_path / "nested" / "dir"
    path = write_completed(_completed("report.pdf", b"%PDF"), target)
    assert path == target / "report.pdf"
    assert path.read_bytes() == b"%PDF"


async def test_save_completed_drops_memory_copy(tmp_path):
    completed = _completed("a.bin", b"\x00" * 10)
    path = await save_completed(completed, tmp_path)
    assert completed.path == path
    assert completed.data == b""
    assert path.read_bytes() == b"\x00" * 10
