import errno
import os

import pytest

import linker


def test_link_file_mirrors_relative_path(tmp_path):
    src = tmp_path / "a"
    dst = tmp_path / "b"
    (src / "x").mkdir(parents=True)
    dst.mkdir()
    source_file = src / "x" / "y.mkv"
    source_file.write_bytes(b"episode")

    result = linker.link_file(src, source_file, dst)

    assert result == dst / "x" / "y.mkv"
    assert (dst / "x").is_dir()
    assert os.path.samefile(source_file, result)
    assert source_file.stat().st_nlink == 2


def test_link_file_rejects_file_outside_base(tmp_path):
    src = tmp_path / "src"
    other = tmp_path / "other"
    dst = tmp_path / "dst"
    src.mkdir()
    other.mkdir()
    dst.mkdir()
    outsider = other / "show" / "ep1.mkv"
    outsider.parent.mkdir()
    outsider.write_bytes(b"data")

    with pytest.raises(linker.LinkError, match="Fail to strip path"):
        linker.link_file(src, outsider, dst)

    assert list(dst.iterdir()) == []


def test_link_file_fails_when_destination_exists(tmp_path):
    src = tmp_path / "src"
    dst = tmp_path / "dst"
    (src / "show").mkdir(parents=True)
    (dst / "show").mkdir(parents=True)
    source_file = src / "show" / "ep1.mkv"
    source_file.write_bytes(b"new")
    (dst / "show" / "ep1.mkv").write_bytes(b"old")

    with pytest.raises(linker.LinkError, match="Failed to hardlink") as excinfo:
        linker.link_file(src, source_file, dst)

    assert isinstance(excinfo.value.__cause__, FileExistsError)
    assert (dst / "show" / "ep1.mkv").read_bytes() == b"old"


def test_link_file_reports_cross_device_failure(tmp_path, monkeypatch):
    src = tmp_path / "src"
    dst = tmp_path / "dst"
    src.mkdir()
    source_file = src / "ep1.mkv"
    source_file.write_bytes(b"data")

    def fake_link(_src, _dst):
        raise OSError(errno.EXDEV, "Invalid cross-device link")

    monkeypatch.setattr(linker.os, "link", fake_link)

    with pytest.raises(linker.LinkError) as excinfo:
        linker.link_file(src, source_file, dst)

    assert excinfo.value.__cause__.errno == errno.EXDEV
    # parent directories are not cleaned up after a failed link
    assert dst.is_dir()
    assert not (dst / "ep1.mkv").exists()


def test_link_file_reports_directory_creation_failure(tmp_path):
    src = tmp_path / "src"
    (src / "show").mkdir(parents=True)
    source_file = src / "show" / "ep1.mkv"
    source_file.write_bytes(b"data")
    blocker = tmp_path / "dst"
    blocker.write_text("not a directory")

    with pytest.raises(linker.LinkError, match="Cannot create directory"):
        linker.link_file(src, source_file, blocker)


def test_ensure_directory_creates_and_canonicalizes(tmp_path):
    target = tmp_path / "nested" / "data"

    result = linker.ensure_directory(target)

    assert result == target.resolve()
    assert result.is_dir()
    assert result.is_absolute()


def test_ensure_directory_rejects_file(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")

    with pytest.raises(linker.LinkError):
        linker.ensure_directory(blocker)
