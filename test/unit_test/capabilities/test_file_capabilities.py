from pathlib import Path

import pytest

from agent_mediator.capabilities.registry import CapabilityRegistry
from agent_mediator.errors import ErrorKind
from agent_mediator.permissions.engine import PermissionEngine
from agent_mediator.permissions.models import PermissionPolicy
from agent_mediator.schemas.domain import PermissionType


@pytest.fixture
def files(tmp_path: Path) -> CapabilityRegistry:
    # file capabilities only depend on the permission engine
    return CapabilityRegistry(PermissionEngine(PermissionPolicy(project_root=tmp_path)), None, None)


class TestFileRead:
    @pytest.mark.asyncio
    async def test_read_relative_to_project_root(self, files: CapabilityRegistry, tmp_path: Path) -> None:
        (tmp_path / "README.md").write_text("line one\nline two\nline three\n")

        result = await files.invoke("file_read", {"path": "README.md", "correlation_id": "corr-read"})

        assert result.success is True
        assert result.data.content == "line one\nline two\nline three\n"
        assert result.data.total_lines == 3
        assert result.data.path == str((tmp_path / "README.md").resolve())
        [grant] = files.permissions.get_grants()
        assert grant.type == PermissionType.file_read
        assert grant.correlation_id == "corr-read"

    @pytest.mark.asyncio
    async def test_line_range(self, files: CapabilityRegistry, tmp_path: Path) -> None:
        (tmp_path / "a.txt").write_text("1\n2\n3\n4\n")

        result = await files.invoke("file_read", {"path": "a.txt", "line_range": [2, 10]})

        assert result.data.content == "2\n3\n4\n"
        assert result.data.line_range == [2, 4]

    @pytest.mark.asyncio
    async def test_outside_project_root_is_denied(self, files: CapabilityRegistry, tmp_path: Path) -> None:
        outside = tmp_path.parent / "outside.txt"

        result = await files.invoke("file_read", {"path": str(outside)})

        assert result.success is False
        assert result.error.kind == ErrorKind.permission_denied

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "setup,payload",
        [
            (lambda root: None, {"path": "missing.txt"}),
            (lambda root: (root / "dir").mkdir(), {"path": "dir"}),
            (lambda root: (root / "bin.dat").write_bytes(b"\x00\x01\x02"), {"path": "bin.dat"}),
            (lambda root: (root / "big.txt").write_text("x" * 64), {"path": "big.txt", "max_size": 16}),
            (lambda root: (root / "latin.txt").write_bytes("caf\xe9".encode("latin-1")), {"path": "latin.txt"}),
            (lambda root: None, {"path": "a.txt", "line_range": [3, 1]}),
        ],
    )
    async def test_rejected_reads(self, files: CapabilityRegistry, tmp_path: Path, setup, payload) -> None:
        setup(tmp_path)

        result = await files.invoke("file_read", payload)

        assert result.success is False
        assert result.error.kind == ErrorKind.validation_error

    @pytest.mark.asyncio
    async def test_explicit_encoding(self, files: CapabilityRegistry, tmp_path: Path) -> None:
        (tmp_path / "latin.txt").write_bytes("caf\xe9".encode("latin-1"))

        result = await files.invoke("file_read", {"path": "latin.txt", "encoding": "latin-1"})

        assert result.data.content == "caf\xe9"


class TestFileWrite:
    @pytest.mark.asyncio
    async def test_write_creates_parent_directories(self, files: CapabilityRegistry, tmp_path: Path) -> None:
        result = await files.invoke("file_write", {"path": "src/pkg/mod.py", "content": "x = 1\n"})

        assert result.success is True
        assert result.data.created is True
        assert result.data.bytes_written == 6
        assert (tmp_path / "src" / "pkg" / "mod.py").read_text() == "x = 1\n"

    @pytest.mark.asyncio
    async def test_overwrite_flag(self, files: CapabilityRegistry, tmp_path: Path) -> None:
        (tmp_path / "notes.txt").write_text("old")

        refused = await files.invoke("file_write", {"path": "notes.txt", "content": "new", "overwrite": False})
        replaced = await files.invoke("file_write", {"path": "notes.txt", "content": "new"})

        assert refused.error.kind == ErrorKind.validation_error
        assert replaced.data.created is False
        assert (tmp_path / "notes.txt").read_text() == "new"

    @pytest.mark.asyncio
    async def test_missing_parent_without_create_dirs(self, files: CapabilityRegistry, tmp_path: Path) -> None:
        result = await files.invoke("file_write", {"path": "nope/file.txt", "content": "", "create_dirs": False})

        assert result.error.kind == ErrorKind.validation_error
        assert not (tmp_path / "nope").exists()

    @pytest.mark.asyncio
    async def test_system_directory_write_is_denied(self) -> None:
        files = CapabilityRegistry(PermissionEngine(), None, None)

        result = await files.invoke("file_write", {"path": "/etc/agent-mediator-test", "content": "x"})

        assert result.error.kind == ErrorKind.permission_denied
        assert not Path("/etc/agent-mediator-test").exists()
