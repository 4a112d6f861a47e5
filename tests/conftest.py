import asyncio
import uuid

import pytest

from connection.loopback import LoopbackHub, LoopbackProvider
from connection.registry import ConnectionRegistry
from protocol.models import FileMeta
from session.models import HostedFile


@pytest.fixture
def hub():
    return LoopbackHub()


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def hosted_file(tmp_path):
    """Write `data` to disk and wrap it as a HostedFile."""

    def _make(name: str, data: bytes, mime_type: str = "application/octet-stream") -> HostedFile:
        path = tmp_path / "offered" / name
        path.parent.mkdir(exist_ok=True)
        path.write_bytes(data)
        meta = FileMeta(id=uuid.uuid4().hex[:8], name=name, size=len(data), mime_type=mime_type)
        return HostedFile(meta=meta, path=path)

    return _make


@pytest.fixture
def registry_pair(hub):
    """Connect a fresh guest registry to a host registry named 'host'."""

    async def _make(host_kwargs: dict | None = None, guest_kwargs: dict | None = None):
        host = ConnectionRegistry(LoopbackProvider(hub), **(host_kwargs or {}))
        guest = ConnectionRegistry(LoopbackProvider(hub), **(guest_kwargs or {}))
        await host.start("host")
        await guest.start()
        conn = await guest.connect("host")
        return host, guest, conn

    return _make
