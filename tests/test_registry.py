import asyncio

import pytest

from connection.loopback import LoopbackProvider
from connection.registry import ConnectionRegistry, ConnectionStatus
from errors import ConnectivityError, ProtocolViolation, TransportClosed
from protocol.models import ControlMessage, MessageType, TextPayload


def _text(text: str) -> ControlMessage:
    return ControlMessage.make(MessageType.TEXT, TextPayload(text=text))


async def test_start_emits_ready(hub):
    registry = ConnectionRegistry(LoopbackProvider(hub))
    events = []
    registry.on_status(events.append)
    peer_id = await registry.start("me")
    assert peer_id == "me"
    assert events[0].status == ConnectionStatus.READY
    assert events[0].peer_id == "me"


async def test_both_sides_see_the_connection(registry_pair):
    host, guest, conn = await registry_pair()
    assert conn.peer_id == "host"
    assert [c.connection_id for c in host.connections()] == [conn.connection_id]
    assert host.connections()[0].peer_id == guest.peer_id


async def test_units_arrive_in_order(registry_pair, wait_until):
    host, guest, conn = await registry_pair()
    received = []
    host.on_data(lambda ev: received.append(ev.data))

    guest.send_to(conn.connection_id, _text("first"))
    guest.send_to(conn.connection_id, b"\x00\x01")
    guest.send_to(conn.connection_id, b"\x02")
    guest.send_to(conn.connection_id, _text("last"))

    await wait_until(lambda: len(received) == 4)
    assert received[0].payload == {"text": "first"}
    assert received[1:3] == [b"\x00\x01", b"\x02"]
    assert received[3].payload == {"text": "last"}


async def test_connect_to_unknown_peer_fails(hub):
    registry = ConnectionRegistry(LoopbackProvider(hub))
    errors = []
    registry.on_error(errors.append)
    await registry.start()
    with pytest.raises(ConnectivityError):
        await registry.connect("nobody")
    assert isinstance(errors[0], ConnectivityError)


async def test_bad_unit_is_reported_not_delivered(registry_pair, wait_until):
    host, guest, conn = await registry_pair()
    data, errors = [], []
    host.on_data(data.append)
    host.on_error(errors.append)

    link = guest._links[conn.connection_id]
    link.send(b"\x09\x00\x00\x00\x00")
    guest.send_to(conn.connection_id, _text("still fine"))

    await wait_until(lambda: len(data) == 1)
    assert isinstance(errors[0], ProtocolViolation)
    assert data[0].data.payload == {"text": "still fine"}


async def test_disconnected_fires_once_per_connection(registry_pair, wait_until):
    host, guest, conn = await registry_pair()
    statuses = []
    host.on_status(statuses.append)

    link = guest._links[conn.connection_id]
    link.close()
    link.close()

    await wait_until(lambda: not host.connections())
    await asyncio.sleep(0.02)
    gone = [s for s in statuses if s.status == ConnectionStatus.DISCONNECTED]
    assert len(gone) == 1
    assert gone[0].connection_id == conn.connection_id


async def test_send_to_closed_connection_is_dropped(registry_pair):
    host, guest, conn = await registry_pair()
    guest._links[conn.connection_id].sever()
    assert guest.send_to(conn.connection_id, _text("lost")) is False
    assert guest.send_to("no-such-connection", b"x") is False


async def test_failing_subscriber_does_not_stop_others(registry_pair, wait_until):
    host, guest, conn = await registry_pair()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    host.on_data(broken)
    host.on_data(seen.append)
    guest.send_to(conn.connection_id, _text("hi"))
    await wait_until(lambda: seen)


async def test_unsubscribe(registry_pair, wait_until):
    host, guest, conn = await registry_pair()
    first, second = [], []
    unsubscribe = host.on_data(first.append)
    host.on_data(second.append)
    unsubscribe()

    guest.send_to(conn.connection_id, _text("hi"))
    await wait_until(lambda: second)
    assert first == []


async def test_broadcast_skips_dead_connections(hub, wait_until):
    host = ConnectionRegistry(LoopbackProvider(hub))
    await host.start("host")
    guests = []
    for _ in range(2):
        guest = ConnectionRegistry(LoopbackProvider(hub))
        await guest.start()
        conn = await guest.connect("host")
        guests.append((guest, conn))

    (dead, dead_conn), (alive, alive_conn) = guests
    received = []
    alive.on_data(received.append)
    dead._links[dead_conn.connection_id].sever()
    await wait_until(lambda: len(host.connections()) == 1)

    assert host.broadcast(_text("everyone")) == 1
    await wait_until(lambda: received)


async def test_inbound_refused_when_not_accepting(hub, wait_until):
    host = ConnectionRegistry(LoopbackProvider(hub))
    await host.start("closed-host")
    host.accepting = False

    guest = ConnectionRegistry(LoopbackProvider(hub))
    statuses = []
    guest.on_status(statuses.append)
    await guest.start()
    await guest.connect("closed-host")

    await wait_until(
        lambda: any(s.status == ConnectionStatus.DISCONNECTED for s in statuses)
    )
    assert host.connections() == []
    assert guest.connections() == []


async def test_destroy_closes_everything_once(registry_pair):
    host, guest, conn = await registry_pair()
    statuses = []
    host.on_status(statuses.append)

    await host.destroy()
    await host.destroy()

    assert host.destroyed
    assert host.connections() == []
    assert [s.status for s in statuses] == [ConnectionStatus.DISCONNECTED]


async def test_wait_for_capacity_returns_below_high_watermark(registry_pair):
    host, guest, conn = await registry_pair(guest_kwargs={"high_watermark": 1000, "low_watermark": 100})
    await asyncio.wait_for(guest.wait_for_capacity(conn.connection_id), timeout=0.5)


async def test_wait_for_capacity_waits_for_low_watermark(registry_pair):
    host, guest, conn = await registry_pair(guest_kwargs={"high_watermark": 1000, "low_watermark": 100})
    link = guest._links[conn.connection_id]
    link.pause()
    guest.send_to(conn.connection_id, b"x" * 600)
    guest.send_to(conn.connection_id, b"x" * 600)
    assert link.buffered_amount >= 1000

    waiter = asyncio.create_task(guest.wait_for_capacity(conn.connection_id))
    await asyncio.sleep(0.05)
    assert not waiter.done()

    link.resume()
    await asyncio.wait_for(waiter, timeout=1.0)
    assert link.buffered_amount < 100


async def test_wait_for_capacity_rejected_when_connection_closes(registry_pair):
    host, guest, conn = await registry_pair(guest_kwargs={"high_watermark": 1000, "low_watermark": 100})
    link = guest._links[conn.connection_id]
    link.pause()
    guest.send_to(conn.connection_id, b"x" * 2000)

    waiter = asyncio.create_task(guest.wait_for_capacity(conn.connection_id))
    await asyncio.sleep(0.02)
    link.sever()

    with pytest.raises(TransportClosed):
        await asyncio.wait_for(waiter, timeout=1.0)


async def test_wait_for_capacity_on_unknown_connection(registry_pair):
    host, guest, conn = await registry_pair()
    with pytest.raises(TransportClosed):
        await guest.wait_for_capacity("no-such-connection")


def test_watermarks_must_be_ordered(hub):
    with pytest.raises(ValueError):
        ConnectionRegistry(LoopbackProvider(hub), high_watermark=10, low_watermark=20)
