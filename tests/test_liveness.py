import asyncio

from protocol.models import ControlMessage, MessageType, PingPayload
from session.liveness import LivenessProbe, now_ms


async def test_ping_is_echoed_untouched(registry_pair, wait_until):
    host, guest, conn = await registry_pair()
    received = []
    guest.on_data(lambda event: received.append(event.data))
    await wait_until(lambda: host.connections())
    host_cid = host.connections()[0].connection_id

    probe = LivenessProbe(host)
    ping = ControlMessage.make(MessageType.PING, PingPayload(ts=12345))
    assert probe.handle(host_cid, ping) is True

    await wait_until(lambda: received)
    assert received[0].type == MessageType.PONG
    assert received[0].payload == ping.payload
    await host.destroy()
    await guest.destroy()


async def test_pong_records_latency(registry_pair):
    host, guest, conn = await registry_pair()
    seen = []
    probe = LivenessProbe(guest, on_latency=lambda cid, rtt: seen.append((cid, rtt)))

    pong = ControlMessage.make(MessageType.PONG, PingPayload(ts=now_ms() - 40))
    rtt = probe.handle_pong(conn.connection_id, pong)
    assert rtt is not None and rtt >= 40
    assert probe.latency_ms[conn.connection_id] == rtt
    assert seen == [(conn.connection_id, rtt)]

    # A clock ahead of ours never yields a negative latency
    future = ControlMessage.make(MessageType.PONG, PingPayload(ts=now_ms() + 60_000))
    assert probe.handle_pong(conn.connection_id, future) == 0
    await host.destroy()
    await guest.destroy()


async def test_other_messages_are_not_claimed(registry_pair):
    host, guest, conn = await registry_pair()
    probe = LivenessProbe(guest)
    assert probe.handle(conn.connection_id, ControlMessage(type=MessageType.NUDGE)) is False
    await host.destroy()
    await guest.destroy()


async def test_unwatch_cancels_the_ping_loop(registry_pair):
    host, guest, conn = await registry_pair()
    probe = LivenessProbe(guest, interval=60.0)
    probe.watch(conn.connection_id)
    task = probe._tasks[conn.connection_id]
    await asyncio.sleep(0)

    probe.unwatch(conn.connection_id)
    await asyncio.gather(task, return_exceptions=True)
    assert task.cancelled()
    assert probe._tasks == {}
    await host.destroy()
    await guest.destroy()
