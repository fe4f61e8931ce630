import asyncio

from careerlink.client.notification_cache import NotificationCache
from careerlink.client.notification_source import StoreNotificationSource
from careerlink.client.session import NotificationSession
from careerlink.services.fanout_service import FanoutChannel, SubscriptionManager


async def _wait_for(predicate, timeout: float = 2.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def _wire(world):
    channel = FanoutChannel()
    manager = SubscriptionManager()
    manager.register("notifications", channel)
    world.store.add_insert_listener(channel.publish)
    cache = NotificationCache("alice", StoreNotificationSource(world.store))
    return channel, manager, NotificationSession(cache, manager)


def _move(world, status: str):
    return asyncio.to_thread(
        world.tracker.transition, application_id="app-1", requested_status=status, actor_id=world.admin
    )


def test_live_push_reaches_cache(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")

    async def _run():
        _channel, manager, session = _wire(world)
        await session.start()
        refs = manager.refcount("notifications", "alice")
        await _move(world, "shortlisted")
        arrived = await _wait_for(lambda: session.cache.unread_count == 1)
        await session.close()
        return refs, arrived, session, manager.refcount("notifications", "alice")

    refs, arrived, session, refs_after = asyncio.run(_run())
    assert refs == 1
    assert arrived is True
    assert session.cache.items[0].type == "application_shortlisted"
    assert refs_after == 0


def test_dropped_stream_reconnects_and_catches_up(world) -> None:
    world.store.create_application(job_id=world.job.id, applicant_id="alice", application_id="app-1")

    async def _run():
        channel, _manager, session = _wire(world)
        await session.start()
        await _move(world, "shortlisted")
        await _wait_for(lambda: session.cache.unread_count == 1)

        channel.close_all()
        await _move(world, "interview")
        caught_up = await _wait_for(lambda: session.reconnects == 1 and session.cache.unread_count == 2)

        await _move(world, "offered")
        live_again = await _wait_for(lambda: session.cache.unread_count == 3)
        await session.close()
        return session, caught_up, live_again

    session, caught_up, live_again = asyncio.run(_run())
    assert caught_up is True
    assert live_again is True
    assert [n.type for n in session.cache.items] == [
        "application_offered",
        "application_interview",
        "application_shortlisted",
    ]
