from __future__ import annotations

from typus.services.notifications import NotificationHub


class FakeSocket:
    def __init__(self, broken: bool = False) -> None:
        self.sent = []
        self.broken = broken

    async def send_json(self, data):
        if self.broken:
            raise RuntimeError('socket closed')
        self.sent.append(data)


async def test_subscribe_and_unsubscribe():
    hub = NotificationHub()
    ws = FakeSocket()

    await hub.handle_message(ws, {'type': 'subscribe_masks', 'inputImageId': '7'})
    await hub.handle_message(ws, {'type': 'subscribe_generation', 'inputImageId': 7})

    assert ws.sent == [
        {'type': 'subscribed', 'inputImageId': 7},
        {'type': 'subscribed_generation', 'inputImageId': 7},
    ]
    assert hub.subscriber_count('masks', 7) == 1

    await hub.handle_message(ws, {'type': 'unsubscribe_masks', 'inputImageId': 7})
    assert hub.subscriber_count('masks', 7) == 0
    assert hub.subscriber_count('generation', 7) == 1

    hub.disconnect(ws)
    assert hub.connections == {}


async def test_ping_and_bad_messages():
    hub = NotificationHub()
    ws = FakeSocket()

    await hub.handle_message(ws, {'type': 'ping'})
    await hub.handle_message(ws, {'type': 'dance'})
    await hub.handle_message(ws, {'type': 'subscribe_masks'})

    assert ws.sent == [
        {'type': 'pong'},
        {'type': 'error', 'error': 'unknown_message'},
        {'type': 'error', 'error': 'input_image_id_required'},
    ]


async def test_notify_reaches_only_subscribers():
    hub = NotificationHub()
    watcher, bystander = FakeSocket(), FakeSocket()
    hub.subscribe('generation', 3, watcher)
    hub.subscribe('generation', 4, bystander)

    delivered = await hub.notify('generation', 3, {'type': 'generation_completed', 'imageId': 10})

    assert delivered == 1
    assert watcher.sent == [{'type': 'generation_completed', 'imageId': 10, 'inputImageId': 3}]
    assert bystander.sent == []
    assert await hub.notify('generation', None, {'type': 'x'}) == 0


async def test_broken_socket_is_dropped():
    hub = NotificationHub()
    broken = FakeSocket(broken=True)
    hub.subscribe('masks', 1, broken)
    hub.subscribe('masks', 1, broken)

    assert hub.subscriber_count('masks', 1) == 1
    assert await hub.notify('masks', 1, {'type': 'masks_completed'}) == 0
    assert hub.subscriber_count('masks', 1) == 0
