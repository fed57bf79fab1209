from __future__ import annotations

from typing import Any, Dict, List, Tuple

from fastapi import WebSocket

from typus.utils.logging import get_logger


logger = get_logger('notifications')

CHANNELS = ('masks', 'generation')

SUBSCRIBE_MESSAGES = {
    'subscribe_masks': ('masks', True),
    'unsubscribe_masks': ('masks', False),
    'subscribe_generation': ('generation', True),
    'unsubscribe_generation': ('generation', False),
}


class NotificationHub:
    """WebSocket subscriptions keyed by channel and input image id."""

    def __init__(self) -> None:
        self.connections: Dict[Tuple[str, int], List[WebSocket]] = {}

    def subscribe(self, channel: str, input_image_id: int, websocket: WebSocket) -> None:
        peers = self.connections.setdefault((channel, input_image_id), [])
        if websocket not in peers:
            peers.append(websocket)

    def unsubscribe(self, channel: str, input_image_id: int, websocket: WebSocket) -> None:
        key = (channel, input_image_id)
        peers = self.connections.get(key)
        if not peers:
            return
        if websocket in peers:
            peers.remove(websocket)
        if not peers:
            del self.connections[key]

    def disconnect(self, websocket: WebSocket) -> None:
        for channel, input_image_id in list(self.connections):
            self.unsubscribe(channel, input_image_id, websocket)

    def subscriber_count(self, channel: str, input_image_id: int) -> int:
        return len(self.connections.get((channel, input_image_id), []))

    async def handle_message(self, websocket: WebSocket, message: Dict[str, Any]) -> None:
        msg_type = str(message.get('type') or '')
        if msg_type == 'ping':
            await websocket.send_json({'type': 'pong'})
            return
        action = SUBSCRIBE_MESSAGES.get(msg_type)
        if not action:
            await websocket.send_json({'type': 'error', 'error': 'unknown_message'})
            return
        try:
            input_image_id = int(message.get('inputImageId'))
        except (TypeError, ValueError):
            await websocket.send_json({'type': 'error', 'error': 'input_image_id_required'})
            return
        channel, subscribe = action
        if subscribe:
            self.subscribe(channel, input_image_id, websocket)
            ack = 'subscribed' if channel == 'masks' else 'subscribed_generation'
            await websocket.send_json({'type': ack, 'inputImageId': input_image_id})
        else:
            self.unsubscribe(channel, input_image_id, websocket)

    async def notify(self, channel: str, input_image_id: int | None, message: Dict[str, Any]) -> int:
        if input_image_id is None:
            return 0
        delivered = 0
        for websocket in list(self.connections.get((channel, input_image_id), [])):
            try:
                await websocket.send_json({**message, 'inputImageId': input_image_id})
                delivered += 1
            except Exception as exc:
                logger.info('websocket_send_failed', channel=channel, input_image_id=input_image_id, error=str(exc))
                self.unsubscribe(channel, input_image_id, websocket)
        return delivered
