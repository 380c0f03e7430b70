"""
Realtime routes: typing signals and the per-conversation event stream.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response, WebSocket, WebSocketDisconnect, status

from ..dependencies import get_conversation_store
from ..errors import ChannelDisconnected, MessagingError
from ..schemas.conversation import TypingSignal
from ..services.conversation_store import ConversationStore
from ..services.realtime import ChannelEvent, Subscription, conversation_topic, get_channel_provider
from ..utils.security import decode_token, get_current_user_id


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/conversations", tags=["Realtime"])


@router.post("/{conversation_id}/typing", status_code=status.HTTP_204_NO_CONTENT)
async def send_typing(
    conversation_id: str,
    signal: TypingSignal,
    user_id: str = Depends(get_current_user_id),
    store: ConversationStore = Depends(get_conversation_store),
    channel=Depends(get_channel_provider),
):
    """Relay a typing start/stop signal to the other participant."""
    await store.get_conversation(conversation_id, user_id)
    try:
        await channel.publish(
            conversation_topic(conversation_id),
            ChannelEvent(type="typing", conversation_id=conversation_id, user_id=user_id, is_typing=signal.is_typing),
        )
    except Exception as e:
        # typing is best effort; receivers expire stale signals on their own
        logger.warning("Typing signal for %s not published: %s", conversation_id, e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


async def stream_events(websocket, subscription: Subscription) -> None:
    """Forward subscription events to the socket until either side goes away.

    The socket is read concurrently so a client that leaves is noticed even
    when the conversation is quiet; both loops stop and the subscription is
    released.
    """

    async def forward() -> None:
        async for event in subscription:
            await websocket.send_text(event.model_dump_json())

    async def drain() -> None:
        # clients send nothing on this stream; reading surfaces the disconnect
        while True:
            await websocket.receive_text()

    sender = asyncio.create_task(forward())
    receiver = asyncio.create_task(drain())
    try:
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if receiver in done:
            error = receiver.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                raise error
            logger.debug("Event stream for %s closed by the client", subscription.topic)
            return

        error = sender.exception()
        if isinstance(error, ChannelDisconnected):
            await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        elif isinstance(error, WebSocketDisconnect):
            logger.debug("Event stream for %s closed by the client", subscription.topic)
        elif error is not None:
            raise error
        else:
            await websocket.close()
    finally:
        for task in (sender, receiver):
            task.cancel()
        await subscription.close()


@router.websocket("/{conversation_id}/events")
async def conversation_events(
    websocket: WebSocket,
    conversation_id: str,
    token: str = Query(...),
    store: ConversationStore = Depends(get_conversation_store),
    channel=Depends(get_channel_provider),
):
    """Push channel events for one conversation as JSON text frames.

    The stream never replays history; after a reconnect clients fetch
    ``/messages?after=<cursor>`` to recover what they missed.
    """
    try:
        user_id = decode_token(token)
        await store.get_conversation(conversation_id, user_id)
    except (HTTPException, MessagingError) as e:
        logger.info("Rejected event stream for %s: %s", conversation_id, e)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    subscription = await channel.subscribe(conversation_topic(conversation_id))
    logger.debug("Event stream for %s opened by %s", conversation_id, user_id)
    await stream_events(websocket, subscription)
