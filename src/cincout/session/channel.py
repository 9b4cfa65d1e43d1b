"""Session channel — the bidirectional transport a session talks over."""

from __future__ import annotations

from typing import Any, Protocol

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from cincout.errors import ChannelClosedError


class Channel(Protocol):
    """Message transport for one session. JSON objects out, text frames in."""

    async def send_json(self, message: dict[str, Any]) -> None: ...

    async def receive_text(self) -> str: ...

    async def close(self, code: int = 1000) -> None: ...


class WebSocketChannel:
    """Channel over an accepted FastAPI WebSocket.

    Transport failures surface as ChannelClosedError so the session supervisor
    handles a dropped client the same way whichever side noticed first.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send_json(self, message: dict[str, Any]) -> None:
        if self._ws.application_state != WebSocketState.CONNECTED:
            raise ChannelClosedError("WebSocket is closed")
        try:
            await self._ws.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise ChannelClosedError("WebSocket send failed") from exc

    async def receive_text(self) -> str:
        try:
            return await self._ws.receive_text()
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise ChannelClosedError("WebSocket disconnected") from exc

    async def close(self, code: int = 1000) -> None:
        if self._ws.application_state == WebSocketState.DISCONNECTED:
            return
        try:
            await self._ws.close(code=code)
        except RuntimeError:
            # Already closed by the peer
            pass
