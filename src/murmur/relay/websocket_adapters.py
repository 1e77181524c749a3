"""
WebSocket implementation of the relay's message transport.

Wraps a `websockets` connection (server side for browsers, client side for the upstream API)
so that sessions only ever see `TransportClosed` when a peer goes away.
"""

from websockets.asyncio.client import ClientConnection
from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from murmur.errors import TransportClosed
from murmur.logs import get_logger


def _closed_error(e: ConnectionClosed) -> TransportClosed:
  frame = e.rcvd or e.sent
  reason = frame.reason if frame else ""
  return TransportClosed(reason=reason, clean=isinstance(e, ConnectionClosedOK))


class WebSocketTransport:
  """
  `MessageTransport` over a websockets connection.

  Message Flow:
    session → send() → websocket peer
    websocket peer → recv() → session

  Error Handling:
    - `ConnectionClosedOK` becomes `TransportClosed(clean=True)`
    - `ConnectionClosedError` becomes `TransportClosed(clean=False)`
    - `close()` never raises
  """

  def __init__(self, websocket: ServerConnection | ClientConnection, name: str) -> None:
    """
    :param websocket: Open connection to wrap.
    :param name: Label for logs, e.g. "client" or "upstream".
    """
    self.websocket = websocket
    self.name = name
    self.logger = get_logger(f"ws/{name}")

  async def send(self, message: str) -> None:
    try:
      await self.websocket.send(message)
    except ConnectionClosed as e:
      raise _closed_error(e) from e

  async def recv(self) -> str | bytes:
    try:
      return await self.websocket.recv()
    except ConnectionClosed as e:
      raise _closed_error(e) from e

  async def close(self, code: int = 1000, reason: str = "") -> None:
    try:
      await self.websocket.close(code, reason)
    except Exception as e:
      self.logger.debug("Error while closing connection", error=str(e))
