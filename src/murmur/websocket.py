import asyncio
import time
from collections.abc import Awaitable, Callable

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed, InvalidMessage
from websockets.http11 import Request, Response

from murmur.format import Seconds
from murmur.logs import get_logger
from murmur.relay.session import SessionController

type ConnectionHandler = Callable[[ServerConnection], Awaitable[None]]
type RequestHook = Callable[[ServerConnection, Request], Response | None]


class SessionRegistry:
  """Live relay sessions, one per browser connection."""

  def __init__(self) -> None:
    self._sessions: dict[ServerConnection, tuple[SessionController, float]] = {}
    self.logger = get_logger("ws/sessions")

  def add(self, websocket: ServerConnection, session: SessionController) -> None:
    """
    :raises RuntimeError: The connection already has a session.
    """
    if websocket in self._sessions:
      raise RuntimeError("Connection already has an active session")
    self._sessions[websocket] = (session, time.monotonic())
    self.logger.debug("Session added", session=session.session_id, active=len(self))

  def remove(self, websocket: ServerConnection) -> None:
    entry = self._sessions.pop(websocket, None)
    if entry is None:
      self.logger.debug("No session registered for connection")
      return

    session, started = entry
    self.logger.debug(
      "Session removed",
      session=session.session_id,
      lifetime=Seconds(time.monotonic() - started),
      active=len(self),
    )

  def __contains__(self, websocket: object) -> bool:
    return websocket in self._sessions

  def __len__(self) -> int:
    return len(self._sessions)


class WebSocketServer:
  """Serves a connection handler, logging connection failures instead of propagating them."""

  def __init__(
    self,
    handler: ConnectionHandler,
    host: str,
    port: int,
    process_request: RequestHook | None = None,
  ):
    self.handler = handler
    self.host = host
    self.port = port
    self.process_request = process_request
    self.logger = get_logger("ws/server")

  async def start(self):
    self.logger.info(f"Listening on {self.host}:{self.port}")
    async with serve(
      self.error_handling_wrapper,
      self.host,
      self.port,
      process_request=self.process_request,
      max_size=None,
    ):
      await asyncio.Future()  # run forever

  async def error_handling_wrapper(self, websocket: ServerConnection):
    path = websocket.request.path if websocket.request else None
    self.logger.info("Connection opened", address=websocket.remote_address, path=path)
    try:
      await self.handler(websocket)
    except (EOFError, InvalidMessage):
      self.logger.debug("Connection dropped during handshake", websocket_id=websocket.id)
    except ConnectionClosed as e:
      self.logger.debug("Connection closed by peer", error=e, websocket_id=websocket.id)
    except (KeyboardInterrupt, SystemExit):
      raise
    except Exception:
      self.logger.exception("Unhandled error in connection handler", path=path)
    else:
      self.logger.info("Connection finished", path=path)
