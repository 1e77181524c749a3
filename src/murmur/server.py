import json
from http import HTTPStatus
from urllib.parse import parse_qs, urlsplit

from websockets.asyncio.server import ServerConnection
from websockets.http11 import Request, Response

from murmur.collab import TranscriptHub
from murmur.config import RelayConfig
from murmur.errors import InvalidModelError, TransportClosed, UpstreamConnectError
from murmur.logs import get_logger
from murmur.relay.session import SessionController, validate_model
from murmur.relay.upstream import UpstreamConnector
from murmur.relay.websocket_adapters import WebSocketTransport
from murmur.websocket import SessionRegistry, WebSocketServer
from murmur.wire import ErrorMessage, serialize_message


def split_path(raw_path: str) -> tuple[str, dict[str, str]]:
  """Split a request target into its path and first value of each query parameter."""
  parts = urlsplit(raw_path)
  params = {key: values[0] for key, values in parse_qs(parts.query).items()}
  return parts.path, params


class RelayServer:
  """
  Accepts browser connections and bridges each one to its own upstream session.

  Routes:
    relay_path        WebSocket, one transcription session per connection
    transcripts_path  WebSocket, collaborative transcript subscriber
    info_path         HTTP GET, describes the relay endpoint for a model
    health_path       HTTP GET, liveness
  Anything else is answered with 404.
  """

  def __init__(
    self,
    config: RelayConfig,
    hub: TranscriptHub | None = None,
    connector: UpstreamConnector | None = None,
  ) -> None:
    self.config = config
    self.hub = hub if config.collab.enabled else None
    self.connector = connector or UpstreamConnector(config.upstream)
    self.sessions = SessionRegistry()
    self.logger = get_logger("server")

  def resolve_model(self, model: str | None) -> str:
    upstream = self.config.upstream
    return validate_model(model, upstream.models, upstream.default_model)

  def describe_model(self, model: str | None) -> tuple[HTTPStatus, dict[str, str]]:
    """Body and status for the info route."""
    try:
      resolved = self.resolve_model(model)
    except InvalidModelError as e:
      return HTTPStatus.BAD_REQUEST, {"error": str(e)}

    return HTTPStatus.OK, {
      "message": "Connect to the WebSocket endpoint to start realtime transcription",
      "model": resolved,
      "websocket_url": f"{self.config.server.relay_path}?model={resolved}",
    }

  def process_request(self, connection: ServerConnection, request: Request) -> Response | None:
    """Answer plain HTTP routes before the WebSocket handshake; None lets the handshake proceed."""
    server = self.config.server
    path, params = split_path(request.path)

    if path in (server.relay_path, server.transcripts_path):
      if path == server.transcripts_path and self.hub is None:
        return connection.respond(HTTPStatus.NOT_FOUND, "Collaboration is disabled\n")
      return None

    if path == server.health_path:
      return connection.respond(HTTPStatus.OK, "OK\n")

    if path == server.info_path:
      status, body = self.describe_model(params.get("model"))
      response = connection.respond(status, json.dumps(body))
      del response.headers["Content-Type"]
      response.headers["Content-Type"] = "application/json"
      return response

    self.logger.debug("Unknown route", path=path)
    return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

  async def handle_connection(self, websocket: ServerConnection) -> None:
    assert websocket.request is not None
    path, params = split_path(websocket.request.path)

    if path == self.config.server.transcripts_path and self.hub is not None:
      await self._handle_subscriber(websocket, params.get("document"))
    else:
      await self._handle_relay(websocket, params.get("model"))

  async def _handle_relay(self, websocket: ServerConnection, requested_model: str | None) -> None:
    try:
      model = self.resolve_model(requested_model)
    except InvalidModelError as e:
      self.logger.warning("Rejected connection", model=requested_model)
      await self._send_error_and_close(websocket, str(e))
      return

    try:
      upstream = await self.connector.connect(model)
    except UpstreamConnectError as e:
      await self._send_error_and_close(websocket, str(e))
      return

    session = SessionController(
      WebSocketTransport(websocket, name="client"),
      upstream,
      model=model,
      config=self.config.session,
      publisher=self.hub,
      close_grace_period=self.config.upstream.close_grace_period,
    )
    self.sessions.add(websocket, session)
    try:
      await session.run()
    finally:
      self.sessions.remove(websocket)

  async def _handle_subscriber(self, websocket: ServerConnection, document: str | None) -> None:
    assert self.hub is not None
    if not document:
      await self._send_error_and_close(websocket, "The 'document' query parameter is required")
      return

    await self.hub.serve_subscriber(document, WebSocketTransport(websocket, name="subscriber"))

  async def _send_error_and_close(self, websocket: ServerConnection, error_message: str) -> None:
    """Send error message and close WebSocket connection."""
    transport = WebSocketTransport(websocket, name="client")
    try:
      await transport.send(serialize_message(ErrorMessage(error=error_message)))
    except TransportClosed:
      self.logger.debug("Client closed before the error could be sent")
    await transport.close()
    self.logger.warning("Sent error and closed connection", error=error_message)

  async def run(self) -> None:
    server = self.config.server
    self.logger.info(
      "Starting relay",
      host=server.host,
      port=server.port,
      relay_path=server.relay_path,
      collab=self.hub is not None,
    )
    websocket_server = WebSocketServer(
      self.handle_connection,
      server.host,
      server.port,
      process_request=self.process_request,
    )
    await websocket_server.start()
