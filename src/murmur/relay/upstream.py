"""
Connection to the upstream realtime transcription API.
"""

from urllib.parse import urlencode

from websockets.asyncio.client import connect
from websockets.exceptions import InvalidHandshake, InvalidStatus, InvalidURI

from murmur.config import UpstreamConfig
from murmur.constants import UPSTREAM_BETA_HEADER
from murmur.errors import UpstreamConnectError
from murmur.logs import get_logger
from murmur.relay.websocket_adapters import WebSocketTransport


class UpstreamConnector:
  """Opens authenticated websocket connections to the upstream API, one per session."""

  def __init__(self, config: UpstreamConfig) -> None:
    self.config = config
    self.logger = get_logger("relay/upstream")

  def url_for(self, model: str) -> str:
    return f"{self.config.url}?{urlencode({'model': model})}"

  def headers(self) -> dict[str, str]:
    return {
      "Authorization": f"Bearer {self.config.api_key}",
      "OpenAI-Beta": UPSTREAM_BETA_HEADER,
    }

  async def connect(self, model: str) -> WebSocketTransport:
    """
    Open a connection for `model`.

    :param model: Realtime model, already validated against the allow-list.
    :returns: A transport for the open connection.
    :raises UpstreamConnectError: The connection could not be established.
    """
    url = self.url_for(model)
    self.logger.info("Connecting to upstream", url=url)

    try:
      websocket = await connect(
        url,
        additional_headers=self.headers(),
        open_timeout=self.config.open_timeout,
        max_size=None,
      )
    except InvalidStatus as e:
      status = e.response.status_code
      self.logger.error("Upstream rejected connection", status=status)
      if status in (401, 403):
        raise UpstreamConnectError("Upstream rejected the API credentials") from e
      raise UpstreamConnectError(f"Upstream rejected connection (HTTP {status})") from e
    except (InvalidHandshake, InvalidURI) as e:
      self.logger.error("Upstream handshake failed", error=str(e))
      raise UpstreamConnectError(f"Upstream handshake failed: {e}") from e
    except (OSError, TimeoutError) as e:
      self.logger.error("Upstream unreachable", error=str(e))
      raise UpstreamConnectError("Transcription service is unreachable") from e

    self.logger.info("Connected to upstream", model=model)
    return WebSocketTransport(websocket, name="upstream")
