"""
Collaborative transcript fan-out.

Sessions publish completed transcriptions under their document id; websocket subscribers of a
document receive every published transcription as a `transcript_appended` message. The hub
keeps no history and does no merging.

Publishing never waits on a subscriber's socket. Each subscriber has a bounded outbox drained by
its own writer task, and a subscriber whose outbox fills up is disconnected.
"""

import asyncio
from dataclasses import dataclass, field
from typing import ClassVar

from murmur.errors import TransportClosed
from murmur.logs import get_logger
from murmur.relay.interfaces import MessageTransport
from murmur.wire import TranscriptAppendedMessage, serialize_message

SUBSCRIBER_BACKLOG = 64


@dataclass
class Subscription:
  document: str
  transport: MessageTransport
  outbox: asyncio.Queue[str]
  writer: asyncio.Task | None = field(default=None, repr=False)


class TranscriptHub:
  """
  Process-wide registry of document subscribers.

  Create it once with `TranscriptHub.create()` and pass it to the components that need it.
  """

  _created: ClassVar[bool] = False

  @classmethod
  def create(cls, **kwargs) -> "TranscriptHub":
    """
    Create the process's hub.

    :raises RuntimeError: A hub was already created in this process.
    """
    if cls._created:
      raise RuntimeError("TranscriptHub has already been created in this process")
    cls._created = True
    return cls(**kwargs)

  def __init__(self, backlog: int = SUBSCRIBER_BACKLOG, close_timeout: float = 2.0) -> None:
    """
    :param backlog: Messages queued for one subscriber before it is disconnected.
    :param close_timeout: Seconds allowed for closing a subscriber connection.
    """
    self.backlog = backlog
    self.close_timeout = close_timeout
    self.document_subscribers: dict[str, dict[MessageTransport, Subscription]] = {}
    self.logger = get_logger("collab/hub")

  def subscribe(self, document: str, transport: MessageTransport) -> Subscription:
    subscription = Subscription(document, transport, asyncio.Queue(maxsize=self.backlog))
    self.document_subscribers.setdefault(document, {})[transport] = subscription
    self.logger.info(
      "Subscriber added", document=document, subscribers=self.get_subscriber_count(document)
    )
    return subscription

  def unsubscribe(self, document: str, transport: MessageTransport) -> None:
    """Forget a subscriber and stop its writer. Unknown subscribers are ignored."""
    subscribers = self.document_subscribers.get(document)
    if not subscribers or transport not in subscribers:
      return

    subscription = subscribers.pop(transport)
    if not subscribers:
      del self.document_subscribers[document]
    if subscription.writer is not None and not subscription.writer.done():
      subscription.writer.cancel()
    self.logger.info(
      "Subscriber removed", document=document, subscribers=self.get_subscriber_count(document)
    )

  def publish(self, document: str, text: str, item_id: str | None = None) -> None:
    """
    Queue a transcription for every subscriber of `document`.

    Returns without waiting for any send. Subscribers that have fallen `backlog` messages behind
    are dropped.
    """
    subscribers = self.document_subscribers.get(document)
    if not subscribers:
      return

    payload = serialize_message(
      TranscriptAppendedMessage(document=document, text=text, item_id=item_id)
    )
    for transport, subscription in list(subscribers.items()):
      try:
        subscription.outbox.put_nowait(payload)
      except asyncio.QueueFull:
        self.logger.warning(
          "Subscriber is not keeping up, dropping it", document=document, backlog=self.backlog
        )
        self.unsubscribe(document, transport)

  async def serve_subscriber(self, document: str, transport: MessageTransport) -> None:
    """Deliver published transcriptions to a subscriber until it disconnects or is dropped."""
    subscription = self.subscribe(document, transport)
    reader = asyncio.create_task(self._read(subscription), name="subscriber-reader")
    subscription.writer = asyncio.create_task(self._drain(subscription), name="subscriber-writer")
    tasks = {reader, subscription.writer}

    try:
      done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
      for task in done:
        if not task.cancelled() and task.exception() is not None:
          self.logger.error(
            "Subscriber task failed", document=document, exc_info=task.exception()
          )
    finally:
      for task in tasks:
        task.cancel()
      await asyncio.gather(*tasks, return_exceptions=True)
      self.unsubscribe(document, transport)
      try:
        await asyncio.wait_for(transport.close(), self.close_timeout)
      except TimeoutError:
        self.logger.warning("Timed out closing subscriber", document=document)

  def get_subscriber_count(self, document: str) -> int:
    return len(self.document_subscribers.get(document, ()))

  async def _read(self, subscription: Subscription) -> None:
    try:
      while True:
        # Subscribers only receive
        message = await subscription.transport.recv()
        self.logger.warning(
          "Received unexpected message from subscriber",
          document=subscription.document,
          message=message[:100] if isinstance(message, str) else str(type(message)),
        )
    except TransportClosed:
      self.logger.debug("Subscriber connection closed", document=subscription.document)

  async def _drain(self, subscription: Subscription) -> None:
    try:
      while True:
        await subscription.transport.send(await subscription.outbox.get())
    except TransportClosed:
      self.logger.debug("Dropping closed subscriber", document=subscription.document)
