"""
Message codec for both relay protocols.

Provides the public API for converting between wire message objects and JSON strings, hiding
the details of Pydantic validation and serialization.
"""

import json
from typing import get_args

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from murmur.errors import UnknownMessageType, UpstreamProtocolError

from .client import InboundClientMessage
from .upstream import EVENT_MODELS, UnknownEvent, UpstreamEvent

_INBOUND_TYPES = frozenset(
  model.model_fields["type"].default for model in get_args(get_args(InboundClientMessage)[0])
)


class _InboundCodec(BaseModel):
  """Private wrapper type for deserializing the discriminated union of browser messages."""

  message: InboundClientMessage = Field(discriminator="type")


def serialize_message(message: BaseModel) -> str:
  """
  Serialize any wire message to a JSON string.

  :param message: A client-facing, collaboration or upstream message instance
  :returns: JSON string representation of the message
  """
  adapter = TypeAdapter(type(message))
  return adapter.dump_json(message, by_alias=True).decode("utf-8")


def deserialize_client_message(json_str: str | bytes) -> InboundClientMessage:
  """
  Deserialize a JSON message received from the browser.

  :param json_str: JSON text of a single message
  :returns: The typed message
  :raises UnknownMessageType: The `type` tag is missing or not one the relay handles.
  :raises ValueError: The payload is not JSON, or is invalid for its type.
  """
  try:
    data = json.loads(json_str)
  except json.JSONDecodeError as e:
    raise ValueError(f"Message is not valid JSON: {e}") from e

  if not isinstance(data, dict):
    raise ValueError("Message must be a JSON object")

  message_type = data.get("type")
  if not isinstance(message_type, str) or message_type not in _INBOUND_TYPES:
    raise UnknownMessageType(message_type)

  try:
    return _InboundCodec.model_validate({"message": data}).message
  except ValidationError as e:
    raise ValueError(f"Invalid '{message_type}' message: {e.errors(include_url=False)}") from e


def deserialize_upstream_event(json_str: str | bytes) -> UpstreamEvent:
  """
  Deserialize an event received from the upstream realtime API.

  Unrecognized event types yield an `UnknownEvent` carrying the original payload.

  :param json_str: JSON text of a single event
  :returns: The typed event
  :raises UpstreamProtocolError: The payload is not a JSON object with a string `type`, or a
    recognized event fails validation.
  """
  try:
    data = json.loads(json_str)
  except (json.JSONDecodeError, UnicodeDecodeError) as e:
    raise UpstreamProtocolError(f"Upstream event is not valid JSON: {e}") from e

  if not isinstance(data, dict) or not isinstance(data.get("type"), str):
    raise UpstreamProtocolError("Upstream event is missing its 'type' tag")

  model = EVENT_MODELS.get(data["type"], UnknownEvent)
  try:
    return model.model_validate(data)
  except ValidationError as e:
    raise UpstreamProtocolError(
      f"Invalid upstream '{data['type']}' event: {e.errors(include_url=False)}"
    ) from e
