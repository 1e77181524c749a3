"""Tests for the session controller, driven over in-memory transports."""

import asyncio

import pytest
from conftest import FakeTransport, ManualClock, ManualTimers, StalledTransport, pcm16_b64

from murmur.collab import TranscriptHub
from murmur.config import SessionConfig, SpeechBreakConfig, VadParams
from murmur.errors import InvalidModelError
from murmur.relay.session import UPSTREAM_LOST_MESSAGE, SessionController, validate_model


class FakePublisher:
  def __init__(self) -> None:
    self.published: list[tuple[str, str, str | None]] = []

  def publish(self, document: str, text: str, item_id: str | None = None) -> None:
    self.published.append((document, text, item_id))


class Harness:
  """A running session with fake transports on both sides."""

  def __init__(self, clock: ManualClock, timers: ManualTimers, **kwargs) -> None:
    self.client = FakeTransport("client")
    self.upstream = FakeTransport("upstream")
    self.publisher = FakePublisher()
    kwargs.setdefault("config", SessionConfig())
    kwargs.setdefault("publisher", self.publisher)
    self.session = SessionController(
      self.client,
      self.upstream,
      model="gpt-4o-realtime-preview",
      session_id="doc-1",
      close_grace_period=0.5,
      clock=clock,
      timers=timers,
      **kwargs,
    )
    self.task: asyncio.Task | None = None

  async def start(self) -> "Harness":
    self.task = asyncio.create_task(self.session.run())
    await self.settle()
    return self

  async def settle(self) -> None:
    for _ in range(20):
      await asyncio.sleep(0)

  async def from_client(self, message: dict | str | bytes) -> None:
    self.client.feed(message)
    await self.settle()

  async def from_upstream(self, message: dict | str) -> None:
    self.upstream.feed(message)
    await self.settle()

  async def stop(self) -> None:
    self.client.disconnect()
    assert self.task is not None
    await asyncio.wait_for(self.task, 2)

  def upstream_types(self) -> list[str]:
    return self.upstream.types()

  def client_types(self) -> list[str]:
    return self.client.types()


@pytest.fixture
def harness(clock, timers) -> Harness:
  return Harness(clock, timers)


class TestValidateModel:
  """Test connection-time model resolution."""

  def test_missing_model_selects_default(self):
    """Test that an absent model resolves to the default."""
    assert validate_model(None, ["a", "b"], "a") == "a"

  def test_allowed_model(self):
    """Test that an allowed model is returned unchanged."""
    assert validate_model("b", ["a", "b"], "a") == "b"

  def test_unknown_model_is_rejected(self):
    """Test that an unknown model raises with the allow-list in the message."""
    with pytest.raises(InvalidModelError, match="Invalid model 'c'.*a, b"):
      validate_model("c", ["a", "b"], "a")


class TestStartup:
  """Test what a session sends when it starts."""

  @pytest.mark.asyncio
  async def test_configures_upstream_and_notifies_client(self, harness):
    """Test that configuration goes upstream and the client is told it is ready."""
    await harness.start()

    assert harness.upstream_types() == ["session.update"]
    assert harness.client.messages == [
      {"type": "ready", "message": "Connected to realtime transcription"}
    ]
    await harness.stop()

  @pytest.mark.asyncio
  async def test_session_update_shape(self, harness):
    """Test the full upstream configuration message."""
    await harness.start()

    assert harness.upstream.messages[0] == {
      "type": "session.update",
      "session": {
        "modalities": ["text"],
        "input_audio_format": "pcm16",
        "input_audio_transcription": {"model": "gpt-4o-transcribe"},
        "turn_detection": {
          "type": "server_vad",
          "threshold": 0.5,
          "prefix_padding_ms": 300,
          "silence_duration_ms": 500,
          "create_response": False,
        },
        "max_response_output_tokens": 1,
      },
    }
    await harness.stop()

  @pytest.mark.asyncio
  async def test_disabled_vad_omits_turn_detection(self, clock, timers):
    """Test that disabling VAD sends a null turn_detection."""
    harness = await Harness(
      clock, timers, config=SessionConfig(vad=VadParams(enabled=False))
    ).start()

    assert harness.upstream.messages[0]["session"]["turn_detection"] is None
    await harness.stop()


class TestAudioForwarding:
  """Test audio chunks flowing upstream."""

  @pytest.mark.asyncio
  async def test_frames_forwarded_in_order_with_commit(self, harness):
    """Test that the third 400 ms frame is followed by an immediate commit."""
    await harness.start()
    chunks = [pcm16_b64(400, amplitude=a) for a in (100, 200, 300)]

    for chunk in chunks:
      await harness.from_client({"type": "audio_chunk", "audio": chunk})

    sent = harness.upstream.messages[1:]
    assert [m["type"] for m in sent] == [
      "input_audio_buffer.append",
      "input_audio_buffer.append",
      "input_audio_buffer.append",
      "input_audio_buffer.commit",
    ]
    assert [m["audio"] for m in sent[:3]] == chunks
    assert harness.session.scheduler.response_in_progress
    await harness.stop()

  @pytest.mark.asyncio
  async def test_frames_during_response_are_counted_not_committed(self, harness):
    """Test that audio keeps flowing but no further commit is issued."""
    await harness.start()
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(1000)})

    for _ in range(3):
      await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(1000)})

    assert harness.upstream_types().count("input_audio_buffer.commit") == 1
    assert harness.upstream_types().count("input_audio_buffer.append") == 4
    assert harness.session.scheduler.buffered_ms == pytest.approx(4000.0)
    await harness.stop()

  @pytest.mark.asyncio
  async def test_silent_frames_are_dropped(self, harness):
    """Test that all-zero audio never reaches upstream or the accounting."""
    await harness.start()

    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(500, amplitude=0)})

    assert harness.upstream_types() == ["session.update"]
    assert harness.session.scheduler.buffered_ms == 0.0
    assert harness.session.frames_silent == 1
    await harness.stop()

  @pytest.mark.asyncio
  async def test_malformed_frames_are_dropped_quietly(self, harness):
    """Test that odd-length and non-base64 chunks are dropped without a client error."""
    await harness.start()

    await harness.from_client({"type": "audio_chunk", "audio": "AQID"})
    await harness.from_client({"type": "audio_chunk", "audio": "@@@@"})

    assert harness.upstream_types() == ["session.update"]
    assert harness.client_types() == ["ready"]
    assert harness.session.frames_rejected == 2
    await harness.stop()

  @pytest.mark.asyncio
  async def test_debounce_timer_commits(self, harness, timers):
    """Test that a quiet period after 600 ms of audio commits upstream."""
    await harness.start()
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(600)})

    timers.advance(2000)
    await harness.settle()

    assert harness.upstream_types()[-1] == "input_audio_buffer.commit"
    await harness.stop()

  @pytest.mark.asyncio
  async def test_manual_commit(self, harness):
    """Test that audio_commit commits when enough audio is buffered."""
    await harness.start()
    await harness.from_client({"type": "audio_commit"})
    assert "input_audio_buffer.commit" not in harness.upstream_types()

    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(200)})
    await harness.from_client({"type": "audio_commit"})

    assert harness.upstream_types()[-1] == "input_audio_buffer.commit"
    await harness.stop()

  @pytest.mark.asyncio
  async def test_clear_audio_buffer(self, harness, timers):
    """Test that clearing resets accounting, cancels the timer and clears upstream."""
    await harness.start()
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(600)})

    await harness.from_client({"type": "clear_audio_buffer"})

    assert harness.upstream_types()[-1] == "input_audio_buffer.clear"
    assert harness.session.scheduler.buffered_ms == 0.0
    assert harness.session.scheduler.chunk_count == 0
    assert timers.pending == []
    await harness.stop()


class TestControlMessages:
  """Test session mutations requested by the client."""

  @pytest.mark.asyncio
  async def test_set_prompt_resends_full_configuration(self, harness):
    """Test that a prompt change re-sends the whole session configuration."""
    await harness.start()

    await harness.from_client({"type": "set_prompt", "prompt": "Medical vocabulary"})

    update = harness.upstream.messages[-1]
    assert update["type"] == "session.update"
    assert update["session"]["input_audio_transcription"] == {
      "model": "gpt-4o-transcribe",
      "prompt": "Medical vocabulary",
    }
    assert update["session"]["turn_detection"]["threshold"] == 0.5
    await harness.stop()

  @pytest.mark.asyncio
  async def test_set_vad_params_keeps_unspecified_values(self, harness):
    """Test that VAD updates replace only the given fields."""
    await harness.start()

    await harness.from_client({"type": "set_vad_params", "threshold": 0.8})

    turn_detection = harness.upstream.messages[-1]["session"]["turn_detection"]
    assert turn_detection["threshold"] == 0.8
    assert turn_detection["silence_duration_ms"] == 500
    assert turn_detection["prefix_padding_ms"] == 300
    await harness.stop()

  @pytest.mark.asyncio
  async def test_set_transcription_model(self, harness):
    """Test that an allowed transcription model is applied."""
    await harness.start()

    await harness.from_client(
      {"type": "set_transcription_model", "model": "gpt-4o-mini-transcribe"}
    )

    update = harness.upstream.messages[-1]
    assert update["session"]["input_audio_transcription"]["model"] == "gpt-4o-mini-transcribe"
    await harness.stop()

  @pytest.mark.asyncio
  async def test_unknown_transcription_model_is_rejected(self, harness):
    """Test that an unknown model produces a client error and no reconfiguration."""
    await harness.start()

    await harness.from_client({"type": "set_transcription_model", "model": "whisper-9"})

    assert harness.upstream_types() == ["session.update"]
    assert harness.client.messages[-1]["type"] == "error"
    assert "whisper-9" in harness.client.messages[-1]["error"]
    assert not harness.task.done()
    await harness.stop()

  @pytest.mark.asyncio
  async def test_set_commit_threshold(self, harness):
    """Test that the per-session commit threshold applies to later frames."""
    await harness.start()

    await harness.from_client({"type": "set_commit_threshold", "threshold_ms": 2500})
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(2000)})

    assert "input_audio_buffer.commit" not in harness.upstream_types()
    await harness.stop()

  @pytest.mark.asyncio
  async def test_unknown_client_message_is_ignored(self, harness):
    """Test that unknown types neither error nor end the session."""
    await harness.start()

    await harness.from_client({"type": "ping"})

    assert harness.client_types() == ["ready"]
    assert not harness.task.done()
    await harness.stop()

  @pytest.mark.asyncio
  @pytest.mark.parametrize("message_type", [["audio_chunk"], {"name": "audio_chunk"}, 7, None])
  async def test_non_string_type_keeps_session_open(self, harness, message_type):
    """Test that a non-string type tag is ignored and the session keeps relaying audio."""
    await harness.start()

    await harness.from_client({"type": message_type, "audio": pcm16_b64(100)})
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(100)})

    assert not harness.task.done()
    assert not harness.upstream.closed
    assert harness.client_types() == ["ready"]
    assert harness.upstream_types() == ["session.update", "input_audio_buffer.append"]
    await harness.stop()

  @pytest.mark.asyncio
  async def test_malformed_client_message_reports_error(self, harness):
    """Test that invalid JSON is reported to the client."""
    await harness.start()

    await harness.from_client("{not json")
    await harness.from_client({"type": "audio_chunk"})

    assert harness.client_types() == ["ready", "error", "error"]
    assert not harness.task.done()
    await harness.stop()

  @pytest.mark.asyncio
  async def test_binary_client_message_is_ignored(self, harness):
    """Test that binary frames are ignored."""
    await harness.start()

    await harness.from_client(b"\x00\x01")

    assert harness.client_types() == ["ready"]
    await harness.stop()


class TestUpstreamEvents:
  """Test upstream events relayed to the client."""

  @pytest.mark.asyncio
  async def test_transcription_reaches_client_and_document(self, harness):
    """Test that a completed transcription is delivered once and published."""
    await harness.start()
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(1000)})

    await harness.from_upstream(
      {
        "type": "conversation.item.input_audio_transcription.completed",
        "item_id": "item_1",
        "transcript": "hello",
      }
    )

    transcriptions = [m for m in harness.client.messages if m["type"] == "transcription"]
    assert transcriptions == [{"type": "transcription", "text": "hello", "item_id": "item_1"}]
    assert harness.publisher.published == [("doc-1", "hello", "item_1")]
    assert harness.session.scheduler.buffered_ms == 0.0
    assert not harness.session.scheduler.response_in_progress
    await harness.stop()

  @pytest.mark.asyncio
  async def test_session_id_selects_document(self, harness):
    """Test that set_session_id changes where transcriptions are published."""
    await harness.start()

    await harness.from_client({"type": "set_session_id", "sessionId": "doc-2"})
    await harness.from_upstream(
      {"type": "conversation.item.input_audio_transcription.completed", "transcript": "hi"}
    )

    assert harness.session.session_id == "doc-2"
    assert harness.publisher.published == [("doc-2", "hi", None)]
    await harness.stop()

  @pytest.mark.asyncio
  async def test_transcription_reaches_client_without_publisher(self, clock, timers):
    """Test that transcriptions are delivered when collaboration is disabled."""
    harness = await Harness(clock, timers, publisher=None).start()

    await harness.from_upstream(
      {"type": "conversation.item.input_audio_transcription.completed", "transcript": "solo"}
    )

    assert harness.client.messages[-1] == {"type": "transcription", "text": "solo", "item_id": None}
    await harness.stop()

  @pytest.mark.asyncio
  async def test_stuck_subscriber_does_not_hold_back_client(self, clock, timers):
    """Test that events keep reaching the client while a document subscriber never reads."""
    hub = TranscriptHub(backlog=1, close_timeout=0.1)
    subscriber = StalledTransport("subscriber")
    subscriber_task = asyncio.create_task(hub.serve_subscriber("doc-1", subscriber))
    harness = await Harness(clock, timers, publisher=hub).start()

    completed = {"type": "conversation.item.input_audio_transcription.completed"}
    for index in range(3):
      await harness.from_upstream({**completed, "item_id": f"item_{index}", "transcript": "hi"})
    await harness.from_upstream({"type": "input_audio_buffer.speech_started", "audio_start_ms": 5})

    assert harness.client_types() == [
      "ready",
      "transcription",
      "transcription",
      "transcription",
      "speech_started",
    ]
    assert subscriber.send_attempts == 1
    await asyncio.wait_for(subscriber_task, 1)
    assert hub.get_subscriber_count("doc-1") == 0
    assert subscriber.closed
    await harness.stop()

  @pytest.mark.asyncio
  async def test_buffer_error_resets_and_is_forwarded(self, harness):
    """Test the upstream 'buffer is too small' scenario."""
    await harness.start()
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(1000)})

    await harness.from_upstream({"type": "error", "error": {"message": "buffer is too small"}})

    assert harness.client.messages[-1] == {"type": "error", "error": "buffer is too small"}
    assert not harness.session.scheduler.response_in_progress
    assert harness.session.scheduler.buffered_ms == 0.0
    assert harness.session.scheduler.chunk_count == 0
    await harness.stop()

  @pytest.mark.asyncio
  async def test_unknown_event_during_response(self, harness):
    """Test that an unknown event type is silent and keeps the response pending."""
    await harness.start()
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(1000)})

    await harness.from_upstream({"type": "rate_limits.updated", "rate_limits": []})

    assert harness.client_types() == ["ready"]
    assert harness.session.scheduler.response_in_progress
    await harness.stop()

  @pytest.mark.asyncio
  async def test_events_relayed_in_order(self, harness):
    """Test that upstream events reach the client in receipt order."""
    await harness.start()

    harness.upstream.feed({"type": "input_audio_buffer.speech_started", "audio_start_ms": 10})
    harness.upstream.feed(
      {"type": "conversation.item.input_audio_transcription.delta", "delta": "a"}
    )
    harness.upstream.feed({"type": "input_audio_buffer.speech_stopped", "audio_end_ms": 900})
    await harness.settle()

    assert harness.client_types() == [
      "ready",
      "speech_started",
      "transcription_delta",
      "speech_stopped",
    ]
    await harness.stop()


class TestSpeechBreaks:
  """Test paragraph break detection."""

  @pytest.fixture
  def break_harness(self, clock, timers) -> Harness:
    config = SessionConfig(
      speech_breaks=SpeechBreakConfig(enabled=True, marker="¶", paragraph_break_threshold_ms=2000)
    )
    return Harness(clock, timers, config=config)

  @pytest.mark.asyncio
  async def test_speech_stopped_is_annotated_and_break_follows(self, break_harness, timers):
    """Test that the break arrives once the rest of the threshold elapses."""
    harness = await break_harness.start()

    await harness.from_upstream({"type": "input_audio_buffer.speech_stopped", "audio_end_ms": 5})

    assert harness.client.messages[-1] == {
      "type": "speech_stopped",
      "audio_end_ms": 5,
      "item_id": None,
      "silence_gap_ms": 500,
      "silence_threshold_ms": 2000,
      "marker": "¶",
    }

    timers.advance(1499)
    await harness.settle()
    assert "paragraph_break" not in harness.client_types()

    timers.advance(1)
    await harness.settle()
    assert harness.client.messages[-1] == {"type": "paragraph_break", "marker": "¶"}
    await harness.stop()

  @pytest.mark.asyncio
  async def test_speech_started_cancels_break(self, break_harness, timers):
    """Test that resumed speech cancels the pending break."""
    harness = await break_harness.start()

    await harness.from_upstream({"type": "input_audio_buffer.speech_stopped"})
    await harness.from_upstream({"type": "input_audio_buffer.speech_started", "audio_start_ms": 5})
    timers.advance(5000)
    await harness.settle()

    assert "paragraph_break" not in harness.client_types()
    await harness.stop()

  @pytest.mark.asyncio
  async def test_detection_can_be_enabled_by_client(self, harness, timers):
    """Test set_speech_break_detection with a custom marker."""
    await harness.start()

    await harness.from_client(
      {"type": "set_speech_break_detection", "enabled": True, "marker": "//"}
    )
    await harness.from_upstream({"type": "input_audio_buffer.speech_stopped"})
    timers.advance(2000)
    await harness.settle()

    assert harness.client.messages[-1] == {"type": "paragraph_break", "marker": "//"}
    await harness.stop()


class TestTeardown:
  """Test that both sides always close together."""

  @pytest.mark.asyncio
  async def test_client_close_closes_upstream(self, harness, timers):
    """Test that a client disconnect closes upstream and cancels timers."""
    await harness.start()
    await harness.from_client({"type": "audio_chunk", "audio": pcm16_b64(300)})

    harness.client.disconnect()
    await asyncio.wait_for(harness.task, 2)

    assert harness.upstream.closed
    assert harness.client.closed
    assert timers.pending == []

  @pytest.mark.asyncio
  async def test_upstream_failure_notifies_client(self, harness):
    """Test that an unclean upstream loss is reported before the client is closed."""
    await harness.start()

    harness.upstream.disconnect(clean=False)
    await asyncio.wait_for(harness.task, 2)

    assert harness.client.messages[-1] == {"type": "error", "error": UPSTREAM_LOST_MESSAGE}
    assert harness.client.closed
    assert harness.upstream.closed

  @pytest.mark.asyncio
  async def test_clean_upstream_close_closes_client_quietly(self, harness):
    """Test that a clean upstream close ends the session without an error."""
    await harness.start()

    harness.upstream.disconnect(clean=True)
    await asyncio.wait_for(harness.task, 2)

    assert harness.client_types() == ["ready"]
    assert harness.client.closed

  @pytest.mark.asyncio
  async def test_cancelled_session_still_closes_both_sides(self, harness):
    """Test that cancelling the session task tears down both transports."""
    await harness.start()

    harness.task.cancel()
    with pytest.raises(asyncio.CancelledError):
      await harness.task

    assert harness.client.closed
    assert harness.upstream.closed

