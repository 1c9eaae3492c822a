"""
Tests for TranscriptionStreamClient: credential gate, queueing, backoff,
proactive reconnect and terminal disconnect.

Uses an in-memory relay transport, a fake clock and a fake sleep; no
network or audio device is touched.
Run: python3 -m pytest tests/test_stream_client.py -v
"""

import asyncio
import unittest

from lecturepulse.errors import (
    AudioPermissionError,
    CredentialValidationError,
    InvalidTransitionError,
)
from lecturepulse.models import ConnectionState as S
from lecturepulse.streaming.client import TranscriptionStreamClient
from lecturepulse.streaming.messages import CLOSE_STREAM
from lecturepulse.streaming.relay import REMEDIATION, CredentialCheck
from tests.fakes import (
    FakeCapture,
    FakeClock,
    FakeTransport,
    RecordingSleep,
    chunk,
    instant_sleep,
    settle,
    transcript_payload,
    valid_credentials,
)


def make_client(transport: FakeTransport, **kwargs) -> TranscriptionStreamClient:
    kwargs.setdefault("validator", valid_credentials)
    kwargs.setdefault("capture", FakeCapture())
    kwargs.setdefault("proactive_reconnect_after", None)
    kwargs.setdefault("sleep", instant_sleep)
    return TranscriptionStreamClient(transport, **kwargs)


class TestConnect(unittest.IsolatedAsyncioTestCase):
    """Credential gate and the path to streaming."""

    async def test_ready_moves_to_streaming(self):
        transport = FakeTransport()
        client = make_client(transport)
        ready = []
        client.on_ready(lambda: ready.append(True))

        await client.connect()
        self.assertIs(client.get_state(), S.AWAITING_READY)
        self.assertFalse(client.is_connected())

        transport.current.ready()
        await settle()
        self.assertIs(client.get_state(), S.STREAMING)
        self.assertTrue(client.is_connected())
        self.assertEqual(ready, [True])
        await client.disconnect()

    async def test_state_changes_are_reported_in_order(self):
        transport = FakeTransport()
        client = make_client(transport)
        changes = []
        client.on_state_change(lambda old, new: changes.append((old, new)))

        await client.connect()
        transport.current.ready()
        await settle()

        self.assertEqual(
            changes,
            [
                (S.IDLE, S.VALIDATING_CREDENTIALS),
                (S.VALIDATING_CREDENTIALS, S.CONNECTING),
                (S.CONNECTING, S.AWAITING_READY),
                (S.AWAITING_READY, S.STREAMING),
            ],
        )
        await client.disconnect()

    async def test_invalid_credentials_fail_without_opening_socket(self):
        async def missing_key():
            return CredentialCheck(False, "No API key configured", "NO_API_KEY")

        transport = FakeTransport()
        capture = FakeCapture()
        client = make_client(transport, validator=missing_key, capture=capture)
        errors = []
        client.on_error(errors.append)

        with self.assertRaises(CredentialValidationError) as cm:
            await client.connect()

        self.assertEqual(cm.exception.error_code, "NO_API_KEY")
        self.assertIs(client.get_state(), S.FAILED)
        self.assertEqual(transport.open_calls, 0)
        self.assertEqual(capture.started, 0)
        self.assertEqual(errors, [REMEDIATION["NO_API_KEY"]])

    async def test_microphone_denied_fails_without_opening_socket(self):
        transport = FakeTransport()
        capture = FakeCapture(error=AudioPermissionError("Microphone access denied"))
        client = make_client(transport, capture=capture)

        with self.assertRaises(AudioPermissionError):
            await client.connect()
        self.assertIs(client.get_state(), S.FAILED)
        self.assertEqual(transport.open_calls, 0)

    async def test_connect_while_active_is_ignored(self):
        transport = FakeTransport()
        client = make_client(transport)
        await client.connect()
        await client.connect()
        self.assertEqual(transport.open_calls, 1)
        await client.disconnect()

    async def test_illegal_transition_raises(self):
        client = make_client(FakeTransport())
        with self.assertRaises(InvalidTransitionError):
            client._transition(S.STREAMING)


class TestAudioQueue(unittest.IsolatedAsyncioTestCase):
    """Chunks are never lost or reordered between capture and the relay."""

    async def test_chunks_below_minimum_are_discarded(self):
        client = make_client(FakeTransport())
        await client.connect()

        client.send_audio(b"\x00" * 500)
        client.send_audio(b"\x00" * 1000)

        self.assertEqual(client.stats.chunks_discarded, 1)
        self.assertEqual(client.queued_chunks, 1)
        await client.disconnect()

    async def test_queued_chunks_flush_in_order_on_ready(self):
        transport = FakeTransport()
        client = make_client(transport)
        await client.connect()

        for i in range(3):
            client.send_audio(chunk(i))
        await settle()
        self.assertEqual(transport.current.sent_audio, [])
        self.assertEqual(client.queued_chunks, 3)

        transport.current.ready()
        await settle()
        self.assertEqual(transport.current.sent_audio, [chunk(i).data for i in range(3)])
        self.assertEqual(client.queued_chunks, 0)

        client.send_audio(chunk(3))
        await settle()
        self.assertEqual(transport.current.sent_audio[-1], chunk(3).data)
        await client.disconnect()

    async def test_two_drops_recover_without_losing_audio(self):
        transport = FakeTransport()
        sleep = RecordingSleep()
        client = make_client(transport, sleep=sleep)
        await client.connect()
        transport.current.ready()
        await settle()

        for i in range(3):
            client.send_audio(chunk(i))
        await settle()

        transport.current.drop()
        await settle()
        self.assertIs(client.get_state(), S.AWAITING_READY)
        client.send_audio(chunk(3))
        client.send_audio(chunk(4))
        transport.current.ready()
        await settle()

        transport.current.drop()
        client.send_audio(chunk(5))
        await settle()
        transport.current.ready()
        await settle()

        self.assertIs(client.get_state(), S.STREAMING)
        self.assertEqual(client.reconnect_attempts, 0)
        self.assertEqual(len(transport.channels), 3)
        self.assertEqual(transport.all_sent(), [chunk(i).data for i in range(6)])
        self.assertEqual(client.stats.chunks_captured, 6)
        self.assertEqual(client.stats.chunks_sent, 6)
        self.assertEqual(client.stats.chunks_dropped, 0)
        # attempts reset after each successful ready
        self.assertEqual(sleep.delays, [2.0, 2.0])
        await client.disconnect()

    async def test_chunks_after_disconnect_are_dropped(self):
        client = make_client(FakeTransport())
        await client.connect()
        await client.disconnect()

        client.send_audio(chunk(0))
        self.assertEqual(client.stats.chunks_dropped, 1)
        self.assertEqual(client.queued_chunks, 0)


class TestReconnect(unittest.IsolatedAsyncioTestCase):
    """Exponential backoff and relay error handling."""

    async def test_backoff_exhaustion_fails(self):
        transport = FakeTransport(failures=10)
        sleep = RecordingSleep()
        capture = FakeCapture()
        client = make_client(transport, sleep=sleep, capture=capture)
        errors = []
        client.on_error(errors.append)

        await client.connect()
        await settle()

        self.assertIs(client.get_state(), S.FAILED)
        self.assertEqual(sleep.delays, [2.0, 4.0, 8.0])
        self.assertEqual(transport.open_calls, 4)
        self.assertEqual(errors[-1], "Failed to reconnect after multiple attempts")
        # the device is only released by disconnect()
        self.assertEqual(capture.stopped, 0)
        await client.disconnect()
        self.assertEqual(capture.stopped, 1)

    async def test_recovers_after_one_failed_attempt(self):
        transport = FakeTransport(failures=1)
        sleep = RecordingSleep()
        client = make_client(transport, sleep=sleep)

        await client.connect()
        await settle()
        self.assertIs(client.get_state(), S.AWAITING_READY)
        self.assertEqual(client.reconnect_attempts, 1)

        transport.current.ready()
        await settle()
        self.assertIs(client.get_state(), S.STREAMING)
        self.assertEqual(client.reconnect_attempts, 0)
        self.assertEqual(sleep.delays, [2.0])
        await client.disconnect()

    async def test_retryable_relay_error_reconnects(self):
        transport = FakeTransport()
        client = make_client(transport)
        await client.connect()
        first = transport.current
        first.ready()
        await settle()

        first.push({"type": "error", "message": "Provider busy", "canRetry": True})
        await settle()

        self.assertEqual(first.closed, (1011, "Relay error"))
        self.assertEqual(transport.open_calls, 2)
        self.assertIs(client.get_state(), S.AWAITING_READY)
        self.assertEqual(client.stats.reconnects, 1)
        await client.disconnect()

    async def test_fatal_relay_error_fails(self):
        transport = FakeTransport()
        client = make_client(transport)
        errors = []
        client.on_error(errors.append)
        await client.connect()
        transport.current.ready()
        await settle()

        transport.current.push({"type": "error", "message": "Quota exceeded", "canRetry": False})
        await settle()

        self.assertIs(client.get_state(), S.FAILED)
        self.assertEqual(transport.open_calls, 1)
        self.assertIn("Quota exceeded", errors)

    async def test_disconnect_cancels_pending_reconnect(self):
        async def parked_sleep(_delay):
            await asyncio.Event().wait()

        transport = FakeTransport()
        client = make_client(transport, sleep=parked_sleep)
        await client.connect()
        transport.current.ready()
        await settle()

        transport.current.drop()
        await settle()
        self.assertIs(client.get_state(), S.RECONNECTING)

        await client.disconnect()
        await settle()
        self.assertIs(client.get_state(), S.CLOSED)
        self.assertEqual(transport.open_calls, 1)


class TestProactiveReconnect(unittest.IsolatedAsyncioTestCase):
    """Channels are replaced before the provider's hard session limit."""

    async def _streaming_client(self, transport, clock, sleep):
        client = make_client(
            transport,
            clock=clock,
            sleep=sleep,
            proactive_reconnect_after=55.0,
            connection_age_check_interval=5.0,
        )
        await client.connect()
        transport.current.ready()
        await settle()
        return client

    async def test_reconnects_at_age_limit_only(self):
        delays = []

        async def sleep(delay):
            if delay == 5.0:
                await asyncio.Event().wait()  # park the watchdog; checks are driven below
            delays.append(delay)
            await asyncio.sleep(0)

        transport = FakeTransport()
        clock = FakeClock()
        client = await self._streaming_client(transport, clock, sleep)
        first = transport.current

        clock.advance(54.0)
        self.assertFalse(await client.check_connection_age())
        self.assertEqual(len(transport.channels), 1)

        clock.advance(1.0)
        self.assertTrue(await client.check_connection_age())
        self.assertEqual(first.controls, [CLOSE_STREAM])
        self.assertEqual(first.closed, (1000, "Proactive reconnect"))
        self.assertEqual(len(transport.channels), 2)
        self.assertIs(client.get_state(), S.AWAITING_READY)
        self.assertEqual(client.reconnect_attempts, 0)

        # audio captured during the switch goes to the new channel
        client.send_audio(chunk(7))
        transport.current.ready()
        await settle()
        self.assertEqual(transport.current.sent_audio, [chunk(7).data])
        self.assertEqual(first.sent_audio, [])

        clock.advance(1.0)
        self.assertFalse(await client.check_connection_age())
        self.assertEqual(client.stats.proactive_reconnects, 1)
        self.assertEqual(client.stats.reconnects, 0)
        self.assertEqual(delays, [])
        await client.disconnect()

    async def test_failed_proactive_reconnect_uses_normal_backoff(self):
        delays = []

        async def sleep(delay):
            if delay == 5.0:
                await asyncio.Event().wait()
            delays.append(delay)
            await asyncio.sleep(0)

        transport = FakeTransport()
        clock = FakeClock()
        client = await self._streaming_client(transport, clock, sleep)

        transport.failures = 1
        clock.advance(55.0)
        await client.check_connection_age()
        await settle()

        self.assertEqual(delays, [2.0])
        self.assertEqual(client.reconnect_attempts, 1)
        self.assertIs(client.get_state(), S.AWAITING_READY)
        await client.disconnect()

    async def test_replacement_drop_counts_against_attempt_limit(self):
        delays = []

        async def sleep(delay):
            if delay == 5.0:
                await asyncio.Event().wait()
            delays.append(delay)
            await asyncio.sleep(0)

        transport = FakeTransport()
        clock = FakeClock()
        client = await self._streaming_client(transport, clock, sleep)

        clock.advance(55.0)
        await client.check_connection_age()
        self.assertIs(client.get_state(), S.AWAITING_READY)

        # the replacement channel dies before ready and the relay stays down
        transport.failures = 10
        transport.current.drop()
        await settle(50)

        self.assertIs(client.get_state(), S.FAILED)
        self.assertEqual(delays, [2.0, 4.0, 8.0])
        self.assertEqual(transport.open_calls, 5)
        await client.disconnect()

    async def test_watchdog_replaces_channel_every_age_window(self):
        clock = FakeClock()

        async def advancing_sleep(delay):
            clock.advance(delay)
            await asyncio.sleep(0)

        transport = FakeTransport()
        client = make_client(
            transport,
            clock=clock,
            sleep=advancing_sleep,
            proactive_reconnect_after=55.0,
            connection_age_check_interval=5.0,
        )
        ready_at = []
        ages = []
        client.on_ready(lambda: ready_at.append(clock.now))

        def on_change(old, new):
            if old is S.STREAMING and new is S.CONNECTING:
                ages.append(clock.now - ready_at[-1])

        client.on_state_change(on_change)
        await client.connect()

        readied = set()
        for _ in range(500):
            channel = transport.current
            if id(channel) not in readied:
                readied.add(id(channel))
                channel.ready()
            if len(transport.channels) >= 4:
                break
            await asyncio.sleep(0)

        self.assertEqual(len(ages), 3)
        for age in ages:
            self.assertGreaterEqual(age, 55.0)
            self.assertLess(age, 60.0)
        await client.disconnect()


class TestDisconnect(unittest.IsolatedAsyncioTestCase):
    """disconnect() is terminal and leaves nothing behind."""

    async def test_disconnect_closes_gracefully_and_releases_device(self):
        transport = FakeTransport()
        capture = FakeCapture()
        client = make_client(transport, capture=capture)
        closes = []
        client.on_close(closes.append)
        await client.connect()
        transport.current.ready()
        await settle()

        await client.disconnect()

        self.assertIs(client.get_state(), S.CLOSED)
        self.assertEqual(transport.current.controls, [CLOSE_STREAM])
        self.assertEqual(transport.current.closed, (1000, "Client disconnect"))
        self.assertEqual(capture.stopped, 1)
        self.assertEqual(closes, ["Disconnected"])

    async def test_reconnect_after_disconnect_starts_fresh(self):
        transport = FakeTransport()
        capture = FakeCapture()
        client = make_client(transport, capture=capture)
        await client.connect()
        client.send_audio(chunk(0))
        client.send_audio(chunk(1))
        await client.disconnect()
        self.assertEqual(client.queued_chunks, 0)

        changes = []
        client.on_state_change(lambda old, new: changes.append((old, new)))
        await client.connect()

        self.assertEqual(changes[0], (S.CLOSED, S.IDLE))
        self.assertEqual(changes[1], (S.IDLE, S.VALIDATING_CREDENTIALS))
        self.assertEqual(client.queued_chunks, 0)
        self.assertEqual(client.stats.chunks_captured, 0)
        self.assertEqual(client.reconnect_attempts, 0)
        self.assertEqual(capture.started, 2)
        await client.disconnect()

    async def test_device_released_even_if_close_raises(self):
        transport = FakeTransport()
        capture = FakeCapture()
        client = make_client(transport, capture=capture)
        await client.connect()
        transport.current.close_error = RuntimeError("socket gone")

        with self.assertRaises(RuntimeError):
            await client.disconnect()
        self.assertEqual(capture.stopped, 1)
        self.assertIs(client.get_state(), S.CLOSED)

    async def test_connect_after_failure_leaves_no_tasks_behind(self):
        async def sleep(delay):
            if delay == 5.0:
                await asyncio.Event().wait()
            await asyncio.sleep(0)

        baseline = asyncio.all_tasks()
        transport = FakeTransport()
        client = make_client(
            transport,
            sleep=sleep,
            proactive_reconnect_after=55.0,
            connection_age_check_interval=5.0,
        )
        await client.connect()
        transport.current.ready()
        await settle()
        first_watchdog = client._watchdog_task

        transport.current.push({"type": "error", "message": "Quota exceeded", "canRetry": False})
        await settle()
        self.assertIs(client.get_state(), S.FAILED)

        await client.connect()
        transport.current.ready()
        await settle()
        self.assertTrue(first_watchdog.done())
        self.assertIs(client.get_state(), S.STREAMING)

        await client.disconnect()
        await settle()
        leftover = asyncio.all_tasks() - baseline - {asyncio.current_task()}
        self.assertEqual(leftover, set())

    async def test_disconnect_from_idle(self):
        client = make_client(FakeTransport())
        await client.disconnect()
        self.assertIs(client.get_state(), S.CLOSED)


class TestTranscripts(unittest.IsolatedAsyncioTestCase):
    async def test_transcript_events_reach_subscribers(self):
        transport = FakeTransport()
        client = make_client(transport)
        events = []
        client.on_transcript(events.append)
        await client.connect()
        transport.current.ready()
        transport.current.push(transcript_payload("the mitochondria is the powerhouse"))
        transport.current.push(transcript_payload("of the cell", is_final=False))
        await settle()

        self.assertEqual(len(events), 2)
        self.assertEqual(events[0].text, "the mitochondria is the powerhouse")
        self.assertTrue(events[0].is_final)
        self.assertFalse(events[1].is_final)
        self.assertEqual(events[0].speaker_segments[0].speaker_id, 0)
        await client.disconnect()

    async def test_provider_event_frames_do_not_stop_the_reader(self):
        transport = FakeTransport()
        client = make_client(transport)
        events = []
        client.on_transcript(events.append)
        await client.connect()
        first = transport.current
        first.ready()
        await settle()

        first.push({"type": "SpeechStarted", "channel": [0, 1], "timestamp": 1.2})
        first.push({"type": "UtteranceEnd", "channel": [0, 1], "last_word_end": 2.5})
        first.push(transcript_payload("after the pause"))
        await settle()
        self.assertEqual([e.text for e in events], ["after the pause"])
        self.assertIs(client.get_state(), S.STREAMING)

        first.drop()
        await settle()
        self.assertEqual(transport.open_calls, 2)
        self.assertIs(client.get_state(), S.AWAITING_READY)
        await client.disconnect()

    async def test_bad_frame_is_skipped(self):
        transport = FakeTransport()
        client = make_client(transport)
        events = []
        client.on_transcript(events.append)
        await client.connect()
        transport.current.ready()
        await settle()

        bad_word = {"word": "hi", "speaker": "left"}
        transport.current.push({
            "type": "Results",
            "is_final": True,
            "channel": {"alternatives": [{"transcript": "hi", "words": [bad_word]}]},
        })
        transport.current.push(transcript_payload("still streaming"))
        with self.assertLogs("lecturepulse.streaming.client", level="ERROR"):
            await settle()

        self.assertEqual([e.text for e in events], ["still streaming"])
        self.assertIs(client.get_state(), S.STREAMING)
        await client.disconnect()

    async def test_failing_callback_does_not_break_stream(self):
        transport = FakeTransport()
        client = make_client(transport)

        def broken(_event):
            raise ValueError("subscriber bug")

        events = []
        client.on_transcript(broken)
        client.on_transcript(events.append)
        await client.connect()
        transport.current.ready()
        transport.current.push(transcript_payload("still here"))
        await settle()

        self.assertEqual(len(events), 1)
        self.assertIs(client.get_state(), S.STREAMING)
        await client.disconnect()


if __name__ == "__main__":
    unittest.main()
