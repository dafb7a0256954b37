from __future__ import annotations

import io
import json
import logging
import pathlib
import tempfile
import unittest

from scripts.bootstrapper.bootstrap_events import (
    EventPublisher,
    EventSink,
    HeartbeatPrinter,
    suppress_connection_noise,
)


class EventPublisherTests(unittest.TestCase):
    def test_delivers_in_registration_order(self) -> None:
        seen: list[tuple[str, object]] = []
        publisher = EventPublisher([lambda m: seen.append(("first", m))])
        publisher.add_listener(lambda m: seen.append(("second", m)))
        publisher.publish("hello")
        self.assertEqual(seen, [("first", "hello"), ("second", "hello")])

    def test_heartbeat_is_delivered(self) -> None:
        seen: list[object] = []
        publisher = EventPublisher([seen.append])
        publisher.publish(None)
        self.assertEqual(seen, [None])

    def test_failing_listener_does_not_stop_others(self) -> None:
        seen: list[object] = []

        def broken(_message: object) -> None:
            raise RuntimeError("listener down")

        publisher = EventPublisher([broken, seen.append])
        with self.assertLogs("scripts.bootstrapper.bootstrap_events", level="WARNING") as logs:
            publisher.publish("still delivered")
        self.assertEqual(seen, ["still delivered"])
        self.assertIn("failed", logs.output[0])


class EventSinkTests(unittest.TestCase):
    def test_emit_appends_json_line_and_prints(self) -> None:
        with tempfile.TemporaryDirectory(prefix="bootstrap_events_") as tmp:
            path = pathlib.Path(tmp) / "events.jsonl"
            stream = io.StringIO()
            sink = EventSink(path, stream=stream)
            sink.emit("start", "start-localcloud requested", dry_run=True)
            sink("Waiting for management processes to start")
            sink(None)

            rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        self.assertEqual([row["event"] for row in rows], ["start", "progress"])
        self.assertTrue(rows[0]["dry_run"])
        self.assertIn("progress: Waiting for management processes to start", stream.getvalue())

    def test_emit_without_file_only_prints(self) -> None:
        stream = io.StringIO()
        EventSink(None, stream=stream).emit("finish", "done")
        self.assertIn("finish: done", stream.getvalue())

    def test_heartbeat_printer_ignores_messages(self) -> None:
        stream = io.StringIO()
        printer = HeartbeatPrinter(stream)
        printer("text")
        printer(None)
        printer(None)
        self.assertEqual(stream.getvalue(), "..")


class ConnectionNoiseTests(unittest.TestCase):
    def test_warnings_are_dropped_and_errors_kept(self) -> None:
        noisy = logging.getLogger("tests.transport.noise")
        with self.assertLogs(noisy, level="DEBUG") as logs:
            with suppress_connection_noise([noisy.name]):
                noisy.warning("connection refused")
                noisy.error("real problem")
        self.assertEqual(len(logs.records), 1)
        self.assertEqual(logs.records[0].getMessage(), "real problem")

    def test_filter_is_removed_on_error(self) -> None:
        noisy = logging.getLogger("tests.transport.cleanup")
        with self.assertRaises(RuntimeError):
            with suppress_connection_noise([noisy.name]):
                raise RuntimeError("boom")
        self.assertEqual(noisy.filters, [])
        with self.assertLogs(noisy, level="WARNING"):
            noisy.warning("visible again")


if __name__ == "__main__":
    unittest.main()
