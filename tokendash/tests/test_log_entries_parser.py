import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from tokendash.parsers.log_entries import (
    LogParseError,
    flatten_content,
    iter_log_lines,
    parse_log_line,
)


def _line(**overrides) -> str:
    payload = {
        "uuid": "u-1",
        "parentUuid": None,
        "sessionId": "s-1",
        "cwd": "/home/u/myproj",
        "timestamp": "2024-03-01T10:00:00.000Z",
        "isSidechain": False,
        "userType": "external",
        "type": "assistant",
        "requestId": "req-1",
        "message": {
            "type": "message",
            "role": "assistant",
            "model": "claude-sonnet",
            "content": [{"type": "text", "text": "hi"}],
            "usage": {"input_tokens": 100, "output_tokens": 50, "cache_read_input_tokens": None},
        },
    }
    payload.update(overrides)
    return json.dumps(payload)


class ParseLogLineTests(unittest.TestCase):
    def test_parses_full_record(self) -> None:
        entry = parse_log_line(_line())
        self.assertEqual(entry.uuid, "u-1")
        self.assertEqual(entry.session_id, "s-1")
        self.assertEqual(entry.request_id, "req-1")
        self.assertEqual(entry.timestamp, datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc))
        self.assertEqual(entry.message.usage.input_tokens, 100)
        self.assertEqual(entry.message.usage.cache_read_input_tokens, 0)

    def test_offset_timestamps_are_normalized_to_utc(self) -> None:
        entry = parse_log_line(_line(timestamp="2024-03-01T12:00:00+02:00"))
        self.assertEqual(entry.timestamp, datetime(2024, 3, 1, 10, 0, tzinfo=timezone.utc))

    def test_message_and_usage_are_optional(self) -> None:
        entry = parse_log_line(_line(message=None, isSidechain=None))
        self.assertIsNone(entry.message)
        self.assertFalse(entry.is_sidechain)

    def test_unknown_fields_are_ignored(self) -> None:
        self.assertEqual(parse_log_line(_line(gitBranch="main")).uuid, "u-1")

    def test_rejects_invalid_json(self) -> None:
        with self.assertRaises(LogParseError) as ctx:
            parse_log_line('{"uuid": "u-1", ')
        self.assertIn("invalid JSON", ctx.exception.reason)

    def test_rejects_non_object(self) -> None:
        with self.assertRaises(LogParseError):
            parse_log_line("[1, 2, 3]")

    def test_rejects_blank_line(self) -> None:
        with self.assertRaises(LogParseError):
            parse_log_line("   ")

    def test_rejects_missing_required_fields(self) -> None:
        payload = json.loads(_line())
        del payload["sessionId"]
        with self.assertRaises(LogParseError) as ctx:
            parse_log_line(json.dumps(payload))
        self.assertIn("sessionId", ctx.exception.reason)

    def test_rejects_bad_timestamp(self) -> None:
        with self.assertRaises(LogParseError):
            parse_log_line(_line(timestamp="yesterday"))


class FlattenContentTests(unittest.TestCase):
    def test_strings_are_verbatim(self) -> None:
        self.assertEqual(flatten_content("plain text"), "plain text")

    def test_structures_are_canonical(self) -> None:
        first = flatten_content([{"type": "text", "text": "é"}])
        second = flatten_content([{"text": "é", "type": "text"}])
        self.assertEqual(first, second)
        self.assertEqual(first, '[{"text":"é","type":"text"}]')

    def test_none_stays_none(self) -> None:
        self.assertIsNone(flatten_content(None))


class IterLogLinesTests(unittest.TestCase):
    def test_tracks_offsets_and_partial_tail(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "s.jsonl"
            path.write_bytes(b'{"a":1}\n\n{"b":2}\n{"c":')
            lines = list(iter_log_lines(path))

        self.assertEqual([line.text for line in lines], ['{"a":1}', '{"b":2}', '{"c":'])
        self.assertEqual([line.end_offset for line in lines], [8, 17, 22])
        self.assertEqual([line.complete for line in lines], [True, True, False])

    def test_very_long_line_is_not_truncated(self) -> None:
        content = "y" * (20 * 1024 * 1024)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "s.jsonl"
            path.write_text(_line(message={"role": "user", "content": content}) + "\n", encoding="utf-8")
            lines = list(iter_log_lines(path))

        self.assertEqual(len(lines), 1)
        self.assertTrue(lines[0].complete)
        self.assertEqual(parse_log_line(lines[0].text).message.content, content)

    def test_resumes_from_offset(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "s.jsonl"
            path.write_bytes(b'{"a":1}\n{"b":2}\n')
            lines = list(iter_log_lines(path, 8))

        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0].text, '{"b":2}')
        self.assertEqual(lines[0].end_offset, 16)


if __name__ == "__main__":
    unittest.main()
