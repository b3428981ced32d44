"""Tests for the stream-json event parser."""

import json

import pytest

from ralph.core.budget import BudgetTracker
from ralph.core.models import ControlSignal, EventKind, Sigil
from ralph.core.parser import StreamParser, detect_sigil, parse_event_line
from ralph.core.signals import SignalChannel


@pytest.fixture
def channel() -> SignalChannel:
    return SignalChannel()


@pytest.fixture
def parser(channel, state) -> StreamParser:
    return StreamParser(channel=channel, state=state)


def drain(channel: SignalChannel) -> list:
    messages = []
    while (message := channel.receive(timeout=0.01)) is not None:
        messages.append(message)
    return messages


# =============================================================================
# Record Normalization
# =============================================================================


class TestParseEventLine:
    """Tests for turning one line into normalized events."""

    def test_session_start(self, records):
        events = parse_event_line(records.init("abc", "sonnet"))
        assert len(events) == 1
        assert events[0].kind == EventKind.SESSION_START
        assert events[0].session_id == "abc"
        assert events[0].model == "sonnet"

    def test_assistant_text_with_usage(self, records):
        events = parse_event_line(records.text("hello", output_tokens=7, cache_read=900))
        assert events[0].kind == EventKind.ASSISTANT_TEXT
        assert events[0].text == "hello"
        assert events[0].output_tokens == 7
        assert events[0].cache_read_tokens == 900

    def test_tool_invocation(self, records):
        events = parse_event_line(records.write("src/a.py", "print(1)", tool_id="t9"))
        event = events[0]
        assert event.kind == EventKind.TOOL_INVOCATION
        assert event.tool_name == "Write"
        assert event.tool_id == "t9"
        assert event.path == "src/a.py"
        assert event.tool_input["content"] == "print(1)"

    def test_bash_command_extracted(self, records):
        event = parse_event_line(records.bash("npm test"))[0]
        assert event.command == "npm test"

    def test_tool_result_error_exit_code(self, records):
        line = records.tool_result("t1", "Exit code 2\nboom", is_error=True)
        event = parse_event_line(line)[0]
        assert event.kind == EventKind.TOOL_RESULT
        assert event.is_error
        assert event.exit_code == 2
        assert event.tool_id == "t1"

    def test_file_read_payload(self, records):
        event = parse_event_line(records.file_read("README.md", "abc\ndef"))[0]
        assert event.path == "README.md"
        assert event.content_chars == 7
        assert event.tool_input["numLines"] == 2

    def test_session_end(self, records):
        event = parse_event_line(records.result(duration_ms=5000, cost=0.25))[0]
        assert event.kind == EventKind.SESSION_END
        assert event.duration_ms == 5000
        assert event.cost_usd == 0.25

    def test_multiple_content_items(self):
        line = json.dumps(
            {
                "type": "assistant",
                "message": {
                    "content": [
                        {"type": "text", "text": "Let me check"},
                        {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a"}},
                    ],
                    "usage": {"output_tokens": 3},
                },
            }
        )
        events = parse_event_line(line)
        assert [e.kind for e in events] == [EventKind.ASSISTANT_TEXT, EventKind.TOOL_INVOCATION]
        assert events[0].output_tokens == 3
        assert events[1].output_tokens == 0

    def test_usage_only_record(self):
        line = json.dumps({"type": "assistant", "message": {"content": [], "usage": {"output_tokens": 4}}})
        events = parse_event_line(line)
        assert len(events) == 1
        assert events[0].text is None
        assert events[0].output_tokens == 4

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "not json at all",
            '{"type": "assistant", "message": ',
            "[1, 2, 3]",
            '{"type": "unknown"}',
            '{"type": "system", "subtype": "other"}',
            '{"type": "assistant", "message": "oops"}',
            '{"type": "assistant", "message": {"content": [42, null]}}',
        ],
    )
    def test_malformed_dropped(self, line):
        """Malformed input yields no events and never raises."""
        assert parse_event_line(line) == []


class TestDetectSigil:
    """Tests for sigil detection in assistant text."""

    @pytest.mark.parametrize(
        "text,sigil,criterion",
        [
            ("All done <ralph>COMPLETE</ralph>", Sigil.COMPLETE, None),
            ("<ralph>GUTTER</ralph>", Sigil.GUTTER, None),
            ("verified: <qc>PASS</qc>", Sigil.QC_PASS, None),
            ("<qc>FAIL</qc>", Sigil.QC_FAIL, None),
            ("<qc>FAIL:3</qc>", Sigil.QC_FAIL, 3),
        ],
    )
    def test_detects(self, text, sigil, criterion):
        match = detect_sigil(text)
        assert match.sigil == sigil
        assert match.criterion == criterion

    def test_earliest_match_wins(self):
        match = detect_sigil("<ralph>GUTTER</ralph> then <ralph>COMPLETE</ralph>")
        assert match.sigil == Sigil.GUTTER

    @pytest.mark.parametrize(
        "text", [None, "", "COMPLETE", "<ralph>DONE</ralph>", "<qc>MAYBE</qc>", "<ralph>complete</ralph>"]
    )
    def test_no_sigil(self, text):
        assert detect_sigil(text) is None


# =============================================================================
# Stateful Parser
# =============================================================================


class TestStreamParserSignals:
    """Tests for signal emission from the stream."""

    def test_complete_sigil(self, parser, channel, records):
        parser.feed(records.text("Done. <ralph>COMPLETE</ralph>"))
        messages = drain(channel)
        assert [m.signal for m in messages] == [ControlSignal.COMPLETE]
        assert parser.stopped

    def test_gutter_sigil(self, parser, channel, records):
        parser.feed(records.text("<ralph>GUTTER</ralph>"))
        assert channel.terminal.signal == ControlSignal.GUTTER

    def test_qc_sigil_logged_only_in_normal_mode(self, parser, channel, state, records):
        parser.feed(records.text("<qc>PASS</qc>"))
        assert drain(channel) == []
        assert "QC PASS" in state.activity_log.read_text()

    def test_verification_mode_maps_verdict(self, channel, state, records):
        parser = StreamParser(channel=channel, state=state, verification=True)
        parser.feed(records.text("Criterion 2 missing <qc>FAIL:2</qc>"))
        message = channel.terminal
        assert message.signal == ControlSignal.COMPLETE
        assert not message.verdict.passed
        assert message.verdict.criterion == 2

    def test_verification_mode_ignores_complete(self, channel, state, records):
        parser = StreamParser(channel=channel, state=state, verification=True)
        parser.feed(records.text("<ralph>COMPLETE</ralph>"))
        assert channel.terminal is None

    def test_nothing_after_terminal(self, parser, channel, records):
        parser.feed(records.text("<ralph>COMPLETE</ralph>"))
        before = parser.tracker.context_tokens
        assert parser.feed(records.text("more", output_tokens=5000)) == []
        assert parser.tracker.context_tokens == before


class TestStreamParserBudget:
    """Tests for budget accounting through the parser."""

    def test_warn_once_then_rotate(self, channel, state, records):
        tracker = BudgetTracker(warn_threshold=1000, rotate_threshold=2000)
        parser = StreamParser(channel=channel, state=state, tracker=tracker)
        parser.feed(records.text("a", cache_read=1200))
        parser.feed(records.text("b", cache_read=1300))
        parser.feed(records.text("c", cache_read=2100))
        signals = [m.signal for m in drain(channel)]
        assert signals == [ControlSignal.WARN, ControlSignal.ROTATE]

    def test_rotate_stops_accumulation(self, channel, state, records):
        tracker = BudgetTracker(warn_threshold=1000, rotate_threshold=2000)
        parser = StreamParser(channel=channel, state=state, tracker=tracker)
        parser.feed(records.text("x", cache_read=2500))
        assert channel.terminal.signal == ControlSignal.ROTATE
        parser.feed(records.text("y", output_tokens=999))
        parser.feed(records.file_read("big.txt", "z" * 10_000))
        assert tracker.budget.cumulative_output_tokens == 0
        assert tracker.budget.bytes_read == 0

    def test_file_read_counts_bytes(self, parser, records, state):
        parser.feed(records.file_read("notes.md", "x" * 2048))
        assert parser.tracker.budget.bytes_read == 2048
        assert "READ notes.md (1 lines, ~2.0KB)" in state.activity_log.read_text()

    def test_write_counts_bytes(self, parser, records):
        parser.feed(records.write("a.py", "abcdef"))
        assert parser.tracker.budget.bytes_written == 6

    def test_assistant_text_counts_chars(self, parser, records):
        parser.feed(records.text("12345"))
        assert parser.tracker.budget.assistant_chars == 5


class TestStreamParserStuck:
    """Tests for blocking-command and gutter detection in the parser."""

    def test_declared_blocking_command(self, parser, channel, state, records):
        parser.feed(records.bash("npm init"))
        message = channel.terminal
        assert message.signal == ControlSignal.GUTTER
        assert "npm init" in message.detail

        errors = state.errors_log.read_text()
        assert "## BLOCKED: Interactive Command" in errors
        assert "npm init -y" in errors
        assert "`npm init` blocks waiting for input" in state.read_guardrails()

    def test_safe_command_not_blocked(self, parser, channel, records):
        parser.feed(records.bash("npm init -y"))
        assert channel.terminal is None

    def test_repeated_failure_trips_on_third(self, parser, channel, records):
        for i in range(2):
            parser.feed(records.bash("npm test", tool_id=f"t{i}"))
            parser.feed(records.tool_result(f"t{i}", "Exit code 1\nFAIL", is_error=True))
        assert channel.terminal is None

        parser.feed(records.bash("npm test", tool_id="t2"))
        parser.feed(records.tool_result("t2", "Exit code 1\nFAIL", is_error=True))
        assert channel.terminal.signal == ControlSignal.GUTTER
        assert "failed 3x" in channel.terminal.detail

    def test_failure_matched_by_tool_id(self, parser, state, records):
        parser.feed(records.bash("make build", tool_id="a"))
        parser.feed(records.bash("make test", tool_id="b"))
        parser.feed(records.tool_result("a", "Exit code 2", is_error=True))
        assert parser.detector.failures.count("make build") == 1
        assert parser.detector.failures.count("make test") == 0
        assert "SHELL FAIL: make build → exit 2 (attempt 1)" in state.errors_log.read_text()

    def test_successful_result_not_a_failure(self, parser, records):
        parser.feed(records.bash("npm test", tool_id="t"))
        parser.feed(records.tool_result("t", "all passed"))
        assert len(parser.detector.failures) == 0

    def test_thrashing(self, parser, channel, records):
        for i in range(4):
            parser.feed(records.write("src/app.py", tool_id=f"w{i}"))
        assert channel.terminal is None
        parser.feed(records.write("src/app.py", tool_id="w4"))
        assert channel.terminal.signal == ControlSignal.GUTTER


class TestStreamParserLogging:
    """Tests for activity-log output and stream lifecycle."""

    def test_session_id_captured(self, parser, records):
        parser.feed(records.init("sess-42"))
        assert parser.session_id == "sess-42"

    def test_activity_lines(self, parser, state, records):
        parser.write_banner()
        parser.feed(records.init())
        parser.feed(records.tool_use("Grep", {"pattern": "foo"}))
        parser.feed(records.result())
        log = state.activity_log.read_text()
        assert "Ralph Session" in log
        assert "🚀 SESSION START: model=opus" in log
        assert "🔍 TOOL Grep (started)" in log
        assert "🏁 SESSION END" in log

    def test_token_status_interval(self, channel, state, records):
        now = {"t": 0.0}
        parser = StreamParser(channel=channel, state=state, clock=lambda: now["t"])
        parser.feed(records.text("a"))
        assert "TOKENS:" not in state.activity_log.read_text()
        now["t"] = 31.0
        parser.feed(records.text("b"))
        assert "TOKENS:" in state.activity_log.read_text()

    def test_consume_marks_end_of_stream(self, parser, channel, records, state):
        parser.consume(iter([records.init(), "garbage", records.result()]))
        messages = drain(channel)
        assert messages[-1].end_of_stream
        assert "TOKENS:" in state.activity_log.read_text()

    def test_consume_drains_after_terminal(self, parser, channel, records):
        lines = [records.text("<ralph>COMPLETE</ralph>"), records.text("ignored", output_tokens=10)]
        parser.consume(iter(lines))
        assert [m.signal for m in drain(channel)] == [ControlSignal.COMPLETE]
        assert parser.tracker.budget.cumulative_output_tokens == 0
