import json

import pytest

from overseer.providers.errors import ErrorKind, ProviderError
from overseer.providers.parser import (
    StreamParser,
    TranscriptParser,
    coerce_number,
    parse_stream,
    strip_ansi,
)

STREAM = (
    '{"type":"system","subtype":"init","session_id":"ses_early"}\n'
    '{"type":"assistant","message":{"content":[{"type":"text","text":"Thinking"}]}}\n'
    '{"type":"result","subtype":"success","result":"Recursion is...",'
    '"total_cost_usd":0.002,"session_id":"ses_42","duration_ms":1234,'
    '"usage":{"input_tokens":10,"output_tokens":5,"cache_read_input_tokens":3}}\n'
)


def test_result_record_is_authoritative():
    result = parse_stream([STREAM])

    assert result.success is True
    assert result.result == "Recursion is..."
    assert result.cost == pytest.approx(0.002)
    assert result.session_id == "ses_42"
    assert result.duration_ms == 1234
    assert result.record_count == 3
    assert result.token_usage.input == 10
    assert result.token_usage.output == 5
    assert result.token_usage.cache_read == 3


@pytest.mark.parametrize("size", [1, 2, 7, 40, 113])
def test_chunking_does_not_change_result(size):
    chunks = [STREAM[index : index + size] for index in range(0, len(STREAM), size)]

    assert parse_stream(chunks) == parse_stream([STREAM])


def test_record_split_across_chunks_is_buffered():
    parser = StreamParser()
    parser.feed('{"type":"result","res')
    assert parser.record_count == 0

    parser.feed('ult":"done"}\n')

    assert parser.record_count == 1
    assert parser.finish(0).result == "done"


def test_trailing_line_without_newline_is_parsed_at_finish():
    result = parse_stream(['{"type":"result","result":"tail"}'])

    assert result.result == "tail"


def test_malformed_lines_do_not_block_result():
    stream = [
        "Loading model...\n",
        '{"type":"result","result":"ok","cost":0.5}\n',
        "{not json at all\n",
        "\n",
    ]

    result = parse_stream(stream)

    assert result.result == "ok"
    assert result.cost == 0.5


def test_zero_parsable_lines_is_parse_failure():
    with pytest.raises(ProviderError) as excinfo:
        parse_stream(["hello\n", "world\n"], provider="claude")

    assert excinfo.value.kind is ErrorKind.PARSE_FAILURE
    assert "hello" in excinfo.value.stdout


def test_empty_output_is_parse_failure():
    with pytest.raises(ProviderError) as excinfo:
        parse_stream([])

    assert excinfo.value.kind is ErrorKind.PARSE_FAILURE


def test_nonzero_exit_without_records_is_non_zero_exit():
    with pytest.raises(ProviderError) as excinfo:
        parse_stream([""], exit_code=2, stderr="rate limited")

    assert excinfo.value.kind is ErrorKind.NON_ZERO_EXIT
    assert excinfo.value.exit_code == 2
    assert excinfo.value.stderr == "rate limited"


def test_nonzero_exit_wins_over_result_record():
    with pytest.raises(ProviderError) as excinfo:
        parse_stream(['{"type":"result","result":"partial"}\n'], exit_code=1)

    assert excinfo.value.kind is ErrorKind.NON_ZERO_EXIT
    assert "partial" in excinfo.value.partial_output


def test_missing_result_falls_back_to_last_line():
    stream = [
        '{"type":"system","session_id":"ses_1"}\n',
        '{"type":"tool_use","name":"bash"}\n',
    ]

    result = parse_stream(stream)

    assert result.success is True
    assert result.result == '{"type":"tool_use","name":"bash"}'
    assert result.session_id == "ses_1"
    assert result.cost == 0.0


def test_missing_result_prefers_assistant_text():
    stream = [
        '{"type":"assistant","message":{"content":[{"type":"text","text":"Partial answer"}]}}\n',
    ]

    assert parse_stream(stream).result == "Partial answer"


def test_non_numeric_metadata_defaults_to_zero():
    record = {"type": "result", "result": "fine", "cost": "n/a", "duration_ms": None}

    result = parse_stream([json.dumps(record) + "\n"])

    assert result.result == "fine"
    assert result.cost == 0.0
    assert result.duration_ms == 0


def test_later_records_do_not_override_result():
    stream = [
        '{"type":"result","result":"final","session_id":"ses_a"}\n',
        '{"type":"assistant","message":{"content":"extra chatter"},"session_id":"ses_b"}\n',
    ]

    result = parse_stream(stream)

    assert result.result == "final"
    assert result.session_id == "ses_a"


def test_session_falls_back_to_side_channel():
    stream = [
        '{"type":"system","session_id":"ses_side"}\n',
        '{"type":"result","result":"ok"}\n',
    ]

    assert parse_stream(stream).session_id == "ses_side"


def test_multiple_records_on_one_line():
    line = '{"type":"system","session_id":"s1"}{"type":"result","result":"joined"} trailing\n'

    result = parse_stream([line])

    assert result.record_count == 2
    assert result.result == "joined"
    assert result.session_id == "s1"


def test_pretty_printed_blob_is_parsed_as_a_whole():
    blob = json.dumps({"type": "result", "result": "blob", "cost": 0.1}, indent=2)

    result = parse_stream([blob])

    assert result.result == "blob"
    assert result.record_count == 1


def test_json_array_of_records():
    blob = json.dumps(
        [
            {"type": "system", "session_id": "arr"},
            {"type": "result", "result": "from array", "total_cost_usd": 0.3},
        ]
    )

    result = parse_stream([blob])

    assert result.result == "from array"
    assert result.session_id == "arr"
    assert result.cost == pytest.approx(0.3)


def test_error_result_marks_failure():
    record = {"type": "result", "subtype": "error_max_turns", "is_error": True, "result": ""}

    result = parse_stream([json.dumps(record) + "\n"])

    assert result.success is False


def test_coerce_number_rejects_junk():
    assert coerce_number("1.5") == 1.5
    assert coerce_number(True) == 0.0
    assert coerce_number(float("nan")) == 0.0
    assert coerce_number({"a": 1}) == 0.0


def test_transcript_parser_captures_session_and_becomes_ready():
    import re

    parser = TranscriptParser(re.compile(r"session id:\s*(?P<session>[\w-]+)"), provider="codex")
    parser.feed("\x1b[1mOpenAI Codex\x1b[0m\r\n")
    assert parser.ready is False

    parser.feed("session id: 0199-abc\r\nworking...\r\n")

    assert parser.ready is True
    assert parser.session_id == "0199-abc"
    result = parser.finish(0)
    assert "OpenAI Codex" in result.result
    assert "\x1b" not in result.result


def test_transcript_parser_preset_session_ready_on_output():
    parser = TranscriptParser(session_id="uuid-1", ready_on_output=True)
    parser.feed("   ")
    assert parser.ready is False
    parser.feed("hello")

    assert parser.ready is True
    assert parser.finish(0).session_id == "uuid-1"


def test_transcript_parser_nonzero_exit():
    parser = TranscriptParser()
    parser.feed("boom")

    with pytest.raises(ProviderError) as excinfo:
        parser.finish(3)

    assert excinfo.value.kind is ErrorKind.NON_ZERO_EXIT
    assert excinfo.value.stdout == "boom"


def test_strip_ansi_removes_colour_and_osc():
    assert strip_ansi("\x1b[31mred\x1b[0m \x1b]0;title\x07done\r\n") == "red done\n"


def test_deeply_nested_line_is_skipped():
    parser = StreamParser()
    parser.feed("[" * 100000 + "\n")
    parser.feed('{"type":"result","result":"still here"}\n')

    assert parser.finish(0).result == "still here"


def test_transcript_escape_split_across_reads():
    parser = TranscriptParser()
    parser.feed("ab\x1b[3")
    parser.feed("1mcd\x1b]0;ti")
    parser.feed("tle\x07ef\r")
    parser.feed("\ngh\r")

    assert parser.raw_output == "abcdef\ngh\n"
    assert parser.finish(0).result == "abcdef\ngh"


def test_transcript_unterminated_escape_is_flushed_at_finish():
    parser = TranscriptParser()
    parser.feed("done\x1b[")

    assert parser.finish(0).result == "done"
