from chatrelay.relay.sse import DONE, SseRecord, SseRecordDecoder, parse_line

from conftest import SSE_DONE, sse_chunk


def test_parse_line_extracts_delta_content():
    record = parse_line('data: {"choices":[{"delta":{"content":"Hi"}}]}')

    assert record == SseRecord(kind="text", text="Hi")


def test_parse_line_recognises_done_sentinel():
    assert parse_line("data: [DONE]") is DONE


def test_parse_line_ignores_non_data_and_malformed_lines():
    assert parse_line("") is None
    assert parse_line(": keep-alive") is None
    assert parse_line("event: message") is None
    assert parse_line("data: {not json") is None
    assert parse_line('data: {"choices":[]}') is None
    assert parse_line('data: {"choices":[{"delta":{"role":"assistant"}}]}') is None
    assert parse_line('data: {"choices":[{"delta":{"content":""}}]}') is None


def test_parse_line_reports_in_stream_error():
    record = parse_line('data: {"error":{"message":"overloaded"}}')

    assert record is not None
    assert record.kind == "error"
    assert record.error == "overloaded"


def test_decoder_reassembles_records_split_across_chunks():
    raw = sse_chunk("Hello ") + sse_chunk("world") + SSE_DONE
    decoder = SseRecordDecoder()

    records = []
    for i in range(0, len(raw), 7):
        records.extend(decoder.feed(raw[i : i + 7]))

    assert [r.text for r in records if r.kind == "text"] == ["Hello ", "world"]
    assert records[-1] is DONE
    assert decoder.done


def test_decoder_handles_multibyte_text_split_mid_character():
    raw = 'data: {"choices":[{"delta":{"content":"héllo ✓"}}]}\n\n'.encode("utf-8")
    split = raw.index("✓".encode("utf-8")) + 1
    decoder = SseRecordDecoder()

    records = decoder.feed(raw[:split]) + decoder.feed(raw[split:])

    assert [r.text for r in records] == ["héllo ✓"]


def test_decoder_stops_after_done():
    decoder = SseRecordDecoder()

    records = decoder.feed(SSE_DONE + sse_chunk("ignored"))

    assert records == [DONE]
    assert decoder.feed(sse_chunk("late")) == []


def test_decoder_skips_malformed_records_and_continues():
    decoder = SseRecordDecoder()

    records = decoder.feed(b"data: {broken\n\n" + sse_chunk("ok"))

    assert [r.text for r in records] == ["ok"]


def test_finish_flushes_record_without_trailing_newline():
    decoder = SseRecordDecoder()
    tail = sse_chunk("last").rstrip(b"\n")

    assert decoder.feed(tail) == []
    assert [r.text for r in decoder.finish()] == ["last"]
    assert decoder.finish() == []


def test_finish_drops_truncated_record():
    decoder = SseRecordDecoder()
    decoder.feed(b'data: {"choices":[{"delta":{"cont')

    assert decoder.finish() == []
