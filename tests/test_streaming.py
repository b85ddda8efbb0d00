from __future__ import annotations

from ucode.streaming import (
    ChatCompletionAccumulator,
    MessagesAccumulator,
    SSEDecoder,
    parse_event_block,
    parse_tool_args,
)


def _collect(decoder, chunks):
    events = []
    for chunk in chunks:
        events.extend(decoder.feed(chunk))
    events.extend(decoder.flush())
    return events


def test_decoder_reassembles_blocks_split_across_chunks():
    body = b'event: ping\ndata: {"a": 1}\n\ndata: {"b": 2}\n\n'
    chunks = [body[i:i + 3] for i in range(0, len(body), 3)]

    events = _collect(SSEDecoder(), chunks)

    assert [e.event for e in events] == ["ping", "message"]
    assert events[0].json() == {"a": 1}
    assert events[1].json() == {"b": 2}


def test_decoder_keeps_multibyte_characters_split_across_chunks():
    body = 'data: {"t": "héllo"}\n\n'.encode("utf-8")
    split = body.index("é".encode("utf-8")) + 1

    events = _collect(SSEDecoder(), [body[:split], body[split:]])

    assert events[0].json() == {"t": "héllo"}


def test_decoder_handles_crlf_and_unterminated_tail():
    events = _collect(SSEDecoder(), [b"data: one\r\n\r\ndata: two"])

    assert [e.data for e in events] == ["one", "two"]


def test_done_marker_and_non_json_data():
    event = parse_event_block("data: [DONE]")
    assert event.is_done
    assert event.json() is None


def test_multiple_data_lines_are_joined():
    event = parse_event_block("event: x\ndata: a\ndata: b")
    assert event.event == "x"
    assert event.data == "a\nb"


def test_parse_tool_args():
    assert parse_tool_args('{"path": "a"}') == {"path": "a"}
    assert parse_tool_args({"path": "a"}) == {"path": "a"}
    assert parse_tool_args("not json") == {}
    assert parse_tool_args("[1, 2]") == {}
    assert parse_tool_args(None) == {}


def test_chat_accumulator_merges_indexed_tool_fragments():
    acc = ChatCompletionAccumulator()
    acc.add_chunk({"choices": [{"delta": {"content": "Let me "}}]})
    acc.add_chunk({"choices": [{"delta": {"content": "look."}}]})
    acc.add_chunk({"choices": [{"delta": {"tool_calls": [
        {"index": 1, "id": "call_b", "function": {"name": "bash", "arguments": '{"command":'}},
        {"index": 0, "id": "call_a", "function": {"name": "read", "arguments": '{"path": "a.txt"}'}},
    ]}}]})
    acc.add_chunk({"choices": [{"delta": {"tool_calls": [
        {"index": 1, "function": {"arguments": ' "ls"}'}},
    ]}}]})

    result = acc.result()

    assert result.text == "Let me look."
    assert [(c.id, c.name, c.arguments) for c in result.tool_calls] == [
        ("call_a", "read", {"path": "a.txt"}),
        ("call_b", "bash", {"command": "ls"}),
    ]


def test_chat_accumulator_fills_missing_ids_and_bad_arguments():
    acc = ChatCompletionAccumulator()
    acc.add_chunk({"choices": [{"delta": {"tool_calls": [
        {"index": 0, "function": {"name": "read", "arguments": "{broken"}},
    ]}}]})

    [call] = acc.tool_calls()

    assert call.id.startswith("call_")
    assert call.arguments == {}


def test_chat_accumulator_ignores_chunks_without_choices():
    acc = ChatCompletionAccumulator()
    assert acc.add_chunk({"usage": {"total_tokens": 3}}) == ""
    assert acc.result().text == ""


def test_messages_accumulator_builds_ordered_content():
    acc = MessagesAccumulator()
    acc.start_block({"index": 0, "content_block": {"type": "text", "text": ""}})
    assert acc.add_delta({"index": 0, "delta": {"type": "text_delta", "text": "Reading"}}) == "Reading"
    acc.start_block({"index": 1, "content_block": {
        "type": "tool_use", "id": "toolu_1", "name": "read", "input": {"startLine": 1},
    }})
    acc.add_delta({"index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"path"'}})
    acc.add_delta({"index": 1, "delta": {"type": "input_json_delta", "partial_json": ': "a.txt"}'}})

    result = acc.result()

    assert result.text == "Reading"
    assert result.assistant_content == [
        {"type": "text", "text": "Reading"},
        {"type": "tool_use", "id": "toolu_1", "name": "read", "input": {"startLine": 1, "path": "a.txt"}},
    ]
    assert [(c.id, c.name) for c in result.tool_calls] == [("toolu_1", "read")]


def test_messages_accumulator_keeps_inline_input_without_deltas():
    acc = MessagesAccumulator()
    acc.start_block({"index": 0, "content_block": {
        "type": "tool_use", "name": "bash", "input": {"command": "ls"},
    }})

    [call] = acc.result().tool_calls

    assert call.arguments == {"command": "ls"}
    assert call.id.startswith("tool_")
