"""
Tests for NDJSON framing.
"""

import json

import pytest

from mcpchat.models import ResponseEvent
from mcpchat.ndjson import decode_stream, encode_line, encode_stream


async def chunks_of(data, size):
    for i in range(0, len(data), size):
        yield data[i : i + size]


async def collect(iterator):
    return [item async for item in iterator]


class TestEncode:
    def test_one_line_per_object(self):
        line = encode_line({"type": "start", "data": {"responseId": "r1"}})
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        assert json.loads(line) == {"type": "start", "data": {"responseId": "r1"}}

    def test_event_objects_use_to_dict(self):
        line = encode_line(ResponseEvent.output_text_delta("m1", "hi"))
        assert json.loads(line) == {
            "type": "output_text_delta",
            "data": {"itemId": "m1", "delta": "hi"},
        }

    def test_non_ascii_is_written_as_utf8(self):
        line = encode_line({"text": "héllo ✓"})
        assert "héllo ✓".encode("utf-8") in line

    def test_embedded_newlines_are_escaped(self):
        line = encode_line({"text": "a\nb"})
        assert line.count(b"\n") == 1

    @pytest.mark.asyncio
    async def test_encode_stream_is_lazy(self):
        seen = []

        async def source():
            for i in range(3):
                seen.append(i)
                yield {"n": i}

        stream = encode_stream(source())
        first = await stream.__anext__()
        assert json.loads(first) == {"n": 0}
        assert seen == [0]
        rest = await collect(stream)
        assert len(rest) == 2


class TestDecode:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [1, 2, 3, 5, 7, 64])
    async def test_arbitrary_chunk_boundaries(self, size):
        objects = [
            {"type": "output_text_delta", "data": {"delta": "naïve ☃ 日本語"}},
            {"type": "done", "data": {"output": None}},
            {"emoji": "🙂"},
        ]
        data = b"".join(encode_line(o) for o in objects)

        decoded = await collect(decode_stream(chunks_of(data, size)))

        assert decoded == objects

    @pytest.mark.asyncio
    async def test_text_chunks(self):
        decoded = await collect(decode_stream(chunks_of('{"a": 1}\n{"b"', 4)))
        assert decoded == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_final_line_without_newline(self):
        decoded = await collect(decode_stream(chunks_of(b'{"a": 1}\n{"b": 2}', 3)))
        assert decoded == [{"a": 1}, {"b": 2}]

    @pytest.mark.asyncio
    async def test_undecodable_line_is_skipped(self):
        data = b'{"a": 1}\nnot json at all\n{"b": 2}\n'
        decoded = await collect(decode_stream(chunks_of(data, 5)))
        assert decoded == [{"a": 1}, {"b": 2}]

    @pytest.mark.asyncio
    async def test_blank_lines_are_ignored(self):
        decoded = await collect(decode_stream(chunks_of(b'\n\n{"a": 1}\n\n', 2)))
        assert decoded == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_null_values_survive(self):
        decoded = await collect(decode_stream(chunks_of(encode_line({"result": None}), 4)))
        assert decoded == [{"result": None}]

    @pytest.mark.asyncio
    async def test_empty_stream(self):
        assert await collect(decode_stream(chunks_of(b"", 1))) == []
