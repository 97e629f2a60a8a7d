"""
Unit tests for the incremental Gemini SSE → OpenAI SSE transcoder.

Run:
    python -m pytest tests/test_stream.py -v
"""

import json

from gemini_relay.gemini import StreamTranscoder

from .helpers import gemini_frame, sse_payloads


def run_transcoder(reads, transcoder=None):
    transcoder = transcoder or StreamTranscoder("gemini-1.5-flash")
    events = []
    for data in reads:
        events.extend(transcoder.feed(data))
    events.extend(transcoder.finish())
    return sse_payloads("".join(events))


def split_every(data: bytes, size: int):
    return [data[i:i + size] for i in range(0, len(data), size)]


class TestStreamTranscoder:
    """Frame reassembly and the terminal chunk / [DONE] invariant."""

    def test_n_frames_yield_n_deltas_and_one_terminator(self):
        stream = b"".join(gemini_frame(t) for t in ("Hel", "lo", "!"))
        payloads = run_transcoder([stream])
        assert payloads[-1] == "[DONE]"
        chunks = [json.loads(p) for p in payloads[:-1]]
        assert [c["choices"][0]["delta"].get("content") for c in chunks[:-1]] == ["Hel", "lo", "!"]
        assert all(c["choices"][0]["finish_reason"] is None for c in chunks[:-1])
        assert chunks[-1]["choices"][0] == {"index": 0, "delta": {}, "finish_reason": "stop"}
        assert payloads.count("[DONE]") == 1

    def test_transport_chunking_does_not_matter(self):
        """Any split of the byte stream reassembles to the same events."""
        stream = b"".join(gemini_frame(t) for t in ("alpha", "beta", "gamma"))
        expected = [p for p in run_transcoder([stream]) if p != "[DONE]"]
        expected_contents = [json.loads(p)["choices"][0]["delta"] for p in expected]
        for size in (1, 2, 3, 7, 64):
            payloads = run_transcoder(split_every(stream, size))
            assert payloads[-1] == "[DONE]"
            contents = [json.loads(p)["choices"][0]["delta"] for p in payloads[:-1]]
            assert contents == expected_contents

    def test_empty_stream_still_terminates(self):
        payloads = run_transcoder([])
        assert len(payloads) == 2
        assert json.loads(payloads[0])["choices"][0]["finish_reason"] == "stop"
        assert payloads[1] == "[DONE]"

    def test_malformed_frame_is_skipped(self):
        stream = gemini_frame("before") + b"data: {not json\n\n" + gemini_frame("after")
        payloads = run_transcoder([stream])
        contents = [json.loads(p)["choices"][0]["delta"].get("content") for p in payloads[:-1]]
        assert contents == ["before", "after", None]

    def test_empty_text_emits_no_delta(self):
        final = {"candidates": [{"content": {"parts": [{"text": ""}]}, "finishReason": "STOP"}],
                 "usageMetadata": {"totalTokenCount": 3}}
        stream = gemini_frame("x") + f"data: {json.dumps(final)}\n\n".encode()
        payloads = run_transcoder([stream])
        assert len(payloads) == 3

    def test_id_and_created_fixed_for_whole_stream(self):
        transcoder = StreamTranscoder("gemini-pro", stream_id="chatcmpl-fixed", created=1700000000)
        payloads = run_transcoder([gemini_frame("a"), gemini_frame("b")], transcoder)
        chunks = [json.loads(p) for p in payloads[:-1]]
        assert {c["id"] for c in chunks} == {"chatcmpl-fixed"}
        assert {c["created"] for c in chunks} == {1700000000}
        assert {c["object"] for c in chunks} == {"chat.completion.chunk"}
        assert {c["model"] for c in chunks} == {"gemini-pro"}

    def test_generated_id_is_shared(self):
        payloads = run_transcoder([gemini_frame("a"), gemini_frame("b")])
        assert len({json.loads(p)["id"] for p in payloads[:-1]}) == 1

    def test_multibyte_character_split_across_reads(self):
        chunk = {"candidates": [{"content": {"parts": [{"text": "你好"}]}}]}
        stream = f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n".encode("utf-8")
        cut = stream.index("你".encode("utf-8")) + 1
        payloads = run_transcoder([stream[:cut], stream[cut:]])
        assert json.loads(payloads[0])["choices"][0]["delta"]["content"] == "你好"

    def test_lf_delimited_frames(self):
        stream = b'data: {"candidates":[{"content":{"parts":[{"text":"lf"}]}}]}\n\n'
        payloads = run_transcoder([stream])
        assert json.loads(payloads[0])["choices"][0]["delta"]["content"] == "lf"

    def test_trailing_frame_without_blank_line(self):
        stream = gemini_frame("one") + b'data: {"candidates":[{"content":{"parts":[{"text":"two"}]}}]}'
        payloads = run_transcoder([stream])
        contents = [json.loads(p)["choices"][0]["delta"].get("content") for p in payloads[:-1]]
        assert contents == ["one", "two", None]

    def test_events_are_compact_sse(self):
        transcoder = StreamTranscoder("m")
        events = transcoder.feed(gemini_frame("hi")) + transcoder.finish()
        assert all(e.startswith("data: ") and e.endswith("\n\n") for e in events)
        assert ", " not in events[0] and ": " not in events[0][len("data: "):]
        assert events[-1] == "data: [DONE]\n\n"

    def test_finish_is_idempotent(self):
        transcoder = StreamTranscoder("m")
        first = transcoder.finish()
        assert transcoder.finish() == []
        assert transcoder.feed(gemini_frame("late")) == []
        assert first[-1] == "data: [DONE]\n\n"
