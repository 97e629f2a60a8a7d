"""Shared helpers for simulating upstream services."""

import json

import httpx


def mock_client_factory(handler):
    """Build a client factory whose clients route every request to ``handler``."""
    transport = httpx.MockTransport(handler)

    def factory(**kwargs):
        return httpx.AsyncClient(transport=transport, **kwargs)

    return factory


class ChunkedBody(httpx.AsyncByteStream):
    """A response body that is only produced when the client iterates it."""

    def __init__(self, chunks):
        self.chunks = list(chunks)

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk


def streamed(status_code: int, chunks, headers=None) -> httpx.Response:
    """An unread response, as a real network upstream would return it."""
    return httpx.Response(status_code, headers=headers, stream=ChunkedBody(chunks))


def streamed_json(status_code: int, payload, headers=None) -> httpx.Response:
    raw = json.dumps(payload).encode("utf-8")
    middle = len(raw) // 2
    return streamed(status_code, [raw[:middle], raw[middle:]],
                    headers={"content-type": "application/json", **(headers or {})})


def sse_payloads(text: str) -> list:
    """Split an SSE body into the payloads that follow ``data: ``."""
    return [frame[len("data: "):] for frame in text.split("\n\n") if frame.startswith("data: ")]


def gemini_frame(text: str) -> bytes:
    chunk = {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}
    return f"data: {json.dumps(chunk)}\r\n\r\n".encode("utf-8")


class ScriptedUpstream:
    """Replays a fixed list of outcomes, one per upstream call.

    Each outcome is either an int status code (a streamed ``body-<n>`` for
    the n-th call), an ``httpx.Response``, or the string ``"connect-error"``.
    """

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes[len(self.requests) - 1]
        if outcome == "connect-error":
            raise httpx.ConnectError("connection refused", request=request)
        if isinstance(outcome, httpx.Response):
            return outcome
        return streamed(outcome, [b"body-", str(len(self.requests)).encode()])
