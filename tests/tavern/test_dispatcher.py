"""Tests for GenerationDispatcher routing."""

from types import SimpleNamespace

import pytest

from tavern.backends.base import BackendResponse
from tavern.dispatcher import GenerationDispatcher
from tavern.errors import BackendError, TransportError, UnknownBackendError


class TestRouting:
    def test_register_normalizes_aliases(self, scripted_adapter):
        adapter = scripted_adapter()
        dispatcher = GenerationDispatcher({"grok": adapter})
        assert dispatcher.adapter("xai") is adapter
        assert dispatcher.adapter("GROK") is adapter

    def test_unknown_backend(self):
        with pytest.raises(UnknownBackendError, match="nope"):
            GenerationDispatcher().adapter("nope")

    def test_build_payload_goes_to_the_adapter(self, scripted_adapter):
        dispatcher = GenerationDispatcher({"fake": scripted_adapter()})
        prompt = SimpleNamespace(prompt="p", stop_sequences=["\nBob:"])
        assert dispatcher.build_payload("fake", prompt, {"n": 1}) == {"prompt": "p", "params": {"n": 1}, "stop": ["\nBob:"]}


class TestDispatch:
    @pytest.mark.asyncio
    async def test_buffered(self, scripted_adapter):
        dispatcher = GenerationDispatcher({"fake": scripted_adapter([{"text": "hi", "swipes": ["alt"]}])})
        response = await dispatcher.dispatch("fake", {"prompt": "p"})
        assert isinstance(response, BackendResponse)
        assert response.text == "hi"
        assert response.swipes == ["alt"]

    @pytest.mark.asyncio
    async def test_streaming_returns_the_chunk_stream(self, scripted_adapter):
        dispatcher = GenerationDispatcher({"fake": scripted_adapter([{"chunks": ["a", "ab"]}])})
        stream = await dispatcher.dispatch("fake", {}, streaming=True)
        assert [chunk.text async for chunk in stream] == ["a", "ab"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [TransportError("down"), BackendError("rate limited", status_code=429)])
    async def test_errors_are_not_retried(self, scripted_adapter, error):
        adapter = scripted_adapter([error, {"text": "never"}])
        dispatcher = GenerationDispatcher({"fake": adapter})
        with pytest.raises(type(error)):
            await dispatcher.dispatch("fake", {"prompt": "p"})
        assert len(adapter.payloads) == 1

    @pytest.mark.asyncio
    async def test_aclose_closes_every_adapter(self, scripted_adapter):
        first, second = scripted_adapter(), scripted_adapter()
        dispatcher = GenerationDispatcher({"fake": first, "other": second})
        await dispatcher.aclose()
        assert first.closed and second.closed
