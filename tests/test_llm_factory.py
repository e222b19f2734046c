import types

import httpx
import openai
import pytest

from aifunc.errors import ConfigurationError, InvocationError
from aifunc.llm_client import AsyncClaudeLLMClient, AsyncOpenAILLMClient
from aifunc.llm_factory import get_async_llm_client


class FakeOpenAIResp:
    def __init__(self, content="ok"):
        self.choices = [types.SimpleNamespace(message=types.SimpleNamespace(content=content))]
        self.usage = None


class FakeChunk:
    def __init__(self, content):
        self.choices = [types.SimpleNamespace(delta=types.SimpleNamespace(content=content))]


class FakeChunks:
    def __init__(self, tokens):
        self._tokens = list(tokens)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._tokens:
            raise StopAsyncIteration
        return FakeChunk(self._tokens.pop(0))


def fake_async_openai(calls, *, content="ok", tokens=(), error=None):
    class FakeCompletions:
        async def create(self, **kwargs):
            calls.append(kwargs)
            if error is not None:
                raise error
            if kwargs.get("stream"):
                return FakeChunks(tokens)
            return FakeOpenAIResp(content)

    class FakeAsyncOpenAI:
        def __init__(self, *args, **kwargs):
            calls.append({"init": kwargs})
            self.chat = types.SimpleNamespace(completions=FakeCompletions())

    return FakeAsyncOpenAI


@pytest.mark.parametrize(
    "provider,expected",
    [
        ("openai", AsyncOpenAILLMClient),
        ("claude", AsyncClaudeLLMClient),
        ("anthropic", AsyncClaudeLLMClient),
    ],
)
def test_factory_returns_expected_clients(monkeypatch, provider, expected):
    monkeypatch.setenv("LLM_PROVIDER", provider)
    assert isinstance(get_async_llm_client("sk-test"), expected)


def test_factory_prefers_explicit_provider(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "claude")
    assert isinstance(get_async_llm_client("sk-test", provider="openai"), AsyncOpenAILLMClient)


def test_factory_unknown_provider_raises(monkeypatch):
    monkeypatch.setenv("LLM_PROVIDER", "does-not-exist")
    with pytest.raises(ConfigurationError):
        get_async_llm_client("sk-test")


def test_factory_passes_endpoint_and_timeout(monkeypatch):
    calls: list = []
    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "30")
    monkeypatch.setattr("aifunc.llm_client.AsyncOpenAI", fake_async_openai(calls))
    get_async_llm_client("sk-test", base_url="http://localhost:8080/v1")
    init = calls[0]["init"]
    assert init["base_url"] == "http://localhost:8080/v1"
    assert init["api_key"] == "sk-test"


@pytest.mark.asyncio
async def test_openai_chat_passes_sampling(monkeypatch):
    calls: list = []
    monkeypatch.setattr("aifunc.llm_client.AsyncOpenAI", fake_async_openai(calls, content="hello"))
    llm = get_async_llm_client("sk-test", provider="openai")
    out = await llm.chat(
        messages=[{"role": "user", "content": "hi"}],
        model="gpt-3.5-turbo",
        temperature=0.3,
        top_p=0.9,
        presence_penalty=None,
    )
    assert out == "hello"
    request = calls[-1]
    assert request["temperature"] == 0.3
    assert request["top_p"] == 0.9
    assert "presence_penalty" not in request


@pytest.mark.asyncio
async def test_gpt5_temperature_stripped(monkeypatch):
    calls: list = []
    monkeypatch.setattr("aifunc.llm_client.AsyncOpenAI", fake_async_openai(calls))
    llm = get_async_llm_client("sk-test", provider="openai")
    out = await llm.chat(messages=[{"role": "user", "content": "hi"}], model="gpt-5", temperature=0.3, max_tokens=10)
    assert out == "ok"
    request = calls[-1]
    assert request.get("temperature") is None  # stripped for gpt-5
    assert request["max_completion_tokens"] == 10


@pytest.mark.asyncio
async def test_openai_errors_become_invocation_errors_without_the_key(monkeypatch):
    calls: list = []
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    error = openai.APIConnectionError(message="connection failed for sk-secret", request=request)
    monkeypatch.setattr("aifunc.llm_client.AsyncOpenAI", fake_async_openai(calls, error=error))
    llm = get_async_llm_client("sk-secret", provider="openai")
    with pytest.raises(InvocationError) as exc:
        await llm.chat(messages=[{"role": "user", "content": "hi"}], model="gpt-3.5-turbo")
    assert "sk-secret" not in str(exc.value)
    assert exc.value.__cause__ is error


@pytest.mark.asyncio
async def test_openai_stream_yields_tokens(monkeypatch):
    calls: list = []
    monkeypatch.setattr(
        "aifunc.llm_client.AsyncOpenAI", fake_async_openai(calls, tokens=["He", None, "llo"])
    )
    llm = get_async_llm_client("sk-test", provider="openai")
    tokens = [t async for t in llm.stream([{"role": "user", "content": "hi"}], "gpt-3.5-turbo", 0.5)]
    assert tokens == ["He", "llo"]
    assert calls[-1]["stream"] is True


@pytest.mark.asyncio
async def test_claude_client(monkeypatch):
    captured = {}

    class FakeResp:
        def __init__(self):
            self.content = [types.SimpleNamespace(text="hello")]  # anthropic message format
            self.usage = None

    class FakeMessages:
        async def create(self, **kwargs):
            captured.update(kwargs)
            return FakeResp()

    class FakeAsyncAnthropic:
        def __init__(self, *args, **kwargs):
            self.messages = FakeMessages()

    monkeypatch.setattr("aifunc.llm_client.AsyncAnthropic", FakeAsyncAnthropic)

    llm = get_async_llm_client("sk-ant", provider="claude")
    out = await llm.chat(
        messages=[{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}],
        model="claude-3-haiku",
        temperature=1.5,
        frequency_penalty=0.5,
    )
    assert out == "hello"
    assert captured["system"] == "be brief"
    assert captured["messages"] == [{"role": "user", "content": "hi"}]
    assert captured["temperature"] == 1.0
    assert "frequency_penalty" not in captured
    assert captured["max_tokens"] == 1024
