import json
from typing import Any

import pytest

from aifunc import (
    AIFunction,
    ConfigurationError,
    FunctionOptions,
    FunctionResult,
    InvocationError,
    SchemaError,
    TokenStream,
    UnrecoverableFormatError,
    create_instance,
    create_instance_from_config,
)
from aifunc.schema import SchemaKind, SchemaNode


class FakeAsyncLLM:
    """Scripted chat replies (exceptions are raised) and streamed tokens."""

    def __init__(self, replies: list[Any] | None = None, tokens: list[str] | None = None):
        self.replies = list(replies or [])
        self.tokens = list(tokens or [])
        self.calls: list[dict[str, Any]] = []
        self.stream_calls: list[dict[str, Any]] = []

    async def chat(self, messages, model, temperature=None, **kwargs) -> str:  # noqa: ANN001
        self.calls.append(
            {"messages": messages, "model": model, "temperature": temperature, "kwargs": kwargs}
        )
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def stream(self, messages, model, temperature=None, **kwargs):  # noqa: ANN001
        self.stream_calls.append(
            {"messages": messages, "model": model, "temperature": temperature, "kwargs": kwargs}
        )
        for token in self.tokens:
            yield token


def _instance(llm: FakeAsyncLLM, **kwargs: Any) -> AIFunction:
    return create_instance("sk-test", llm=llm, model="test-model", retry_backoff=0, **kwargs)


CAPITAL = {
    "function_name": "capital_of",
    "args": ["Italy"],
    "description": "Return the capital city of the given country.",
    "func_return": {"type": "string"},
}


@pytest.mark.parametrize("bad_key", [None, "", "   ", 42])
def test_create_instance_requires_string_key(bad_key):
    with pytest.raises(ConfigurationError):
        create_instance(bad_key, llm=FakeAsyncLLM())


def test_create_instance_rejects_unknown_provider():
    with pytest.raises(ConfigurationError):
        create_instance("sk-test", provider="nope")


def test_create_instance_from_config_needs_a_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        create_instance_from_config()


def test_create_instance_from_config_reads_settings(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    monkeypatch.setenv("LLM_MODEL", "gpt-4o-mini")
    ai = create_instance_from_config(llm=FakeAsyncLLM())
    assert ai.default_model == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_scalar_return_is_unwrapped_from_carrier():
    llm = FakeAsyncLLM(['{"returnData":"Rome"}'])
    assert await _instance(llm)(CAPITAL) == "Rome"

    call = llm.calls[0]
    assert call["model"] == "test-model"
    assert call["temperature"] == 0.8
    assert call["kwargs"]["req_id"]
    assert call["messages"][1]["content"] == 'a="Italy"'


@pytest.mark.asyncio
async def test_camel_case_options_and_keywords():
    llm = FakeAsyncLLM(['{"names": ["Ada", "Alan"], "count": "2"}'])
    ai = _instance(llm)
    value = await ai(
        {
            "functionName": "pioneers",
            "funcReturn": {"names": {"type": "string[]"}, "count": {"type": "number"}},
            "blockHijack": True,
            "promptVars": {"field": "computing"},
        },
        description="List pioneers of ${field}.",
        max_tokens=50,
        temperature=0.2,
    )
    assert value == {"names": ["Ada", "Alan"], "count": 2}

    call = llm.calls[0]
    assert call["temperature"] == 0.2
    assert call["kwargs"]["max_tokens"] == 50
    system = call["messages"][0]["content"]
    assert "List pioneers of computing." in system
    assert "Error, Hijack blocked." in system
    assert call["messages"][1]["content"] == "start=True"


@pytest.mark.asyncio
async def test_function_options_object_is_accepted():
    llm = FakeAsyncLLM(['{"returnData": true}'])
    options = FunctionOptions(
        description="Is the number even?", args=4, func_return={"type": "boolean"}
    )
    assert await _instance(llm)(options) is True
    assert llm.calls[0]["messages"][1]["content"] == "s=4"


@pytest.mark.asyncio
async def test_unknown_option_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        await _instance(FakeAsyncLLM())(CAPITAL, colour="blue")


@pytest.mark.asyncio
async def test_missing_description_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        await _instance(FakeAsyncLLM())(func_return={"type": "string"})


@pytest.mark.asyncio
async def test_invalid_func_return_raises_schema_error_before_calling_model():
    llm = FakeAsyncLLM()
    with pytest.raises(SchemaError):
        await _instance(llm)(CAPITAL, func_return="str")
    assert llm.calls == []


@pytest.mark.asyncio
async def test_func_return_required_for_conversion():
    with pytest.raises(ConfigurationError):
        await _instance(FakeAsyncLLM())(description="anything")


@pytest.mark.asyncio
async def test_garbage_raises_unrecoverable_with_raw_text():
    llm = FakeAsyncLLM(["???not json???", "still not json"])
    with pytest.raises(UnrecoverableFormatError) as exc:
        await _instance(llm)(CAPITAL)
    assert exc.value.raw_text == "???not json???"
    assert len(llm.calls) == 2  # primary + model repair


@pytest.mark.asyncio
async def test_model_repair_recovers():
    llm = FakeAsyncLLM(["The capital is Rome", '{"returnData": "Rome"}'])
    result = await _instance(llm)(CAPITAL, return_invocation=True)
    assert isinstance(result, FunctionResult)
    assert result.value == "Rome"
    assert result.invocation.stage == "model"
    assert result.invocation.raw_text == "The capital is Rome"
    assert llm.calls[1]["temperature"] == 0.0


@pytest.mark.asyncio
async def test_transport_failure_is_retried():
    llm = FakeAsyncLLM([InvocationError("503"), '{"returnData": "Rome"}'])
    assert await _instance(llm)(CAPITAL, retries=1) == "Rome"
    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_transport_failure_surfaces_after_retries():
    llm = FakeAsyncLLM([InvocationError("first"), InvocationError("last")])
    with pytest.raises(InvocationError, match="last"):
        await _instance(llm)(CAPITAL, retries=1)


@pytest.mark.asyncio
async def test_negative_retries_rejected():
    with pytest.raises(ConfigurationError):
        await _instance(FakeAsyncLLM())(CAPITAL, retries=-1)


@pytest.mark.asyncio
async def test_raw_text_when_auto_convert_is_off():
    llm = FakeAsyncLLM(["anything at all"])
    assert await _instance(llm)(description="Say hi", autoConvertReturn=False) == "anything at all"


@pytest.mark.asyncio
async def test_yaml_output_format():
    llm = FakeAsyncLLM(["returnData:\n  - 1\n  - 2\n"])
    value = await _instance(llm)(
        description="First two naturals.", func_return={"type": "number[]"}, output_format="YAML"
    )
    assert value == [1, 2]
    assert "YAML" in llm.calls[0]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_internal_stream_aggregates_before_parsing():
    llm = FakeAsyncLLM(tokens=['{"return', 'Data": ', '"Rome"}'])
    assert await _instance(llm)(CAPITAL, use_internal_stream=True) == "Rome"
    assert llm.calls == []
    assert len(llm.stream_calls) == 1


@pytest.mark.asyncio
async def test_stream_returns_token_stream():
    llm = FakeAsyncLLM(tokens=["Once", " upon", " a time"])
    stream = await _instance(llm)(
        description="Tell a story.", args={"topic": "fox"}, stream=True
    )
    assert isinstance(stream, TokenStream)
    assert await stream.collect() == "Once upon a time"


@pytest.mark.asyncio
async def test_stream_with_callbacks_returns_none():
    llm = FakeAsyncLLM(tokens=["4", "2"])
    tokens: list[str] = []
    ends: list[str] = []
    result = await _instance(llm)(
        description="Answer.",
        func_return={"type": "number"},
        stream=True,
        callbackStreamFunction=tokens.append,
        callbackEndFunction=ends.append,
    )
    assert result is None
    assert tokens == ["4", "2"]
    assert ends == ["42"]


@pytest.mark.asyncio
async def test_stream_rejects_structured_return():
    llm = FakeAsyncLLM(tokens=["x"])
    with pytest.raises(ConfigurationError):
        await _instance(llm)(
            description="List.", func_return={"type": "string[]"}, stream=True
        )
    assert llm.stream_calls == []


@pytest.mark.asyncio
async def test_show_debug_traces_without_changing_result(capsys):
    llm = FakeAsyncLLM(['{"returnData":"Rome"}'])
    assert await _instance(llm)(CAPITAL, show_debug=True) == "Rome"
    events = [json.loads(line)["event"] for line in capsys.readouterr().out.splitlines()]
    assert events[0] == "aifunc.prompt"
    assert "aifunc.repair.attempt" in events
    assert events[-1] == "aifunc.result"


@pytest.mark.asyncio
async def test_compiled_schema_survives_keyword_overrides():
    llm = FakeAsyncLLM(['{"returnData":"Rome"}'])
    options = FunctionOptions(
        description="Return the capital city.", args="Italy", func_return=SchemaNode.scalar(SchemaKind.STRING)
    )
    assert await _instance(llm)(options, temperature=0.1) == "Rome"
    assert llm.calls[0]["temperature"] == 0.1
    assert options.temperature == 0.8
