"""
Tests for pipeline execution.

A fake completion service stands in for the network; async code is driven
with asyncio.run.
"""

import asyncio
from types import SimpleNamespace
from typing import List, Optional, Tuple

import httpx
import openai
import pytest

from voxchain.core.completion import CompletionRegistry, ExternalCallError, OpenAICompletionClient, is_reasoning_model_error
from voxchain.core.config import ConfigurationError
from voxchain.core.executor import ExecutorState, PipelineExecutionError, PipelineExecutor, execute_many
from voxchain.core.store import DataIntegrityWarning, UnitStore
from voxchain.core.types import Pipeline, ProcessingUnit, PromptPayload, Provider, TextReplacementPayload


class FakeCompletionService:
    """
    Records every call and answers with a deterministic transformation.

    The response is "<model>(<user prompt>)" unless a fixed reply is given.
    Set fail_on to the 1-based call number that should raise.
    """

    def __init__(self, reply: Optional[str] = None, fail_on: Optional[int] = None):
        self.calls: List[Tuple[str, str, str]] = []
        self.reply = reply
        self.fail_on = fail_on

    async def complete(self, system_prompt: str, user_prompt: str, model: str) -> str:
        self.calls.append((system_prompt, user_prompt, model))
        if self.fail_on is not None and len(self.calls) == self.fail_on:
            raise ExternalCallError(429, "Rate limit exceeded")
        await asyncio.sleep(0)
        return self.reply if self.reply is not None else f"{model}({user_prompt})"


def add_prompt(store: UnitStore, name: str, model: str = "gpt-4", user: str = "{{input}}", provider: Provider = Provider.OPENAI) -> ProcessingUnit:
    payload = PromptPayload(provider=provider, model=model, system_prompt=f"system for {name}", user_prompt_template=user)
    return store.save_unit(ProcessingUnit(name=name, payload=payload))


def add_replacement(store: UnitStore, name: str, find: str, replace: str, **kwargs) -> ProcessingUnit:
    return store.save_unit(ProcessingUnit(name=name, payload=TextReplacementPayload(find=find, replace=replace, **kwargs)))


def make_pipeline(store: UnitStore, *units: ProcessingUnit, enabled: bool = True) -> Pipeline:
    pipeline = Pipeline(name="Test pipeline", enabled=enabled)
    for unit in units:
        pipeline.add_unit(unit.id)
    return store.save_pipeline(pipeline)


@pytest.fixture
def store() -> UnitStore:
    return UnitStore(path=None)


@pytest.fixture
def service() -> FakeCompletionService:
    return FakeCompletionService()


@pytest.fixture
def executor(store: UnitStore, service: FakeCompletionService) -> PipelineExecutor:
    return PipelineExecutor(store, CompletionRegistry({Provider.OPENAI: service}), optimization_enabled=True)


class TestIdentityRuns:
    def test_disabled_pipeline(self, store, executor, service):
        pipeline = make_pipeline(store, add_prompt(store, "p1"), enabled=False)
        result = asyncio.run(executor.execute(pipeline, "original text"))

        assert result.output_text == "original text"
        assert result.log_entries == []
        assert result.total_duration == 0.0
        assert service.calls == []
        assert executor.state == ExecutorState.COMPLETED

    def test_all_references_disabled(self, store, executor, service):
        unit = add_prompt(store, "p1")
        pipeline = Pipeline(name="Off")
        pipeline.add_unit(unit.id, enabled=False)
        result = asyncio.run(executor.execute(pipeline, "text"))

        assert result.output_text == "text"
        assert result.log_entries == []
        assert result.total_duration == 0.0
        assert service.calls == []

    def test_empty_pipeline(self, executor):
        result = asyncio.run(executor.execute(Pipeline(name="Empty"), "text"))
        assert result.output_text == "text"
        assert result.log_entries == []


class TestSequentialExecution:
    def test_single_prompt(self, store, executor, service):
        pipeline = make_pipeline(store, add_prompt(store, "Fix", user="Fix: {{input}}"))
        result = asyncio.run(executor.execute(pipeline, "helo"))

        assert service.calls == [("system for Fix", "Fix: helo", "gpt-4")]
        assert result.output_text == "gpt-4(Fix: helo)"
        assert len(result.log_entries) == 1
        entry = result.log_entries[0]
        assert entry.label == "Fix"
        assert entry.input_text == "helo"
        assert entry.output_text == "gpt-4(Fix: helo)"
        assert entry.optimized is False

    def test_replacement_then_prompt(self, store, executor, service):
        pipeline = make_pipeline(
            store,
            add_replacement(store, "Drop ums", "um ", "", case_sensitive=False),
            add_prompt(store, "Polish"),
        )
        result = asyncio.run(executor.execute(pipeline, "Um so um yes"))

        assert service.calls[0][1] == "so yes"
        assert [e.label for e in result.log_entries] == ["Drop ums", "Polish"]
        assert result.log_entries[0].output_text == "so yes"
        assert result.log_entries[1].input_text == "so yes"

    def test_optimization_disabled_runs_each_prompt(self, store, service):
        executor = PipelineExecutor(store, CompletionRegistry({Provider.OPENAI: service}), optimization_enabled=False)
        pipeline = make_pipeline(store, add_prompt(store, "p1", user="A {{input}}"), add_prompt(store, "p2", user="B {{input}}"))
        result = asyncio.run(executor.execute(pipeline, "x"))

        assert len(service.calls) == 2
        assert service.calls[1][1] == "B gpt-4(A x)"
        assert result.output_text == "gpt-4(B gpt-4(A x))"
        assert [e.optimized for e in result.log_entries] == [False, False]
        assert result.calls_saved == 0


class TestOptimizedExecution:
    def test_chain_uses_one_call(self, store, executor, service):
        pipeline = make_pipeline(store, add_prompt(store, "p1", user="A {{input}}"), add_prompt(store, "p2", user="B {{input}}"))
        service.reply = "chained result"
        result = asyncio.run(executor.execute(pipeline, "x"))

        assert len(service.calls) == 1
        system_prompt, user_prompt, model = service.calls[0]
        assert model == "gpt-4"
        assert "## Step 1: p1" in system_prompt and "## Step 2: p2" in system_prompt
        assert "A x" in user_prompt
        assert "B {STEP_1_OUTPUT}" in user_prompt

        assert result.output_text == "chained result"
        assert len(result.log_entries) == 1
        entry = result.log_entries[0]
        assert entry.optimized is True
        assert entry.label == "OPTIMIZED CHAIN (2 units)"
        assert entry.input_text == "x"
        assert entry.unit_count == 2
        assert result.calls_saved == 1

    def test_mixed_pipeline(self, store, executor, service):
        p1, p2 = add_prompt(store, "p1"), add_prompt(store, "p2")
        r1 = add_replacement(store, "r1", "gpt-4", "model")
        p3 = add_prompt(store, "p3")
        pipeline = make_pipeline(store, p1, p2, r1, p3)

        result = asyncio.run(executor.execute(pipeline, "x"))

        assert len(service.calls) == 2
        assert [e.label for e in result.log_entries] == ["OPTIMIZED CHAIN (2 units)", "r1", "p3"]
        assert [e.optimized for e in result.log_entries] == [True, False, False]
        # the replacement operates on the chain's response
        assert result.log_entries[1].input_text == result.log_entries[0].output_text
        assert "gpt-4" not in result.log_entries[1].output_text
        assert result.total_duration >= 0.0

    def test_different_providers_use_their_services(self, store):
        openai_service, webui_service = FakeCompletionService(), FakeCompletionService()
        registry = CompletionRegistry({Provider.OPENAI: openai_service, Provider.OPEN_WEBUI: webui_service})
        executor = PipelineExecutor(store, registry, optimization_enabled=True)
        pipeline = make_pipeline(store, add_prompt(store, "cloud"), add_prompt(store, "local", model="llama3", provider=Provider.OPEN_WEBUI))

        result = asyncio.run(executor.execute(pipeline, "x"))

        assert len(openai_service.calls) == 1
        assert len(webui_service.calls) == 1
        assert result.output_text == "llama3(gpt-4(x))"


class TestDanglingReferences:
    def test_dangling_reference_skipped(self, store, executor, service):
        p1, p2 = add_prompt(store, "p1", model="a"), add_prompt(store, "p2", model="b")
        pipeline = Pipeline(name="With hole")
        pipeline.add_unit(p1.id)
        pipeline.add_unit("does-not-exist")
        pipeline.add_unit(p2.id)

        with pytest.warns(DataIntegrityWarning, match="does-not-exist"):
            result = asyncio.run(executor.execute(pipeline, "x"))

        assert executor.state == ExecutorState.COMPLETED
        assert [e.label for e in result.log_entries] == ["p1", "p2"]
        assert result.output_text == "b(a(x))"
        assert len(result.warnings) == 1
        assert "does-not-exist" in result.warnings[0]

    def test_only_dangling_references(self, store, executor, service):
        pipeline = Pipeline(name="Broken")
        pipeline.add_unit("gone")

        with pytest.warns(DataIntegrityWarning):
            result = asyncio.run(executor.execute(pipeline, "x"))

        assert result.output_text == "x"
        assert result.log_entries == []
        assert result.total_duration == 0.0
        assert len(result.warnings) == 1


class TestFailures:
    def test_external_failure_aborts_run(self, store):
        service = FakeCompletionService(fail_on=2)
        executor = PipelineExecutor(store, CompletionRegistry({Provider.OPENAI: service}), optimization_enabled=False)
        p1, p2, p3 = add_prompt(store, "p1"), add_prompt(store, "p2"), add_prompt(store, "p3")
        pipeline = make_pipeline(store, p1, p2, p3)

        with pytest.raises(PipelineExecutionError) as exc_info:
            asyncio.run(executor.execute(pipeline, "x"))

        error = exc_info.value
        assert error.batch_index == 2
        assert error.unit_id == p2.id
        assert error.unit_name == "p2"
        assert isinstance(error.cause, ExternalCallError)
        assert error.cause.status == 429
        assert len(service.calls) == 2
        assert executor.state == ExecutorState.FAILED

    def test_chain_failure(self, store):
        service = FakeCompletionService(fail_on=1)
        executor = PipelineExecutor(store, CompletionRegistry({Provider.OPENAI: service}), optimization_enabled=True)
        units = [add_prompt(store, "p1"), add_prompt(store, "p2"), add_prompt(store, "p3")]
        pipeline = make_pipeline(store, *units)

        with pytest.raises(PipelineExecutionError) as exc_info:
            asyncio.run(executor.execute(pipeline, "x"))

        error = exc_info.value
        assert error.batch_index == 1
        assert isinstance(error.cause, ExternalCallError)
        assert error.unit_ids == [unit.id for unit in units]
        assert error.unit_names == ["p1", "p2", "p3"]
        assert error.unit_id is None

    def test_malformed_regex_is_configuration_error(self, store, executor, service):
        bad = add_replacement(store, "Bad pattern", "([", "", is_regex=True)
        pipeline = make_pipeline(store, bad, add_prompt(store, "after"))

        with pytest.raises(PipelineExecutionError) as exc_info:
            asyncio.run(executor.execute(pipeline, "x"))

        assert exc_info.value.unit_id == bad.id
        assert isinstance(exc_info.value.cause, ConfigurationError)
        assert service.calls == []

    def test_missing_provider_configuration(self, store, monkeypatch):
        monkeypatch.delenv("OPENWEBUI_BASE_URL", raising=False)
        executor = PipelineExecutor(store, CompletionRegistry(), optimization_enabled=True)
        pipeline = make_pipeline(store, add_prompt(store, "local", model="llama3", provider=Provider.OPEN_WEBUI))

        with pytest.raises(PipelineExecutionError) as exc_info:
            asyncio.run(executor.execute(pipeline, "x"))

        assert isinstance(exc_info.value.cause, ConfigurationError)
        assert "OPENWEBUI_BASE_URL" in str(exc_info.value)


class TestConcurrentRuns:
    def test_execute_many_keeps_order(self, store, executor, service):
        first = make_pipeline(store, add_prompt(store, "one", model="m1"))
        second = make_pipeline(store, add_prompt(store, "two", model="m2"))

        results = asyncio.run(execute_many(executor, [first, second], "x"))

        assert [r.output_text for r in results] == ["m1(x)", "m2(x)"]
        assert len(service.calls) == 2

    def test_execute_many_uses_separate_executors(self, store, executor):
        ok = make_pipeline(store, add_replacement(store, "ok", "x", "y"))
        broken = make_pipeline(store, add_replacement(store, "bad", "([", "", is_regex=True))
        spawned = []
        original_spawn = executor.spawn

        def recording_spawn():
            runner = original_spawn()
            spawned.append(runner)
            return runner

        executor.spawn = recording_spawn
        with pytest.raises(PipelineExecutionError):
            asyncio.run(execute_many(executor, [ok, broken], "x"))

        assert executor.state == ExecutorState.IDLE
        assert [runner.state for runner in spawned] == [ExecutorState.COMPLETED, ExecutorState.FAILED]
        assert all(runner.store is store and runner.completions is executor.completions for runner in spawned)


class FakeChatCompletions:
    """Stands in for client.chat.completions; replays queued outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.requests: List[dict] = []

    async def create(self, **params):
        self.requests.append(params)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def fake_client(*outcomes) -> SimpleNamespace:
    return SimpleNamespace(chat=SimpleNamespace(completions=FakeChatCompletions(*outcomes)))


def chat_response(content: Optional[str]) -> SimpleNamespace:
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def bad_request(param: str) -> openai.BadRequestError:
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    body = {"error": {"type": "invalid_request_error", "code": "unsupported_parameter", "param": param}}
    return openai.BadRequestError("Unsupported parameter", response=httpx.Response(400, request=request), body=body)


class TestOpenAICompletionClient:
    def test_standard_model_params(self):
        client = fake_client(chat_response("done"))
        service = OpenAICompletionClient(client, reasoning=False)

        assert asyncio.run(service.complete("sys", "user", "gpt-4o-mini")) == "done"

        params = client.chat.completions.requests[0]
        assert params["model"] == "gpt-4o-mini"
        assert params["messages"] == [{"role": "system", "content": "sys"}, {"role": "user", "content": "user"}]
        assert "temperature" in params and "max_tokens" in params

    def test_reasoning_model_params(self):
        client = fake_client(chat_response("done"))
        asyncio.run(OpenAICompletionClient(client, reasoning=True).complete("sys", "user", "o1"))

        params = client.chat.completions.requests[0]
        assert "temperature" not in params
        assert "max_completion_tokens" in params

    def test_reasoning_fallback_retries_once(self):
        client = fake_client(bad_request("temperature"), chat_response("retried"))
        service = OpenAICompletionClient(client, reasoning=False)

        assert asyncio.run(service.complete("sys", "user", "o3-mini")) == "retried"

        first, second = client.chat.completions.requests
        assert "temperature" in first
        assert "temperature" not in second
        assert second["max_completion_tokens"] == first["max_tokens"]

    def test_status_error_mapped(self):
        client = fake_client(bad_request("messages"))
        with pytest.raises(ExternalCallError) as exc_info:
            asyncio.run(OpenAICompletionClient(client, reasoning=False).complete("sys", "user", "gpt-4"))
        assert exc_info.value.status == 400
        assert len(client.chat.completions.requests) == 1

    def test_transport_error_mapped(self):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        client = fake_client(openai.APIConnectionError(request=request))
        with pytest.raises(ExternalCallError) as exc_info:
            asyncio.run(OpenAICompletionClient(client, reasoning=False).complete("sys", "user", "gpt-4"))
        assert exc_info.value.status == 0

    def test_empty_content(self):
        client = fake_client(chat_response(None))
        with pytest.raises(ExternalCallError, match="Empty message content"):
            asyncio.run(OpenAICompletionClient(client, reasoning=False).complete("sys", "user", "gpt-4"))

    def test_reasoning_error_detection(self):
        assert is_reasoning_model_error(bad_request("max_tokens"))
        assert not is_reasoning_model_error(bad_request("messages"))
        assert not is_reasoning_model_error(ValueError("temperature"))
