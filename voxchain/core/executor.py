"""
Pipeline execution.

Runs a pipeline against a text: resolves its unit references, plans batches,
and executes them strictly in order, chaining same-model prompt runs into a
single completion call. The execution log is returned as a value.
"""

import asyncio
import logging
import re
import time
from enum import Enum
from typing import List, Optional

from .compiler import compile_chained_prompt
from .completion import CompletionRegistry, ExternalCallError
from .config import ConfigurationError, config
from .debug_log import get_debug_logger
from .planner import plan
from .store import UnitStore
from .types import (
    INPUT_PLACEHOLDER,
    ExecutionLogEntry,
    ExecutionResult,
    Pipeline,
    ProcessingUnit,
    PromptPayload,
    TextReplacementPayload,
    UnitBatch,
)

logger = logging.getLogger(__name__)


class ExecutorState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineExecutionError(Exception):
    """
    Raised when a pipeline run aborts.

    Carries the position of the failing batch and the identity of the units it
    covered. ``unit_id``/``unit_name`` are set only when a single unit failed;
    an optimized chain fills ``unit_ids``/``unit_names`` with every chained
    unit. The underlying ConfigurationError or ExternalCallError is chained as
    the cause.
    """

    def __init__(
        self,
        message: str,
        batch_index: int,
        unit_ids: Optional[List[str]] = None,
        unit_names: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.batch_index = batch_index
        self.unit_ids = list(unit_ids or [])
        self.unit_names = list(unit_names or [])

    @property
    def unit_id(self) -> Optional[str]:
        return self.unit_ids[0] if len(self.unit_ids) == 1 else None

    @property
    def unit_name(self) -> Optional[str]:
        return self.unit_names[0] if len(self.unit_names) == 1 else None

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__


def apply_text_replacement(text: str, payload: TextReplacementPayload) -> str:
    """
    Apply a find/replace unit to text.

    Literal case-sensitive matches use plain substring replacement; literal
    case-insensitive matches escape ``find`` before compiling it. Regex mode
    compiles ``find`` as-is.

    Raises:
        ConfigurationError: If the regular expression is malformed
    """
    if not payload.find:
        return text

    if not payload.is_regex and payload.case_sensitive:
        return text.replace(payload.find, payload.replace)

    pattern = payload.find if payload.is_regex else re.escape(payload.find)
    flags = 0 if payload.case_sensitive else re.IGNORECASE
    try:
        compiled = re.compile(pattern, flags)
    except re.error as e:
        raise ConfigurationError(f"Invalid regular expression '{payload.find}': {e}") from e

    if payload.is_regex:
        try:
            return compiled.sub(payload.replace, text)
        except re.error as e:
            raise ConfigurationError(f"Invalid replacement '{payload.replace}' for pattern '{payload.find}': {e}") from e
    # Literal mode: backslashes in the replacement are not group references
    return compiled.sub(lambda _: payload.replace, text)


class PipelineExecutor:
    """
    Executes pipelines from a unit store against a completion registry.

    Batches run one after another because each consumes the previous output.
    ``state`` describes the most recent ``execute`` call, so one executor runs
    one pipeline at a time; use ``execute_many`` for concurrent runs.
    """

    def __init__(
        self,
        store: UnitStore,
        completions: Optional[CompletionRegistry] = None,
        optimization_enabled: Optional[bool] = None,
        project_root: str = ".",
    ):
        self.store = store
        self.completions = completions or CompletionRegistry()
        self.optimization_enabled = config.optimization_enabled if optimization_enabled is None else optimization_enabled
        self.project_root = project_root
        self.debug_logger = get_debug_logger(project_root)
        self.state = ExecutorState.IDLE

    def spawn(self) -> "PipelineExecutor":
        """New idle executor sharing this one's store, registry and settings."""
        return PipelineExecutor(self.store, self.completions, self.optimization_enabled, self.project_root)

    async def execute(self, pipeline: Pipeline, input_text: str) -> ExecutionResult:
        """
        Run a pipeline on ``input_text``.

        A disabled pipeline, or one with no resolvable enabled units, returns
        the input unchanged with an empty log and zero duration.

        Raises:
            PipelineExecutionError: If any unit fails; no partial result is returned
        """
        self.state = ExecutorState.RESOLVING

        if not pipeline.enabled:
            logger.info(f"Pipeline '{pipeline.name}' is disabled, skipping execution")
            self.state = ExecutorState.COMPLETED
            return ExecutionResult(output_text=input_text)

        units, issues = self.store.resolve(pipeline)
        if not units:
            logger.info(f"Pipeline '{pipeline.name}' has no enabled units, returning input unchanged")
            self.state = ExecutorState.COMPLETED
            return ExecutionResult(output_text=input_text, warnings=issues)

        self.state = ExecutorState.PLANNING
        batches = plan(units, optimize=self.optimization_enabled)

        self.state = ExecutorState.EXECUTING
        logger.info(f"Executing pipeline: {pipeline.name} ({len(units)} units, {len(batches)} batches)")
        start_time = time.perf_counter()
        running_text = input_text
        log_entries: List[ExecutionLogEntry] = []

        try:
            for batch_index, batch in enumerate(batches, 1):
                if batch.optimizable:
                    running_text = await self._run_chain(batch, batch_index, running_text, log_entries)
                    continue
                for unit in batch.units:
                    logger.info(f"  [{batch_index}/{len(batches)}] {unit.name}")
                    running_text = await self._run_unit(unit, batch_index, running_text, log_entries)
        except BaseException:
            self.state = ExecutorState.FAILED
            raise

        total_duration = time.perf_counter() - start_time
        result = ExecutionResult(output_text=running_text, log_entries=log_entries, total_duration=total_duration, warnings=issues)
        self.state = ExecutorState.COMPLETED

        logger.info(f"Pipeline execution complete in {total_duration:.2f}s ({result.calls_saved} call(s) saved)")
        self.debug_logger.log_run_summary(
            pipeline.name,
            {"batches": len(batches), "units": len(units), "total_duration": total_duration, "calls_saved": result.calls_saved, "warnings": issues},
        )
        return result

    async def _run_chain(self, batch: UnitBatch, batch_index: int, input_text: str, log_entries: List[ExecutionLogEntry]) -> str:
        """Execute an optimizable batch as a single compiled completion call."""
        label = f"OPTIMIZED CHAIN ({len(batch.units)} units)"
        names = ", ".join(unit.name for unit in batch.units)
        logger.info(f"Merging {len(batch.units)} consecutive {batch.provider.value}/{batch.model} units: {names}")

        start = time.perf_counter()
        try:
            service = self.completions.get(batch.provider)
            system_prompt, user_prompt = compile_chained_prompt(batch, input_text)
            self.debug_logger.log_completion_request(label, batch.model, system_prompt, user_prompt, optimized=True)
            output = await service.complete(system_prompt, user_prompt, batch.model)
        except (ConfigurationError, ExternalCallError) as e:
            raise PipelineExecutionError(
                f"Batch {batch_index} ({names}) failed: {e}",
                batch_index,
                unit_ids=[unit.id for unit in batch.units],
                unit_names=[unit.name for unit in batch.units],
            ) from e

        self.debug_logger.log_completion_response(label, output, input_text)
        log_entries.append(
            ExecutionLogEntry(
                label=label,
                input_text=input_text,
                output_text=output,
                duration=time.perf_counter() - start,
                optimized=True,
                unit_count=len(batch.units),
            )
        )
        return output

    async def _run_unit(self, unit: ProcessingUnit, batch_index: int, input_text: str, log_entries: List[ExecutionLogEntry]) -> str:
        """Execute one unit against the running text."""
        start = time.perf_counter()
        payload = unit.payload
        try:
            if isinstance(payload, PromptPayload):
                service = self.completions.get(payload.provider)
                user_prompt = payload.user_prompt_template.replace(INPUT_PLACEHOLDER, input_text)
                self.debug_logger.log_completion_request(unit.name, payload.model, payload.system_prompt, user_prompt, optimized=False)
                output = await service.complete(payload.system_prompt, user_prompt, payload.model)
                self.debug_logger.log_completion_response(unit.name, output, input_text)
            else:
                output = apply_text_replacement(input_text, payload)
        except (ConfigurationError, ExternalCallError) as e:
            raise PipelineExecutionError(
                f"Unit '{unit.name}' ({unit.id}) in batch {batch_index} failed: {e}", batch_index, unit_ids=[unit.id], unit_names=[unit.name]
            ) from e

        log_entries.append(
            ExecutionLogEntry(label=unit.name, input_text=input_text, output_text=output, duration=time.perf_counter() - start)
        )
        return output


async def execute_many(executor: PipelineExecutor, pipelines: List[Pipeline], input_text: str) -> List[ExecutionResult]:
    """
    Run several pipelines on the same text concurrently.

    Each run gets its own executor built from ``executor``'s store, registry
    and settings, so every run tracks its own state; ``executor`` itself is
    left untouched. Results come back in the order of ``pipelines``; the first
    failure propagates.
    """
    runners = [executor.spawn() for _ in pipelines]
    return list(await asyncio.gather(*(runner.execute(pipeline, input_text) for runner, pipeline in zip(runners, pipelines))))
