"""
Type definitions for voxchain.

This module defines the processing unit library (units, pipelines and the
references between them) and the records produced when a pipeline runs.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

INPUT_PLACEHOLDER = "{{input}}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Provider(str, Enum):
    """Completion providers a prompt unit can target."""

    OPENAI = "OpenAI"
    OPEN_WEBUI = "Open WebUI"


class PromptPayload(BaseModel):
    """
    An LLM prompt step.

    Attributes:
        provider: Completion provider to call
        model: Model name passed to the provider
        system_prompt: System message sent as-is
        user_prompt_template: User message; ``{{input}}`` is replaced with the running text
    """

    type: Literal["prompt"] = "prompt"
    provider: Provider = Field(default=Provider.OPENAI, description="Completion provider")
    model: str = Field(..., description="Model name")
    system_prompt: str = Field(default="", description="System prompt")
    user_prompt_template: str = Field(default=INPUT_PLACEHOLDER, description="User prompt with {{input}} placeholder")


class TextReplacementPayload(BaseModel):
    """
    A find/replace step applied locally, without any external call.

    Attributes:
        find: Literal text or regular expression to search for
        replace: Replacement text (may use group references in regex mode)
        is_regex: Interpret ``find`` as a regular expression
        case_sensitive: Match case exactly
    """

    type: Literal["text_replacement"] = "text_replacement"
    find: str = Field(..., description="Text or pattern to find")
    replace: str = Field(default="", description="Replacement text")
    is_regex: bool = Field(default=False, description="Treat find as a regular expression")
    case_sensitive: bool = Field(default=True, description="Case-sensitive matching")


UnitPayload = Annotated[Union[PromptPayload, TextReplacementPayload], Field(discriminator="type")]


class ProcessingUnit(BaseModel):
    """A reusable transform step stored in the unit library."""

    id: str = Field(default_factory=new_id, description="Unique unit identifier")
    name: str = Field(..., description="Display name")
    description: Optional[str] = Field(default=None, description="Optional description")
    payload: UnitPayload
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_prompt(self) -> bool:
        return isinstance(self.payload, PromptPayload)

    @property
    def kind(self) -> str:
        return "Prompt" if self.is_prompt else "Text Replacement"


class PipelineUnitReference(BaseModel):
    """Reference to a library unit from inside a pipeline."""

    unit_id: str
    enabled: bool = True


class Pipeline(BaseModel):
    """
    An executable, ordered sequence of unit references.

    The order of ``unit_references`` is the execution order.
    """

    id: str = Field(default_factory=new_id, description="Unique pipeline identifier")
    name: str = Field(..., description="Display name")
    description: Optional[str] = Field(default=None)
    enabled: bool = Field(default=True, description="Whether the whole pipeline is active")
    unit_references: List[PipelineUnitReference] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def add_unit(self, unit_id: str, enabled: bool = True) -> None:
        self.unit_references.append(PipelineUnitReference(unit_id=unit_id, enabled=enabled))
        self.updated_at = utc_now()


class UnitBatch(BaseModel):
    """
    A run of adjacent units executed together.

    Optimizable batches hold two or more prompt units sharing one
    provider/model pair and are compiled into a single completion call.
    """

    units: List[ProcessingUnit]
    optimizable: bool = False
    provider: Optional[Provider] = None
    model: Optional[str] = None


class ExecutionLogEntry(BaseModel):
    """One executed unit or optimized chain."""

    timestamp: datetime = Field(default_factory=utc_now)
    label: str
    input_text: str
    output_text: str
    duration: float = Field(..., ge=0.0, description="Seconds")
    optimized: bool = False
    unit_count: int = Field(default=1, ge=1, description="Units covered by this entry")


class ExecutionResult(BaseModel):
    """Final text plus the ordered execution log of a pipeline run."""

    output_text: str
    log_entries: List[ExecutionLogEntry] = Field(default_factory=list)
    total_duration: float = Field(default=0.0, ge=0.0, description="Seconds")
    warnings: List[str] = Field(default_factory=list, description="Data integrity warnings raised during resolution")

    @property
    def calls_saved(self) -> int:
        """Number of completion calls avoided by optimized chains."""
        return sum(entry.unit_count - 1 for entry in self.log_entries if entry.optimized)
