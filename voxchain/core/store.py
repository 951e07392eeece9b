"""
Unit and pipeline library persistence.

The library is a single JSON document (by default .voxchain/library.json)
holding processing units, pipelines that reference them, and a few session
settings. This module also resolves pipelines into executable unit lists and
imports legacy inline post-processing configurations.
"""

import logging
import warnings
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .types import (
    Pipeline,
    PipelineUnitReference,
    ProcessingUnit,
    PromptPayload,
    Provider,
    TextReplacementPayload,
    utc_now,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the library file cannot be read or is invalid."""

    pass


class DataIntegrityWarning(UserWarning):
    """A pipeline references a unit that no longer exists in the library."""

    pass


class Library(BaseModel):
    """On-disk document layout."""

    units: List[ProcessingUnit] = Field(default_factory=list)
    pipelines: List[Pipeline] = Field(default_factory=list)
    last_used_pipeline_id: Optional[str] = None
    legacy_migrated: bool = False


class LegacyStep(BaseModel):
    """A step of the legacy inline post-processing format."""

    model_config = ConfigDict(populate_by_name=True)

    type: str
    enabled: bool = True
    provider: Optional[str] = None
    model: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    user_prompt: Optional[str] = Field(default=None, alias="userPrompt")
    text_to_replace: Optional[str] = Field(default=None, alias="textToReplace")
    replacement_text: Optional[str] = Field(default=None, alias="replacementText")


class LegacyPostProcessing(BaseModel):
    """A legacy post-processing configuration with its steps stored inline."""

    uuid: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    steps: List[LegacyStep] = Field(default_factory=list)


class UnitStore:
    """
    JSON-file-backed library of processing units and pipelines.

    Every mutating call saves the file immediately. Pass ``path=None`` for an
    in-memory store.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._library = self._load()

    def _load(self) -> Library:
        if self.path is None or not self.path.exists():
            return Library()
        try:
            return Library.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            raise StoreError(f"Failed to load library '{self.path}': {e}") from e

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(self._library.model_dump_json(indent=2), encoding="utf-8")

    # ========== Processing units ==========

    def list_units(self) -> List[ProcessingUnit]:
        return list(self._library.units)

    def get_unit(self, unit_id: str) -> Optional[ProcessingUnit]:
        return next((unit for unit in self._library.units if unit.id == unit_id), None)

    def save_unit(self, unit: ProcessingUnit) -> ProcessingUnit:
        """Insert the unit, or replace the stored unit with the same id."""
        unit.updated_at = utc_now()
        for index, existing in enumerate(self._library.units):
            if existing.id == unit.id:
                self._library.units[index] = unit
                break
        else:
            self._library.units.append(unit)
        self.save()
        return unit

    def delete_unit(self, unit_id: str) -> bool:
        """
        Delete a unit and remove every pipeline reference to it.

        Returns:
            True if the unit existed
        """
        before = len(self._library.units)
        self._library.units = [unit for unit in self._library.units if unit.id != unit_id]
        removed = len(self._library.units) != before

        for pipeline in self._library.pipelines:
            kept = [ref for ref in pipeline.unit_references if ref.unit_id != unit_id]
            if len(kept) != len(pipeline.unit_references):
                pipeline.unit_references = kept
                pipeline.updated_at = utc_now()
                logger.info(f"Removed references to unit {unit_id} from pipeline '{pipeline.name}'")

        self.save()
        return removed

    # ========== Pipelines ==========

    def list_pipelines(self) -> List[Pipeline]:
        return list(self._library.pipelines)

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        return next((pipeline for pipeline in self._library.pipelines if pipeline.id == pipeline_id), None)

    def find_pipeline(self, key: str) -> Optional[Pipeline]:
        """Look a pipeline up by id, falling back to an exact name match."""
        return self.get_pipeline(key) or next((p for p in self._library.pipelines if p.name == key), None)

    def save_pipeline(self, pipeline: Pipeline) -> Pipeline:
        """Insert the pipeline, or replace the stored pipeline with the same id."""
        pipeline.updated_at = utc_now()
        for index, existing in enumerate(self._library.pipelines):
            if existing.id == pipeline.id:
                self._library.pipelines[index] = pipeline
                break
        else:
            self._library.pipelines.append(pipeline)
        self.save()
        return pipeline

    def delete_pipeline(self, pipeline_id: str) -> bool:
        before = len(self._library.pipelines)
        self._library.pipelines = [p for p in self._library.pipelines if p.id != pipeline_id]
        if self._library.last_used_pipeline_id == pipeline_id:
            self._library.last_used_pipeline_id = None
        self.save()
        return len(self._library.pipelines) != before

    @property
    def last_used_pipeline_id(self) -> Optional[str]:
        return self._library.last_used_pipeline_id

    @last_used_pipeline_id.setter
    def last_used_pipeline_id(self, pipeline_id: Optional[str]) -> None:
        self._library.last_used_pipeline_id = pipeline_id
        self.save()

    # ========== Resolution ==========

    def resolve(self, pipeline: Pipeline) -> Tuple[List[ProcessingUnit], List[str]]:
        """
        Resolve a pipeline's enabled references into units, in order.

        Dangling references are skipped with a DataIntegrityWarning.

        Returns:
            Tuple of resolved units and the warning messages recorded
        """
        units: List[ProcessingUnit] = []
        issues: List[str] = []

        for position, ref in enumerate(pipeline.unit_references, 1):
            if not ref.enabled:
                logger.info(f"Skipping disabled unit reference {ref.unit_id} in pipeline '{pipeline.name}'")
                continue

            unit = self.get_unit(ref.unit_id)
            if unit is None:
                message = f"Pipeline '{pipeline.name}' references missing unit {ref.unit_id} (position {position}); skipping"
                logger.warning(message)
                warnings.warn(message, DataIntegrityWarning, stacklevel=2)
                issues.append(message)
                continue

            units.append(unit)

        return units, issues

    # ========== Legacy migration ==========

    @property
    def legacy_migrated(self) -> bool:
        return self._library.legacy_migrated

    def migrate_legacy(self, configs: List[LegacyPostProcessing]) -> List[Pipeline]:
        """
        Import legacy inline post-processing configurations once.

        Each step becomes a library unit named "<title> - Step k" and each
        configuration becomes a pipeline referencing those units in order with
        the steps' enabled flags. Subsequent calls are no-ops.

        Returns:
            Pipelines created by this call
        """
        if self._library.legacy_migrated:
            logger.info("Post-processing data already migrated")
            return []

        created: List[Pipeline] = []
        for legacy in configs:
            title = legacy.title or "Migrated Pipeline"
            pipeline_fields = {"id": legacy.uuid} if legacy.uuid else {}
            pipeline = Pipeline(name=title, description=legacy.description or "Migrated from old post-processing", **pipeline_fields)

            for index, step in enumerate(legacy.steps, 1):
                unit = _unit_from_legacy_step(step, f"{title} - Step {index}", f"Migrated from {title}")
                if unit is None:
                    logger.warning(f"Unknown legacy step type '{step.type}' in '{title}', skipping")
                    continue
                self._library.units.append(unit)
                pipeline.unit_references.append(PipelineUnitReference(unit_id=unit.id, enabled=step.enabled))

            self._library.pipelines.append(pipeline)
            created.append(pipeline)
            logger.info(f"Migrated pipeline: {title}")

        self._library.legacy_migrated = True
        self.save()
        return created


def _unit_from_legacy_step(step: LegacyStep, name: str, description: str) -> Optional[ProcessingUnit]:
    kind = step.type.strip().lower()

    if kind == "prompt":
        try:
            provider = Provider(step.provider) if step.provider else Provider.OPENAI
        except ValueError:
            logger.warning(f"Unknown provider '{step.provider}' in legacy step '{name}', using OpenAI")
            provider = Provider.OPENAI
        payload = PromptPayload(
            provider=provider,
            model=step.model or "gpt-4o-mini",
            system_prompt=step.system_prompt or "",
            user_prompt_template=step.user_prompt or "{{input}}",
        )
        return ProcessingUnit(name=name, description=description, payload=payload)

    if kind == "text replacement":
        # Legacy replacements were plain, case-sensitive substring swaps
        payload = TextReplacementPayload(find=step.text_to_replace or "", replace=step.replacement_text or "")
        return ProcessingUnit(name=name, description=description, payload=payload)

    return None
