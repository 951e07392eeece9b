"""
Batch planning for pipeline execution.

Groups consecutive prompt units that target the same provider and model so
they can be compiled into a single completion call. Text replacements always
break a run and execute on their own.
"""

import logging
from typing import List, Optional, Tuple

from .timing import timer
from .types import ProcessingUnit, PromptPayload, Provider, UnitBatch

logger = logging.getLogger(__name__)

BatchKey = Tuple[Provider, str]


def _prompt_key(unit: ProcessingUnit) -> Optional[BatchKey]:
    payload = unit.payload
    if isinstance(payload, PromptPayload):
        return payload.provider, payload.model
    return None


def _close(units: List[ProcessingUnit], key: BatchKey) -> UnitBatch:
    optimizable = len(units) >= 2
    return UnitBatch(
        units=list(units),
        optimizable=optimizable,
        provider=key[0] if optimizable else None,
        model=key[1] if optimizable else None,
    )


@timer
def plan(units: List[ProcessingUnit], optimize: bool = True) -> List[UnitBatch]:
    """
    Split resolved, enabled units into execution batches.

    Grouping uses strict (provider, model) equality; there is no merging
    across different models. Concatenating the batch contents in order always
    reproduces ``units``.

    Args:
        units: Units in execution order
        optimize: When False every unit becomes its own non-optimizable batch

    Returns:
        Batches in execution order
    """
    if not optimize:
        return [UnitBatch(units=[unit]) for unit in units]

    batches: List[UnitBatch] = []
    current: List[ProcessingUnit] = []
    current_key: Optional[BatchKey] = None

    for unit in units:
        key = _prompt_key(unit)

        if key is None:
            if current:
                batches.append(_close(current, current_key))
                current, current_key = [], None
            batches.append(UnitBatch(units=[unit]))
            continue

        if current and key != current_key:
            batches.append(_close(current, current_key))
            current = []

        current.append(unit)
        current_key = key

    if current:
        batches.append(_close(current, current_key))

    optimized = [batch for batch in batches if batch.optimizable]
    if optimized:
        saved = sum(len(batch.units) - 1 for batch in optimized)
        logger.info(f"Planned {len(batches)} batch(es) for {len(units)} unit(s); {saved} completion call(s) saved by chaining")

    return batches
