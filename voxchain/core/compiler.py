"""
Chained prompt compilation.

Merges an optimizable batch of prompt units into one system/user prompt pair
that asks the model to run every step internally, threading each step's output
into the next, and to return only the final result.
"""

from typing import List, Tuple

from .timing import timer
from .types import INPUT_PLACEHOLDER, PromptPayload, UnitBatch

CHAIN_PREAMBLE = (
    "You are executing a chained processing pipeline of {count} steps. "
    "Process each step sequentially, using the output from each step as input to the next."
)
CHAIN_INSTRUCTION = "Execute the following steps in order:"
FINAL_ONLY_INSTRUCTION = "Provide ONLY the final output from the last step."


def step_output_marker(step_number: int) -> str:
    """Marker standing in for the output of a previous (1-based) step."""
    return f"{{STEP_{step_number}_OUTPUT}}"


@timer
def compile_chained_prompt(batch: UnitBatch, input_text: str) -> Tuple[str, str]:
    """
    Compile a batch of prompt units into a single (system_prompt, user_prompt) pair.

    Step 1 receives the actual running text; each later step receives a marker
    for the previous step's output.

    Args:
        batch: Prompt units sharing one provider/model
        input_text: Running text entering the batch

    Returns:
        Tuple of system prompt and user prompt

    Raises:
        ValueError: If the batch is empty or contains a non-prompt unit
    """
    if not batch.units:
        raise ValueError("Cannot compile an empty batch")

    system_parts: List[str] = []
    user_parts: List[str] = []

    for index, unit in enumerate(batch.units):
        payload = unit.payload
        if not isinstance(payload, PromptPayload):
            raise ValueError(f"Unit '{unit.name}' ({unit.id}) is not a prompt unit and cannot be chained")

        step = index + 1
        substitute = input_text if index == 0 else step_output_marker(index)

        system_parts.append(f"## Step {step}: {unit.name}\n{payload.system_prompt}")
        user_parts.append(f"### Step {step}: {unit.name}\n{payload.user_prompt_template.replace(INPUT_PLACEHOLDER, substitute)}")

    system_prompt = CHAIN_PREAMBLE.format(count=len(batch.units)) + "\n\n" + "\n\n".join(system_parts)
    user_prompt = f"{CHAIN_INSTRUCTION}\n\n" + "\n\n".join(user_parts) + f"\n\n{FINAL_ONLY_INSTRUCTION}"
    return system_prompt, user_prompt
