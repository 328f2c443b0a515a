"""Context propagation between the steps of a chain execution.

Step outputs are stored on their own step records. ``ChainContext`` is a
read-side view assembled from those records plus the execution's seeded
context and metadata, so concurrent steps never write to a shared blob.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

CHAIN_CONTEXT_VERSION = 2
CHARS_PER_TOKEN = 4

# Longest operators first so ">=" is not read as ">".
_CONDITION_RE = re.compile(
    r"^\s*(?P<path>\S+)\s+(?P<op>not_contains|contains|==|!=|>=|<=|>|<)\s+(?P<value>.+?)\s*$"
)


class StepOutput(BaseModel):
    output: dict[str, Any] = Field(default_factory=dict)
    agent_id: Optional[str] = None
    completed_at: Optional[datetime] = None


class ChainContext(BaseModel):
    """Accumulated view of a chain execution."""

    version: int = CHAIN_CONTEXT_VERSION
    initial: dict[str, Any] = Field(default_factory=dict)
    steps: dict[int, StepOutput] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def migrate(cls, raw: dict[str, Any] | None) -> dict[str, Any]:
        """Upgrade a stored ``chain_context`` payload to the current shape.

        Version 1 kept ``steps``/``accumulated_context``/``metadata`` in one
        blob; its accumulated context becomes the seeded ``initial`` context.
        """
        raw = dict(raw or {})
        version = raw.get("version", 1 if "accumulated_context" in raw else CHAIN_CONTEXT_VERSION)
        if version == 1:
            logger.debug("Migrating chain context from version 1")
            accumulated = {
                k: v
                for k, v in (raw.get("accumulated_context") or {}).items()
                if not re.fullmatch(r"step_\d+", str(k))
            }
            raw = {
                "version": CHAIN_CONTEXT_VERSION,
                "initial": accumulated,
                "steps": raw.get("steps") or {},
                "metadata": raw.get("metadata") or {},
            }
        return raw

    @classmethod
    def from_stored(cls, raw: dict[str, Any] | None) -> "ChainContext":
        return cls.model_validate(cls.migrate(raw))

    @classmethod
    def build(
        cls,
        stored: dict[str, Any] | None,
        step_records: Iterable[Any],
        agent_ids: Optional[dict[int, str]] = None,
    ) -> "ChainContext":
        """Assemble the context from the stored seed and completed step records."""
        context = cls.from_stored(stored)
        agent_ids = agent_ids or {}
        for record in step_records:
            if getattr(record.status, "value", record.status) != "completed":
                continue
            context.steps[record.step_index] = StepOutput(
                output=dict(record.output_data or {}),
                agent_id=agent_ids.get(record.step_index),
                completed_at=record.completed_at,
            )
        return context

    # ------------------------------------------------------------------
    def to_storage(self) -> dict[str, Any]:
        """Payload persisted on the execution: seed and metadata only."""
        return {
            "version": self.version,
            "initial": self.initial,
            "metadata": self.metadata,
        }

    def output_for_step(self, step_index: int) -> dict[str, Any] | None:
        step = self.steps.get(step_index)
        return step.output if step else None

    def all_outputs(self) -> dict[int, dict[str, Any]]:
        return {index: self.steps[index].output for index in sorted(self.steps)}

    def accumulated(self) -> dict[str, Any]:
        """Initial context plus each completed step's output under ``step_<n>``."""
        merged = dict(self.initial)
        for index, output in self.all_outputs().items():
            merged[f"step_{index}"] = output
        return merged

    def completed_step_count(self) -> int:
        return len(self.steps)

    def is_empty(self) -> bool:
        return not self.steps and not self.initial

    def with_metadata(self, **metadata: Any) -> "ChainContext":
        return self.model_copy(update={"metadata": {**self.metadata, **metadata}})

    def filter(
        self, include: Iterable[str] = (), exclude: Iterable[str] = ()
    ) -> "ChainContext":
        """Copy keeping only ``include`` keys and dropping ``exclude`` keys of each output."""
        include, exclude = set(include), set(exclude)
        steps = {}
        for index, step in self.steps.items():
            output = step.output
            if include:
                output = {k: v for k, v in output.items() if k in include}
            if exclude:
                output = {k: v for k, v in output.items() if k not in exclude}
            steps[index] = step.model_copy(update={"output": output})
        return self.model_copy(
            update={"steps": steps, "metadata": {**self.metadata, "filtered": True}}
        )

    def agent_input(
        self,
        chain_execution_id: str,
        step_index: int,
        entity_snapshot: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Input handed to the workflow of step ``step_index``."""
        previous = {
            index: output
            for index, output in self.all_outputs().items()
            if index < step_index
        }
        return {
            "chain_execution_id": chain_execution_id,
            "step_index": step_index,
            "previous_outputs": previous,
            "initial_context": self.initial,
            "triggering_entity": entity_snapshot or {},
        }

    # ------------------------------------------------------------------
    def _as_tree(self) -> dict[str, Any]:
        return {
            "steps": {
                str(index): step.model_dump(mode="json")
                for index, step in self.steps.items()
            },
            "accumulated_context": self.accumulated(),
            "initial": self.initial,
            "metadata": self.metadata,
        }

    def value_at(self, path: str) -> Any:
        """Resolve a dot path such as ``steps.0.output.score``; None when missing."""
        data: Any = self._as_tree()
        for segment in path.split("."):
            if isinstance(data, dict) and segment in data:
                data = data[segment]
            elif isinstance(data, list) and segment.isdigit() and int(segment) < len(data):
                data = data[int(segment)]
            else:
                return None
        return data

    def evaluate_condition(self, condition: str) -> bool:
        """Evaluate ``<path> <op> <value>``. Unparseable or missing paths are false."""
        match = _CONDITION_RE.match(condition)
        if match is None:
            return False
        actual = self.value_at(match.group("path"))
        if actual is None:
            return False
        expected = match.group("value").strip("\"' ")
        op = match.group("op")

        if op in ("==", "!="):
            equal = _as_text(actual) == expected
            return equal if op == "==" else not equal
        if op in ("contains", "not_contains"):
            if not isinstance(actual, str):
                return False
            found = expected in actual
            return found if op == "contains" else not found

        actual_number = _as_number(actual)
        try:
            expected_number = float(expected)
        except ValueError:
            return False
        if actual_number is None:
            return False
        return {
            ">": actual_number > expected_number,
            "<": actual_number < expected_number,
            ">=": actual_number >= expected_number,
            "<=": actual_number <= expected_number,
        }[op]

    # ------------------------------------------------------------------
    def to_prompt_string(self) -> str:
        """Markdown rendering used as LLM prompt context."""
        parts = []
        if self.steps:
            lines = ["## Previous Step Outputs"]
            for index, output in self.all_outputs().items():
                lines.append(f"### Step {index}")
                lines.extend(_format_items(output))
            parts.append("\n".join(lines))
        if self.initial:
            parts.append("\n".join(["## Initial Context", *_format_items(self.initial)]))
        if self.metadata:
            parts.append("\n".join(["## Chain Metadata", *_format_items(self.metadata)]))
        return "\n\n".join(parts)

    def token_estimate(self) -> int:
        return -(-len(self.to_prompt_string()) // CHARS_PER_TOKEN)


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _format_value(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2, default=str)
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if value is None:
        return "Not specified"
    return str(value)


def _format_items(data: dict[str, Any]) -> list[str]:
    return [
        f"- **{str(key).replace('_', ' ').title()}**: {_format_value(value)}"
        for key, value in data.items()
    ]
