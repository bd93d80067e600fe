"""Tool-call accumulation for provider streams.

Adapters yield :class:`~palaver.events.ToolCallFragment` events.  The
:class:`ToolCallAccumulator` reassembles them into complete
:class:`ToolCallRecord` objects, whatever shape the vendor uses for the
argument payload.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from palaver.events import ToolCallFragment


@dataclass(frozen=True)
class ToolCallRecord:
    """A tool call assembled from one or more fragments."""

    call_id: str
    function_name: str = ""
    arguments_json: str = ""
    index: int = 0

    def parsed_arguments(self) -> dict:
        """Decode ``arguments_json``; an empty payload means no arguments.

        Raises:
            ValueError: If the payload is not a JSON object.
        """
        if not self.arguments_json.strip():
            return {}
        params = json.loads(self.arguments_json)
        if not isinstance(params, dict):
            raise ValueError(
                f"expected a JSON object, got {type(params).__name__}"
            )
        return params


def _as_object(text: str) -> dict | None:
    try:
        value = json.loads(text)
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


def merge_arguments(existing: str, fragment: str) -> str:
    """Merge an argument fragment into the arguments seen so far.

    Two shapes are detected per fragment.  When both sides parse as JSON
    objects (vendors that resend the argument object) they are
    shallow-merged with the fragment's keys winning.  Otherwise the
    fragment is a piece of JSON text and is concatenated.
    """
    if not fragment:
        return existing
    if not existing:
        return fragment
    current = _as_object(existing)
    incoming = _as_object(fragment) if current is not None else None
    if current is not None and incoming is not None:
        return json.dumps({**current, **incoming})
    return existing + fragment


def merge_fragment(
    existing: ToolCallRecord | None, fragment: ToolCallFragment,
) -> ToolCallRecord:
    """Fold one fragment into a record.

    The first fragment fixes ``index``.  ``function_name`` is taken from the
    first fragment that carries one and never overwritten.
    """
    if existing is None:
        return ToolCallRecord(
            call_id=fragment.call_id,
            function_name=fragment.function_name or "",
            arguments_json=fragment.arguments_fragment or "",
            index=fragment.index,
        )
    name = existing.function_name or fragment.function_name or ""
    return replace(
        existing,
        function_name=name,
        arguments_json=merge_arguments(
            existing.arguments_json, fragment.arguments_fragment or "",
        ),
    )


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    Calls are keyed by ``call_id``.  Vendors that omit ids get one from
    :meth:`synthesize_call_id`, which is unique within one stream only.
    """

    def __init__(self, started_at: float | None = None) -> None:
        self.started_at = started_at if started_at is not None else time.time()
        self._records: dict[str, ToolCallRecord] = {}
        self._counter = 0

    def synthesize_call_id(self, function_name: str | None) -> str:
        call_id = (
            f"{function_name or 'call'}_"
            f"{int(self.started_at * 1000)}_{self._counter}"
        )
        self._counter += 1
        return call_id

    def next_index(self) -> int:
        return len(self._records)

    def claim_index(self, preferred: int) -> int:
        """Return *preferred* unless a recorded call already holds it."""
        taken = {r.index for r in self._records.values()}
        if preferred not in taken:
            return preferred
        return max(taken) + 1

    def feed(self, fragment: ToolCallFragment) -> ToolCallRecord:
        record = merge_fragment(self._records.get(fragment.call_id), fragment)
        self._records[fragment.call_id] = record
        return record

    def get(self, call_id: str) -> ToolCallRecord | None:
        return self._records.get(call_id)

    def finalize(self) -> list[ToolCallRecord]:
        """Return completed tool calls in index order."""
        return sorted(self._records.values(), key=lambda r: r.index)

    def __len__(self) -> int:
        return len(self._records)
