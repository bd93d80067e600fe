from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from palaver.request import ChatRequest
    from palaver.runner import LoopState
    from palaver.session import Session


@dataclass
class Context:
    """Runtime context injected into tools that declare a ``context`` parameter.

    The Runner creates one Context per run and passes it automatically.

    Args:
        state: The loop state, including the transcript built so far.
        request: The request the run was started with.
        session: The application's session object, if one was given.
    """

    state: LoopState
    request: ChatRequest
    session: Session | None = None

    @property
    def cancelled(self) -> bool:
        return self.state.cancelled
