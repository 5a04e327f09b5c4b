from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pdvhub.domain.errors import SagaError

log = logging.getLogger("pdvhub.saga")


@dataclass
class Saga:
    """Runs write steps in order and undoes completed ones if a later step fails.

    The backend has no multi-entity transactions, so each step registers the
    compensation that reverses it. Compensations run newest first; their own
    failures are logged and attached to the raised SagaError.
    """

    name: str
    _undo: list[tuple[str, Callable[[], Any]]] = field(default_factory=list, init=False, repr=False)

    def __enter__(self) -> "Saga":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._undo.clear()
        return None

    def step(self, label: str, action: Callable[[], Any], compensation: Optional[Callable[[Any], Any]] = None) -> Any:
        try:
            result = action()
        except Exception as e:
            errors = self.compensate()
            log.error("saga_failed saga=%s step=%s error=%s", self.name, label, e)
            raise SagaError(label, e, errors) from e
        if compensation is not None:
            self._undo.append((label, lambda: compensation(result)))
        return result

    def compensate(self) -> list[str]:
        errors = []
        while self._undo:
            label, undo = self._undo.pop()
            try:
                undo()
            except Exception as e:
                log.error("saga_compensation_failed saga=%s step=%s error=%s", self.name, label, e)
                errors.append(f"{label}: {e}")
        return errors
