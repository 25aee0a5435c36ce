"""Variable store: user-promoted snapshots of node output values (``$vars.<name>``)."""

from __future__ import annotations

import logging
from typing import Any

from execution.state_machine import ExecutionStateMachine
from shared.errors import ExpressionError
from shared.expressions import lookup_path

logger = logging.getLogger(__name__)


class VariableStore:
    """Creates variables on one execution's state; values are deep copies."""

    def __init__(self, machine: ExecutionStateMachine):
        self.machine = machine

    def create_variable(self, node_id: str, path: str, name: str) -> bool:
        """Copy ``outputs[node_id].data`` at ``path`` into ``variables[name]``.

        Returns False (and changes nothing) when the node has no completed
        output, the path does not resolve, or the run already finished.
        """
        name = str(name or "").strip()
        if not name:
            logger.warning("Ignoring variable with empty name (node=%s path=%s)", node_id, path)
            return False
        if self.machine.is_terminal:
            logger.info("Execution %s is finished; variable '%s' not created", self.machine.execution_id, name)
            return False

        output = self.machine.output_of(node_id)
        if output is None or output.status != "completed":
            logger.debug("Node '%s' has no recorded output; variable '%s' not created", node_id, name)
            return False

        try:
            value = lookup_path(output.data, path)
        except ExpressionError as exc:
            logger.debug("Variable '%s' not created: %s", name, exc)
            return False

        self.machine.set_variable(name, value)
        logger.info("Variable '%s' created from %s.%s", name, node_id, path)
        return True

    def get(self, name: str, default: Any = None) -> Any:
        return self.machine.snapshot().variables.get(name, default)

    def names(self) -> list[str]:
        return list(self.machine.snapshot().variables.keys())
