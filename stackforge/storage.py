"""
Stackforge - State Store

Persists the last-known-good state of every stack (resource ids,
attributes, outputs) plus the registry of exported values.
Uses JSON files; every write goes through one lock and an atomic rename.
"""

from __future__ import annotations
import json
import os
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from stackforge.engine.errors import StackOperationError
from stackforge.models import ApplyResult, ExecutionPlan, StackState

logger = logging.getLogger(__name__)


class StateStore:
    """
    Manages storage of stack state, plans and results.

    Directory structure:
    /state/
        exports.json            - Export name -> {stack, value}
        stacks/
            <stack_name>/
                state.json      - Last-known-good stack state
                template.yaml   - Last applied template body
                plan.json       - Last execution plan
                result.json     - Last apply/destroy summary
    """

    def __init__(self, base_path: str = "./state"):
        """Initialize state store with base path."""
        self.base_path = Path(base_path)
        (self.base_path / "stacks").mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.RLock()
        logger.info(f"State store initialized at: {self.base_path.absolute()}")

    def _stack_path(self, stack_name: str) -> Path:
        """Get path for a specific stack."""
        return self.base_path / "stacks" / stack_name

    def _write_json(self, path: Path, content: Any) -> None:
        """Serialize and atomically replace `path`."""
        with self._write_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(content, f, indent=2, default=str)
                os.replace(tmp_path, path)
            except BaseException:
                os.unlink(tmp_path)
                raise

    def _read_json(self, path: Path) -> Optional[Any]:
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    # =========================================================================
    # STACK MANAGEMENT
    # =========================================================================

    def stack_exists(self, stack_name: str) -> bool:
        """Check if a stack has persisted state."""
        return (self._stack_path(stack_name) / "state.json").exists()

    def list_stacks(self) -> List[str]:
        """Get all stack names."""
        stacks_dir = self.base_path / "stacks"
        if not stacks_dir.exists():
            return []
        return sorted(
            d.name for d in stacks_dir.iterdir()
            if d.is_dir() and not d.name.startswith(".")
        )

    def delete_stack(self, stack_name: str) -> bool:
        """Delete a stack's records (not its resources)."""
        with self._write_lock:
            stack_path = self._stack_path(stack_name)
            if stack_path.exists():
                shutil.rmtree(stack_path)
                logger.info(f"Deleted stack records: {stack_name}")
                return True
        return False

    # =========================================================================
    # STATE
    # =========================================================================

    def save_state(self, state: StackState) -> None:
        """Save stack state."""
        state.updated_at = datetime.utcnow()
        self._write_json(
            self._stack_path(state.stack_name) / "state.json",
            state.model_dump(mode="json"),
        )
        logger.debug(f"Saved state for stack: {state.stack_name}")

    def load_state(self, stack_name: str) -> Optional[StackState]:
        """Load stack state."""
        data = self._read_json(self._stack_path(stack_name) / "state.json")
        if data is None:
            return None
        return StackState(**data)

    # =========================================================================
    # TEMPLATE / PLAN / RESULT
    # =========================================================================

    def save_template(self, stack_name: str, template_body: str) -> None:
        with self._write_lock:
            path = self._stack_path(stack_name) / "template.yaml"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(template_body, encoding="utf-8")

    def load_template(self, stack_name: str) -> Optional[str]:
        path = self._stack_path(stack_name) / "template.yaml"
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def save_plan(self, plan: ExecutionPlan) -> str:
        """Save execution plan and return file path."""
        plan_path = self._stack_path(plan.stack_name) / "plan.json"
        self._write_json(plan_path, plan.model_dump(mode="json"))
        logger.info(f"Saved execution plan for stack: {plan.stack_name}")
        return str(plan_path)

    def load_plan(self, stack_name: str) -> Optional[ExecutionPlan]:
        data = self._read_json(self._stack_path(stack_name) / "plan.json")
        if data is None:
            return None
        return ExecutionPlan(**data)

    def save_result(self, result: ApplyResult) -> str:
        result_path = self._stack_path(result.stack_name) / "result.json"
        self._write_json(result_path, result.model_dump(mode="json"))
        return str(result_path)

    def load_result(self, stack_name: str) -> Optional[ApplyResult]:
        data = self._read_json(self._stack_path(stack_name) / "result.json")
        if data is None:
            return None
        return ApplyResult(**data)

    # =========================================================================
    # EXPORTS
    # =========================================================================

    def load_exports(self) -> Dict[str, Dict[str, Any]]:
        """Export name -> {"stack": owning stack, "value": exported value}."""
        return self._read_json(self.base_path / "exports.json") or {}

    def export_values(self) -> Dict[str, Any]:
        """Export name -> value, as used by Fn::ImportValue."""
        return {name: entry["value"] for name, entry in self.load_exports().items()}

    def register_exports(self, stack_name: str, exports: Dict[str, Any]) -> None:
        """
        Replace the exports owned by a stack.

        Raises:
            StackOperationError: If another stack already exports a name
        """
        with self._write_lock:
            current = self.load_exports()
            for name in exports:
                owner = current.get(name, {}).get("stack")
                if owner is not None and owner != stack_name:
                    raise StackOperationError(
                        f"Export '{name}' is already exported by stack '{owner}'"
                    )
            current = {n: e for n, e in current.items() if e["stack"] != stack_name}
            for name, value in exports.items():
                current[name] = {"stack": stack_name, "value": value}
            self._write_json(self.base_path / "exports.json", current)
        logger.debug(f"Registered {len(exports)} exports for stack: {stack_name}")

    def remove_exports(self, stack_name: str) -> None:
        self.register_exports(stack_name, {})

    def importers_of(self, stack_name: str) -> Dict[str, List[str]]:
        """Other stacks importing this stack's exports, with the names they import."""
        owned = {
            name for name, entry in self.load_exports().items()
            if entry["stack"] == stack_name
        }
        importers: Dict[str, List[str]] = {}
        for other in self.list_stacks():
            if other == stack_name:
                continue
            state = self.load_state(other)
            if state is None:
                continue
            used = sorted(owned.intersection(state.imports))
            if used:
                importers[other] = used
        return importers
