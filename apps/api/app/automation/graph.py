from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Sequence

from app.automation.schemas import GoToStep, WorkflowStep


class StepGraph:
    """Read-only arena over a workflow's ordered step list.

    Steps are addressed by id. The order of the list is informational except
    for the entry point, which is ``entry_step_id`` when given and otherwise
    the first step. Topology is carried solely by ``next_step_id`` and
    ``branches[].next_step_id``; a go_to target is a jump, not an edge.
    """

    def __init__(self, steps: Sequence[WorkflowStep], entry_step_id: str | None = None) -> None:
        self._order: list[str] = []
        self._steps: dict[str, WorkflowStep] = {}
        self._duplicates: list[str] = []
        for step in steps:
            if step.id in self._steps:
                self._duplicates.append(step.id)
                continue
            self._steps[step.id] = step
            self._order.append(step.id)
        if entry_step_id is None and self._order:
            entry_step_id = self._order[0]
        self._entry_step_id = entry_step_id

    def __contains__(self, step_id: object) -> bool:
        return step_id in self._steps

    def __iter__(self) -> Iterator[WorkflowStep]:
        return (self._steps[step_id] for step_id in self._order)

    def __len__(self) -> int:
        return len(self._order)

    @property
    def entry_step_id(self) -> str | None:
        return self._entry_step_id

    @property
    def duplicate_ids(self) -> list[str]:
        return list(self._duplicates)

    def get(self, step_id: str | None) -> WorkflowStep | None:
        if step_id is None:
            return None
        return self._steps.get(step_id)

    def first_step(self) -> WorkflowStep | None:
        return self.get(self._entry_step_id)

    def index_of(self, step_id: str | None) -> int:
        if step_id is None or step_id not in self._steps:
            return -1
        return self._order.index(step_id)

    def successors(self, step_id: str) -> set[str]:
        step = self._steps.get(step_id)
        if step is None:
            return set()
        result: set[str] = set()
        if step.next_step_id:
            result.add(step.next_step_id)
        for branch in step.branches or []:
            if branch.next_step_id:
                result.add(branch.next_step_id)
        return result

    def is_terminal(self, step: WorkflowStep) -> bool:
        return not self.successors(step.id)

    def dangling_links(self) -> list[tuple[str, str]]:
        missing: list[tuple[str, str]] = []
        for step in self:
            for target in sorted(self.successors(step.id)):
                if target not in self._steps:
                    missing.append((step.id, target))
        return missing

    def reachable_from_entry(self) -> set[str]:
        if self._entry_step_id is None or self._entry_step_id not in self._steps:
            return set()
        visited = {self._entry_step_id}
        queue = deque([self._entry_step_id])
        while queue:
            current = queue.popleft()
            for target in self.successors(current):
                if target in self._steps and target not in visited:
                    visited.add(target)
                    queue.append(target)
        return visited

    def unreachable_steps(self) -> list[WorkflowStep]:
        reachable = self.reachable_from_entry()
        return [step for step in self if step.id not in reachable]

    def resolve_successor(self, step: WorkflowStep, branch_taken: str | None = None) -> str | None:
        if isinstance(step, GoToStep):
            return step.config.target_step_id
        if branch_taken is not None:
            for branch in step.branches or []:
                if branch_taken in (branch.key, branch.id) and branch.next_step_id:
                    return branch.next_step_id
        return step.next_step_id
