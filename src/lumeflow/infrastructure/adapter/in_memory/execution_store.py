from lumeflow.application.port import ExecutionStore
from lumeflow.domain.entity import WorkflowExecutionResult


class InMemoryExecutionStore(ExecutionStore):
    def __init__(self):
        self._store: dict[str, WorkflowExecutionResult] = {}

    def save(self, result: WorkflowExecutionResult) -> None:
        """
        Store an execution record under its execution id.

        :param result: The finished run
        :type result: WorkflowExecutionResult
        """
        self._store[result.execution_id] = result

    def get(self, execution_id: str) -> WorkflowExecutionResult:
        """
        Retrieve an execution record.

        :param execution_id: The execution identifier
        :type execution_id: str
        :returns: The stored record
        :rtype: WorkflowExecutionResult
        :raises KeyError: If the execution is not found
        """
        try:
            return self._store[execution_id]
        except KeyError:
            raise KeyError(f"Execution '{execution_id}' not found") from None

    def list(self, workflow_id: str | None = None) -> list[WorkflowExecutionResult]:
        return [
            result for result in self._store.values() if workflow_id is None or result.workflow_id == workflow_id
        ]

    def delete(self, execution_id: str) -> bool:
        return self._store.pop(execution_id, None) is not None
