"""Interface to the external execution host that owns jobs and runs."""

from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable

from .models import Cause, Job, ParameterDefinition, ParameterSet, Result, Run


@runtime_checkable
class ExecutionHost(Protocol):
    """
    Everything triggerctl needs from the host.

    The host owns job definitions and run state. triggerctl only submits
    work, polls for its outcome and reads/writes a small annotation list
    attached to each run.
    """

    def get_job(self, name: str) -> Optional[Job]:
        ...

    def job_schema(self, name: str) -> List[ParameterDefinition]:
        ...

    def submit_job(self, job: str, parameters: ParameterSet, cause: Cause,
                   group: Optional[str] = None) -> Optional[str]:
        """Queue a job. Returns a ticket, or None if the host rejected it."""
        ...

    def ticket_to_run(self, ticket: str) -> Optional[Run]:
        """The run a ticket materialized into, or None while still queued."""
        ...

    def cancel_ticket(self, ticket: str) -> bool:
        ...

    def get_run(self, run_id: str) -> Optional[Run]:
        ...

    def finish_run(self, run_id: str, result: Result) -> Run:
        """Record the result of a run that has ended."""
        ...

    def run_artifacts(self, run: Run) -> List[str]:
        """Artifact paths, relative to artifacts_dir(run)."""
        ...

    def artifacts_dir(self, run: Run) -> Path:
        ...

    def append_downstream(self, run_id: str, child_id: str) -> None:
        ...

    def list_downstream(self, run_id: str) -> List[str]:
        ...

    def get_retry_provenance(self, run_id: str) -> Optional[str]:
        ...

    def set_retry_provenance(self, run_id: str, origin_id: str) -> None:
        ...

    def get_retried_as(self, run_id: str) -> Optional[str]:
        ...

    def set_retried_as(self, run_id: str, retry_id: Optional[str]) -> None:
        ...

    def set_variable(self, run_id: str, name: str, value: str) -> None:
        ...

    def get_variables(self, run_id: str) -> Dict[str, str]:
        ...
