"""File-backed execution host: jobs, queue, runs and run annotations as JSON files."""

import json
import os
import sys
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from pydantic import BaseModel, Field
from .models import (
    Cause,
    Config,
    Job,
    ParameterDefinition,
    ParameterSet,
    Result,
    Run,
    RunState,
)
from .errors import HostError, JobNotFound, RunNotFound

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl


class TicketState(str, Enum):
    QUEUED = "queued"
    STARTED = "started"
    CANCELLED = "cancelled"


class QueueItem(BaseModel):
    """A submission waiting for the host to start it."""
    ticket: str
    job: str
    parameters: Dict[str, str] = Field(default_factory=dict)
    cause: Cause = Field(default_factory=Cause)
    group: Optional[str] = None
    state: TicketState = TicketState.QUEUED
    run_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Storage:
    """
    Reference implementation of the execution host.

    Every read-modify-write happens under an exclusive lock on
    ``locks/storage.lock`` so several triggerctl processes can share one
    data directory.
    """

    def __init__(self, data_dir: str = ".triggerctl"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.jobs_file = self.data_dir / "jobs.json"
        self.queue_file = self.data_dir / "queue.json"
        self.runs_file = self.data_dir / "runs.json"
        self.annotations_file = self.data_dir / "annotations.json"
        self.config_file = self.data_dir / "config.json"
        self.artifacts_root = self.data_dir / "artifacts"
        self.locks_dir = self.data_dir / "locks"
        self.locks_dir.mkdir(exist_ok=True)

        # Initialize files if they don't exist
        for file_path, empty in (
            (self.jobs_file, []),
            (self.queue_file, []),
            (self.runs_file, []),
            (self.annotations_file, {}),
        ):
            if not file_path.exists():
                self._write_json(file_path, empty)
        if not self.config_file.exists():
            self._write_json(self.config_file, Config().model_dump(mode="json"))

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return {} if file_path == self.annotations_file else []
        with open(file_path, "r") as f:
            return json.load(f)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the storage-wide write lock."""
        lock_file = self.locks_dir / "storage.lock"
        fd = os.open(str(lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
        try:
            if sys.platform == "win32":
                msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
            else:
                fcntl.flock(fd, fcntl.LOCK_EX)
            yield
        finally:
            try:
                if sys.platform == "win32":
                    os.lseek(fd, 0, os.SEEK_SET)
                    msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    # Jobs

    def define_job(self, name: str, parameters: Optional[List[ParameterDefinition]] = None,
                   disabled: bool = False, retry_threshold: Optional[Result] = None) -> Job:
        """Create or replace a job definition, keeping its build counter."""
        with self._locked():
            jobs = self._read_json(self.jobs_file)
            job = Job(name=name, parameters=parameters or [], disabled=disabled,
                      retry_threshold=retry_threshold)
            for i, job_data in enumerate(jobs):
                if job_data["name"] == name:
                    job.next_build_number = job_data["next_build_number"]
                    jobs[i] = job.model_dump(mode="json")
                    break
            else:
                jobs.append(job.model_dump(mode="json"))
            self._write_json(self.jobs_file, jobs)
        return job

    def get_job(self, name: str) -> Optional[Job]:
        """Get a job by name."""
        for job_data in self._read_json(self.jobs_file):
            if job_data["name"] == name:
                return Job(**job_data)
        return None

    def list_jobs(self) -> List[Job]:
        return [Job(**job_data) for job_data in self._read_json(self.jobs_file)]

    def job_schema(self, name: str) -> List[ParameterDefinition]:
        job = self.get_job(name)
        if job is None:
            raise JobNotFound(name)
        return list(job.parameters)

    # Queue

    def submit_job(self, job: str, parameters: ParameterSet, cause: Cause,
                   group: Optional[str] = None) -> Optional[str]:
        """Queue a job. Identical submissions already waiting in the queue are rejected."""
        if self.get_job(job) is None:
            raise JobNotFound(job)
        with self._locked():
            queue = self._read_json(self.queue_file)
            for item_data in queue:
                if (item_data["state"] == TicketState.QUEUED.value
                        and item_data["job"] == job
                        and item_data["parameters"] == parameters.values):
                    return None
            item = QueueItem(
                ticket=uuid.uuid4().hex,
                job=job,
                parameters=dict(parameters.values),
                cause=cause,
                group=group,
            )
            queue.append(item.model_dump(mode="json"))
            self._write_json(self.queue_file, queue)
        return item.ticket

    def get_ticket(self, ticket: str) -> Optional[QueueItem]:
        for item_data in self._read_json(self.queue_file):
            if item_data["ticket"] == ticket:
                return QueueItem(**item_data)
        return None

    def list_queue(self) -> List[QueueItem]:
        return [QueueItem(**item_data) for item_data in self._read_json(self.queue_file)
                if item_data["state"] == TicketState.QUEUED.value]

    def ticket_to_run(self, ticket: str) -> Optional[Run]:
        item = self.get_ticket(ticket)
        if item is None:
            raise HostError(f"Unknown queue ticket {ticket}")
        if item.state == TicketState.CANCELLED:
            raise HostError(f"Queued {item.job} was cancelled")
        if item.state == TicketState.QUEUED:
            return None
        run = self.get_run(item.run_id)
        if run is None:
            raise HostError(f"Run {item.run_id} started from the queue no longer exists")
        return run

    def cancel_ticket(self, ticket: str) -> bool:
        with self._locked():
            queue = self._read_json(self.queue_file)
            for item_data in queue:
                if item_data["ticket"] == ticket and item_data["state"] == TicketState.QUEUED.value:
                    item_data["state"] = TicketState.CANCELLED.value
                    self._write_json(self.queue_file, queue)
                    return True
        return False

    def start_next(self, job: Optional[str] = None, ticket: Optional[str] = None) -> Optional[Run]:
        """Materialize the oldest queued ticket (optionally for one job or one ticket) into a running run."""
        with self._locked():
            queue = self._read_json(self.queue_file)
            for item_data in queue:
                if item_data["state"] != TicketState.QUEUED.value:
                    continue
                if job is not None and item_data["job"] != job:
                    continue
                if ticket is not None and item_data["ticket"] != ticket:
                    continue
                item = QueueItem(**item_data)
                run = self._new_run(item.job, item.parameters, item.cause, item.group)
                item_data["state"] = TicketState.STARTED.value
                item_data["run_id"] = run.id
                self._write_json(self.queue_file, queue)
                return run
        return None

    # Runs

    def _new_run(self, job_name: str, parameters: Dict[str, str], cause: Cause,
                 group: Optional[str]) -> Run:
        """Allocate a build number and store a running run. Caller holds the lock."""
        jobs = self._read_json(self.jobs_file)
        for job_data in jobs:
            if job_data["name"] == job_name:
                number = job_data["next_build_number"]
                job_data["next_build_number"] = number + 1
                break
        else:
            raise JobNotFound(job_name)
        self._write_json(self.jobs_file, jobs)

        now = datetime.utcnow()
        run = Run(
            job=job_name,
            number=number,
            state=RunState.RUNNING,
            parameters=dict(parameters),
            cause=cause,
            group=group,
            created_at=now,
            started_at=now,
        )
        runs = self._read_json(self.runs_file)
        runs.append(run.model_dump(mode="json"))
        self._write_json(self.runs_file, runs)
        return run

    def start_run(self, job_name: str, parameters: Optional[Dict[str, str]] = None,
                  cause: Optional[Cause] = None, group: Optional[str] = None) -> Run:
        """Start a run directly, bypassing the queue (e.g. a manually started parent)."""
        job = self.get_job(job_name)
        if job is None:
            raise JobNotFound(job_name)
        if parameters is None:
            parameters = {p.name: p.default for p in job.parameters}
        with self._locked():
            return self._new_run(job_name, parameters, cause or Cause(), group)

    def get_run(self, run_id: str) -> Optional[Run]:
        for run_data in self._read_json(self.runs_file):
            if Run.format_id(run_data["job"], run_data["number"]) == run_id:
                return Run(**run_data)
        return None

    def list_runs(self, job: Optional[str] = None) -> List[Run]:
        runs = [Run(**run_data) for run_data in self._read_json(self.runs_file)]
        if job is not None:
            runs = [run for run in runs if run.job == job]
        return runs

    def finish_run(self, run_id: str, result: Result) -> Run:
        """Mark a run finished with the given result."""
        with self._locked():
            runs = self._read_json(self.runs_file)
            for i, run_data in enumerate(runs):
                run = Run(**run_data)
                if run.id == run_id:
                    run.state = RunState.FINISHED
                    run.result = result
                    run.finished_at = datetime.utcnow()
                    runs[i] = run.model_dump(mode="json")
                    self._write_json(self.runs_file, runs)
                    return run
        raise RunNotFound(run_id)

    def delete_run(self, run_id: str) -> bool:
        """Drop a run, as the host's build rotation does."""
        with self._locked():
            runs = self._read_json(self.runs_file)
            kept = [r for r in runs if Run.format_id(r["job"], r["number"]) != run_id]
            if len(kept) == len(runs):
                return False
            self._write_json(self.runs_file, kept)
            return True

    def artifacts_dir(self, run: Run) -> Path:
        return self.artifacts_root / run.job / str(run.number)

    def run_artifacts(self, run: Run) -> List[str]:
        base = self.artifacts_dir(run)
        if not base.is_dir():
            return []
        return sorted(p.relative_to(base).as_posix() for p in base.rglob("*") if p.is_file())

    # Annotations

    def _annotate(self, run_id: str, key: str, update) -> None:
        with self._locked():
            annotations = self._read_json(self.annotations_file)
            entry = annotations.setdefault(run_id, {})
            entry[key] = update(entry.get(key))
            self._write_json(self.annotations_file, annotations)

    def _annotation(self, run_id: str, key: str, default: Any = None) -> Any:
        return self._read_json(self.annotations_file).get(run_id, {}).get(key, default)

    def append_downstream(self, run_id: str, child_id: str) -> None:
        self._annotate(run_id, "downstream", lambda ids: (ids or []) + [child_id])

    def list_downstream(self, run_id: str) -> List[str]:
        return list(self._annotation(run_id, "downstream", []))

    def get_retry_provenance(self, run_id: str) -> Optional[str]:
        return self._annotation(run_id, "retry_of")

    def set_retry_provenance(self, run_id: str, origin_id: str) -> None:
        self._annotate(run_id, "retry_of", lambda _: origin_id)

    def get_retried_as(self, run_id: str) -> Optional[str]:
        return self._annotation(run_id, "retried_as")

    def set_retried_as(self, run_id: str, retry_id: Optional[str]) -> None:
        self._annotate(run_id, "retried_as", lambda _: retry_id)

    def set_variable(self, run_id: str, name: str, value: str) -> None:
        self._annotate(run_id, "variables", lambda variables: {**(variables or {}), name: value})

    def get_variables(self, run_id: str) -> Dict[str, str]:
        return dict(self._annotation(run_id, "variables", {}))

    # Configuration

    def get_config(self) -> Config:
        """Get current configuration."""
        config_data = self._read_json(self.config_file)
        return Config(**config_data)

    def set_config(self, config: Config) -> None:
        """Update configuration."""
        self._write_json(self.config_file, config.model_dump(mode="json"))

    def get_stats(self) -> Dict[str, int]:
        """Get run statistics."""
        runs = self._read_json(self.runs_file)
        queue = self._read_json(self.queue_file)

        stats = {
            "jobs": len(self._read_json(self.jobs_file)),
            "queued": sum(1 for item in queue if item["state"] == TicketState.QUEUED.value),
            "running": 0,
            "finished": 0,
            "total": len(runs),
        }
        for result in Result:
            stats[result.value] = 0

        for run in runs:
            state = run.get("state")
            if state in stats:
                stats[state] += 1
            if run.get("result") in stats:
                stats[run["result"]] += 1
        return stats
