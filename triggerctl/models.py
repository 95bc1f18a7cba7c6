"""Data models for jobs, runs, results and configuration."""

from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional
from pydantic import BaseModel, Field


class Result(str, Enum):
    """Terminal result of a run. Worse values dominate when combined."""
    SUCCESS = "SUCCESS"
    UNSTABLE = "UNSTABLE"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"

    @property
    def rank(self) -> int:
        return _RESULT_RANK[self]

    def is_worse_than(self, other: "Result") -> bool:
        return self.rank > other.rank

    def is_worse_or_equal(self, other: "Result") -> bool:
        return self.rank >= other.rank

    def is_better_than(self, other: "Result") -> bool:
        return self.rank < other.rank

    def combine(self, other: "Result") -> "Result":
        """Return the worse of the two results."""
        return self if self.rank >= other.rank else other

    @classmethod
    def combine_all(cls, results: Iterable["Result"]) -> "Result":
        combined = cls.SUCCESS
        for result in results:
            combined = combined.combine(result)
        return combined

    @classmethod
    def parse(cls, text: Optional[str]) -> "Result":
        """Parse a result name; anything unrecognised counts as FAILURE."""
        if not text:
            return cls.FAILURE
        try:
            return cls(text.strip().upper())
        except ValueError:
            return cls.FAILURE


_RESULT_RANK = {
    Result.SUCCESS: 0,
    Result.UNSTABLE: 1,
    Result.FAILURE: 2,
    Result.ABORTED: 3,
}


class RunState(str, Enum):
    """Run lifecycle states."""
    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"


class CauseKind(str, Enum):
    USER = "user"
    UPSTREAM = "upstream"
    RETRY = "retry"


class Cause(BaseModel):
    """What caused a run to be scheduled."""
    kind: CauseKind = CauseKind.USER
    run_id: Optional[str] = None

    @classmethod
    def upstream(cls, run: Optional["Run"]) -> "Cause":
        if run is None:
            return cls()
        return cls(kind=CauseKind.UPSTREAM, run_id=run.id)

    @classmethod
    def retry(cls, run: "Run") -> "Cause":
        return cls(kind=CauseKind.RETRY, run_id=run.id)

    def describe(self) -> str:
        if self.kind == CauseKind.RETRY:
            return f"Retry of {self.run_id}"
        if self.kind == CauseKind.UPSTREAM:
            return f"Started by upstream {self.run_id}"
        return "Started by user"


class ParameterDefinition(BaseModel):
    """A parameter declared by a job, with its default value."""
    name: str
    default: str = ""


class Job(BaseModel):
    """A named, parameterized unit of schedulable work."""
    name: str
    parameters: List[ParameterDefinition] = Field(default_factory=list)
    next_build_number: int = 1
    disabled: bool = False
    # runs at or worse than this are retried once when they finish
    retry_threshold: Optional[Result] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def triggerable(self) -> bool:
        return not self.disabled


class Run(BaseModel):
    """One execution instance of a job."""
    job: str
    number: int
    state: RunState = RunState.QUEUED
    result: Optional[Result] = None
    parameters: Dict[str, str] = Field(default_factory=dict)
    cause: Cause = Field(default_factory=Cause)
    group: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.format_id(self.job, self.number)

    @property
    def building(self) -> bool:
        return self.state != RunState.FINISHED

    @staticmethod
    def format_id(job: str, number: int) -> str:
        return f"{job}#{number}"

    @staticmethod
    def parse_id(run_id: str):
        """Split a stable run id into (job name, build number)."""
        job, sep, number = run_id.rpartition("#")
        if not sep or not job or not number.isdigit():
            raise ValueError(f"Invalid run id: {run_id!r} (expected JOB#NUMBER)")
        return job, int(number)

    def __str__(self) -> str:
        return self.id


class ParameterSet(BaseModel):
    """Resolved parameters, one value per declared parameter, in declaration order."""
    values: Dict[str, str] = Field(default_factory=dict)

    def to_text(self) -> str:
        return "\n".join(f"{name}={value}" for name, value in self.values.items())

    def __getitem__(self, name: str) -> str:
        return self.values[name]

    def __len__(self) -> int:
        return len(self.values)


class RetryPolicy(BaseModel):
    """Runs whose result is at-or-worse than the threshold are retried once."""
    threshold: Result = Result.FAILURE


class RetryDecision(BaseModel):
    """Outcome of a retry evaluation."""
    retried: bool
    run_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def retried_as(cls, run: Run) -> "RetryDecision":
        return cls(retried=True, run_id=run.id)

    @classmethod
    def not_retried(cls, reason: str, run_id: Optional[str] = None) -> "RetryDecision":
        return cls(retried=False, run_id=run_id, reason=reason)


class Config(BaseModel):
    """Orchestration tunables, persisted next to the host data."""
    submit_attempts: int = 5
    submit_delay: float = 5.0  # seconds between rejected submissions
    start_max_wait: float = 900.0  # 15 minutes
    start_initial_delay: float = 1.0
    start_max_delay: float = 30.0
    start_tick: float = 1.0
    finish_delay: float = 5.0
    min_finish_delay: float = 5.0
    fanout_pause: float = 5.0
    fanout_max_passes: int = 5  # 0 = keep re-queuing rejected jobs forever
    retry_threshold: Result = Result.FAILURE
