"""Shared fixtures for the triggerctl test suite."""

import pytest

from triggerctl.models import Config, RunState
from triggerctl.storage import Storage, TicketState


class SimulatedHost(Storage):
    """
    Storage that behaves like a busy host: it starts queued work as soon as
    anyone asks, finishes runs of jobs listed in ``results`` and can reject
    submissions of jobs listed in ``rejections`` (count, -1 = forever).
    """

    def __init__(self, data_dir: str):
        super().__init__(data_dir)
        self.results = {}
        self.rejections = {}
        self.submissions = []

    def submit_job(self, job, parameters, cause, group=None):
        self.submissions.append(job)
        remaining = self.rejections.get(job, 0)
        if remaining:
            if remaining > 0:
                self.rejections[job] = remaining - 1
            return None
        return super().submit_job(job, parameters, cause, group)

    def ticket_to_run(self, ticket):
        item = self.get_ticket(ticket)
        if item is not None and item.state == TicketState.QUEUED:
            self.start_next(ticket=ticket)
        return super().ticket_to_run(ticket)

    def get_run(self, run_id):
        run = super().get_run(run_id)
        if run is not None and run.state == RunState.RUNNING and run.job in self.results:
            run = self.finish_run(run_id, self.results[run.job])
        return run


@pytest.fixture
def storage(tmp_path):
    return Storage(str(tmp_path / "data"))


@pytest.fixture
def host(tmp_path):
    return SimulatedHost(str(tmp_path / "host"))


@pytest.fixture
def fast_config():
    """Same behaviour as the defaults, without the multi-second pauses."""
    return Config(
        submit_delay=0,
        start_max_wait=0.05,
        start_initial_delay=0.001,
        start_max_delay=0.01,
        start_tick=0.001,
        finish_delay=0,
        min_finish_delay=0,
        fanout_pause=0,
    )
