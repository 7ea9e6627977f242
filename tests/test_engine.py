import pytest

from qmethod import QMethodEngine, RotationRequest, SessionClosedError
from qmethod.core.pqmethod import PQMethodOutput, PQMethodStudy
from qmethod.core.types import BootstrapOptions, SessionOptions
from qmethod.errors import BootstrapCancelledError
from qmethod.session import InMemorySnapshotSink


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(clock):
    engine = QMethodEngine(
        sink=InMemorySnapshotSink(),
        session_options=SessionOptions(idle_timeout=60.0),
        bootstrap_workers=1,
        clock=clock,
    )
    yield engine
    engine.shutdown()


def test_import_detects_file_kind(engine, planted, grid, planted_result):
    study = engine.import_pqmethod(engine.export_study(planted, grid, "Planted"))
    assert isinstance(study, PQMethodStudy)
    listing = engine.import_pqmethod(engine.export_pqmethod(planted_result, "Planted"))
    assert isinstance(listing, PQMethodOutput)


def test_closing_a_session_cancels_its_bootstrap(engine, planted, config):
    session_id = engine.open_interactive_session(planted, config)
    engine.apply_rotation(session_id, RotationRequest(method="varimax"), expected_version=0)
    task = engine.start_bootstrap(session_id, BootstrapOptions(n_resamples=100000, seed=0))

    engine.close_session(session_id)
    assert task.cancelled
    with pytest.raises(BootstrapCancelledError):
        task.result(timeout=30)
    with pytest.raises(SessionClosedError):
        engine.session(session_id)


def test_reaping_cancels_bootstrap_of_idle_session(engine, planted, config, clock):
    session_id = engine.open_interactive_session(planted, config)
    engine.apply_rotation(session_id, RotationRequest(method="varimax"), expected_version=0)
    task = engine.start_bootstrap(session_id, BootstrapOptions(n_resamples=100000, seed=0))

    clock.now = 120.0
    assert engine.reap_idle() == [session_id]
    assert task.cancelled
    assert engine.sessions.session_ids() == []


def test_results_and_validation_through_engine(engine, planted, config):
    session_id = engine.open_interactive_session(planted, config)
    engine.apply_rotation(session_id, RotationRequest(method="varimax"), expected_version=0)
    result = engine.session_results(session_id)
    report = engine.validate_against_reference(result, engine.export_pqmethod(result))
    assert report.passed


def test_idle_sweep_drops_finished_bootstrap_tasks(engine, planted, config, clock):
    session_id = engine.open_interactive_session(planted, config)
    engine.apply_rotation(session_id, RotationRequest(method="varimax"), expected_version=0)
    task = engine.start_bootstrap(session_id, BootstrapOptions(n_resamples=10, seed=0))
    task.result(timeout=60)

    clock.now = 30.0
    engine.reap_idle()
    assert engine.bootstrap_task(task.task_id) is task

    clock.now = 4000.0
    engine.reap_idle()
    assert engine.bootstrap_task(task.task_id) is None
