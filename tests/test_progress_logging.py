import logging

import numpy as np
import pytest

from pointmls.core.errors import Cancelled, InvalidArgument, MlsError, NumericFault
from pointmls.core.curvature import weingarten_map
from pointmls.core.logging_utils import (
    ENV_LOG_LEVEL,
    PACKAGE_LOGGER,
    configure_logging,
    log_once,
    reset_log_once,
)
from pointmls.core.point_set import PointSet
from pointmls.core.progress import ProgressReporter


def test_progress_is_monotone_and_clamped():
    seen = []
    reporter = ProgressReporter(lambda pct, msg: seen.append((pct, msg)), min_interval=0.0)

    reporter.report(10, "a")
    reporter.report(5, "b")
    reporter.report(250, "c")

    assert [p for p, _ in seen] == [10, 10, 100]
    assert reporter.last_percent == 100


def test_progress_throttles_repeated_percent():
    seen = []
    reporter = ProgressReporter(lambda pct, msg: seen.append(pct), min_interval=60.0)

    reporter.report(3, "x")
    reporter.report(3, "x")
    reporter.report(4, "x")

    assert seen == [3, 4]


def test_progress_cancellation_is_sticky():
    calls = []

    def _callback(pct, msg):
        calls.append(pct)
        return pct < 50

    reporter = ProgressReporter(_callback, min_interval=0.0)
    step = reporter.span(0, 100, "work")
    step(0.25)
    with pytest.raises(Cancelled):
        step(0.75)
    assert reporter.cancelled

    with pytest.raises(Cancelled):
        reporter.report(80, "after")
    assert calls == [25, 75]


def test_progress_without_callback_never_cancels():
    reporter = ProgressReporter()
    reporter.report(50, "ignored")
    assert not reporter.cancelled


def test_error_taxonomy():
    assert issubclass(InvalidArgument, ValueError)
    assert issubclass(NumericFault, ArithmeticError)
    for cls in (InvalidArgument, Cancelled, NumericFault):
        assert issubclass(cls, MlsError)


def test_weingarten_map_invalid_samples():
    sample = weingarten_map(np.zeros(3), np.eye(3))
    assert not sample.valid
    assert sample.mean == 0.0

    hess = np.eye(3)
    hess[0, 1] = np.nan
    batch = weingarten_map(np.array([[0.0, 0.0, 1.0], [0.0, 0.0, 1.0]]), np.stack([np.eye(3), hess]))
    assert batch.valid.tolist() == [True, False]
    assert batch.k1[1] == 0.0


def test_weingarten_map_cylinder():
    # f = sqrt(x^2 + y^2) - 1 at (1, 0, 0): curvatures 1 (around z) and 0 (along z)
    sample = weingarten_map(np.array([1.0, 0.0, 0.0]), np.diag([0.0, 1.0, 0.0]))
    assert sample.valid
    assert sample.k1 == pytest.approx(1.0)
    assert sample.k2 == pytest.approx(0.0)
    assert sample.gauss == pytest.approx(0.0)
    assert abs(sample.dir1[1]) == pytest.approx(1.0)
    assert abs(sample.dir2[2]) == pytest.approx(1.0)


def test_point_set_validation():
    with pytest.raises(InvalidArgument):
        PointSet(positions=np.zeros((4, 3)), normals=np.zeros((3, 3)))
    with pytest.raises(InvalidArgument):
        PointSet(positions=np.zeros((3, 3)), faces=[[0, 1, 3]])


def test_log_once_logs_a_single_time(caplog):
    logger = logging.getLogger("pointmls.test")
    with caplog.at_level(logging.WARNING, logger="pointmls.test"):
        assert log_once(logger, "test:log_once", logging.WARNING, "first %d", 1)
        assert not log_once(logger, "test:log_once", logging.WARNING, "second %d", 2)

    messages = [r.getMessage() for r in caplog.records if r.name == "pointmls.test"]
    assert messages == ["first 1"]


def test_log_once_can_be_reset(caplog):
    logger = logging.getLogger("pointmls.test")
    other = logging.getLogger("pointmls.test.other")
    with caplog.at_level(logging.WARNING, logger="pointmls.test"):
        assert log_once(logger, "test:reset", logging.WARNING, "a")
        assert not log_once(logger, "test:reset", logging.WARNING, "a")
        # keys are scoped by logger
        assert log_once(other, "test:reset", logging.WARNING, "b")

        assert reset_log_once("test:reset") == 2
        assert log_once(logger, "test:reset", logging.WARNING, "c")

    messages = [r.getMessage() for r in caplog.records if r.name.startswith("pointmls.test")]
    assert messages == ["a", "b", "c"]


@pytest.fixture
def package_logger():
    logger = logging.getLogger(PACKAGE_LOGGER)
    saved_handlers = list(logger.handlers)
    saved_level = logger.level
    logger.handlers = []
    try:
        yield logger
    finally:
        logger.handlers = saved_handlers
        logger.setLevel(saved_level)


def test_configure_logging_is_idempotent(package_logger, monkeypatch):
    root_handlers = list(logging.getLogger().handlers)
    monkeypatch.setenv(ENV_LOG_LEVEL, "debug")

    assert configure_logging() is package_logger
    configure_logging()
    assert package_logger.level == logging.DEBUG
    assert [type(h) for h in package_logger.handlers] == [logging.NullHandler]
    # the host owns the output handlers
    assert logging.getLogger().handlers == root_handlers


def test_configure_logging_level_sources(package_logger, monkeypatch):
    monkeypatch.setenv(ENV_LOG_LEVEL, "chatty")
    package_logger.setLevel(logging.ERROR)
    configure_logging()
    assert package_logger.level == logging.ERROR

    monkeypatch.setenv(ENV_LOG_LEVEL, "10")
    configure_logging()
    assert package_logger.level == logging.DEBUG

    assert configure_logging("warning").level == logging.WARNING
