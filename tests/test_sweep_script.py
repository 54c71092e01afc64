import logging
import threading

from ledger_test_utils import DURATION, TOTAL_REWARD, FakeClock, make_service

from scripts.sweep_sessions import SessionSweeper


def test_run_forever_stops_after_max_runs() -> None:
    clock = FakeClock()
    service = make_service(clock)
    service.get_user("sleeper")
    service.start_farming("sleeper")
    clock.advance(seconds=DURATION)

    sweeper = SessionSweeper(service, interval=0)
    assert sweeper.run_forever(max_runs=2) == 1
    assert service.storage.find("sleeper").balance == TOTAL_REWARD


def test_run_once_logs_and_swallows_failures(caplog) -> None:
    service = make_service()

    def broken(now=None):
        raise RuntimeError("store offline")

    service.sweep_stale_sessions = broken
    sweeper = SessionSweeper(service, interval=5)
    with caplog.at_level(logging.ERROR, logger="session-sweeper"):
        assert sweeper.run_once() == 0
    assert any(r.getMessage() == "sweep failed" for r in caplog.records)


def test_stop_interrupts_wait() -> None:
    sweeper = SessionSweeper(make_service(), interval=3600)
    worker = threading.Thread(target=sweeper.run_forever)
    worker.start()
    sweeper.stop()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert sweeper.stopped is True
