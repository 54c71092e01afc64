"""Periodically settle farming sessions that have run their full duration."""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from typing import Optional, Sequence

from core.settings import get_settings
from ledger_service import LedgerService
from logging_utils import init_logging

log = logging.getLogger("session-sweeper")


class SessionSweeper:
    """Runs ``sweep_stale_sessions`` on a fixed interval until stopped."""

    def __init__(self, service: LedgerService, interval: float) -> None:
        self.service = service
        self.interval = max(float(interval), 0.0)
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> int:
        try:
            return self.service.sweep_stale_sessions()
        except Exception:
            log.exception("sweep failed")
            return 0

    def run_forever(self, *, max_runs: Optional[int] = None) -> int:
        total = 0
        runs = 0
        log.info("sweeper started", extra={"meta": {"interval": self.interval}})
        while not self._stop.is_set():
            total += self.run_once()
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            self._stop.wait(self.interval)
        log.info("sweeper stopped", extra={"meta": {"runs": runs, "settled": total}})
        return total


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--interval", type=float, default=None, help="seconds between sweeps")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:  # pragma: no cover - process entry point
    args = _parse_args(argv)
    settings = get_settings()
    init_logging("session-sweeper", settings)

    service = LedgerService.from_settings(settings)
    service.storage.start()
    sweeper = SessionSweeper(service, args.interval or settings.SWEEP_INTERVAL_SEC)

    def _handle_signal(signum: int, frame: Optional[object]) -> None:
        log.warning("signal received", extra={"meta": {"signal": signum}})
        sweeper.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    try:
        if args.once:
            settled = sweeper.run_once()
        else:
            settled = sweeper.run_forever()
    finally:
        service.storage.stop()
    print(f"settled sessions: {settled}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
