from __future__ import annotations

import argparse
import logging
import signal
import time

from affiliate_api.affiliate_payables import run_affiliate_payable_job
from affiliate_api.core.config import Settings
from affiliate_api.logs import configure_logging, get_logger, log_event

logger = get_logger(__name__)


def run_once(*, settings: Settings) -> dict[str, object]:
    try:
        return run_affiliate_payable_job(trigger="scheduler", settings=settings)
    except Exception:  # noqa: BLE001
        # The next tick re-selects whatever is still due.
        log_event(
            logger,
            logging.ERROR,
            "affiliate payable job failed",
            exc_info=True,
            trigger="scheduler",
        )
        return {"ok": False}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Affiliate scheduler (promotes matured referrals to PAYABLE)."
    )
    parser.add_argument("--once", action="store_true", help="Run once and exit.")
    args = parser.parse_args(argv)

    settings = Settings()
    configure_logging(settings)
    if not bool(settings.scheduler_enabled) and not args.once:
        log_event(
            logger,
            logging.INFO,
            "scheduler disabled (AFFILIATE_SCHEDULER_ENABLED=false)",
        )
        return 0

    stop = {"flag": False}

    def _handle(_sig, _frame) -> None:  # noqa: ANN001
        stop["flag"] = True

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)

    interval_sec = max(60, int(settings.scheduler_interval_minutes or 60) * 60)

    while True:
        res = run_once(settings=settings)
        log_event(logger, logging.INFO, "scheduler tick", **res)
        if args.once or stop["flag"]:
            return 0
        for _ in range(interval_sec):
            if stop["flag"]:
                return 0
            time.sleep(1)


if __name__ == "__main__":
    raise SystemExit(main())
