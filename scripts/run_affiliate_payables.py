from __future__ import annotations

import argparse

from affiliate_api.affiliate_payables import run_affiliate_payable_job
from affiliate_api.core.config import Settings
from affiliate_api.logs import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Promote matured QUALIFIED referrals to PAYABLE (one run)."
    )
    parser.add_argument(
        "--trigger",
        default="manual-cli",
        help="Trigger label recorded in the job lock and logs (default: manual-cli).",
    )
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings)
    out = run_affiliate_payable_job(trigger=str(args.trigger), settings=settings)

    for k in sorted(out.keys()):
        print(f"{k}={out[k]}")


if __name__ == "__main__":
    main()
