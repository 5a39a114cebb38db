from __future__ import annotations

import argparse

import orjson

from affiliate_api.affiliate_report import audit_referrals
from affiliate_api.db import SessionLocal


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Read-only consistency audit of referrals and payout batches."
    )
    parser.add_argument(
        "--json", action="store_true", help="Print the full report as JSON."
    )
    args = parser.parse_args()

    with SessionLocal() as session:
        report = audit_referrals(session)

    if args.json:
        print(
            orjson.dumps(
                {
                    "ok": report.ok,
                    "referrals_checked": report.referrals_checked,
                    "batches_checked": report.batches_checked,
                    "issues": report.issues,
                },
                option=orjson.OPT_INDENT_2,
            ).decode("utf-8")
        )
    else:
        print(f"referrals_checked={report.referrals_checked}")
        print(f"batches_checked={report.batches_checked}")
        print(f"issues={len(report.issues)}")
        for issue in report.issues:
            print(f"{issue['kind']} id={issue['id']} {issue['detail']}".rstrip())
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
