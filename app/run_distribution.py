"""
Headless distribution trigger.

Meant for cron:
    */15 * * * * cd /srv/pulsekeeper && python -m app.run_distribution

Exits non-zero when the run reported any per-user error or any failed
redemption, so the scheduler's alerting picks it up.
"""

import asyncio
import sys

from pulsekeeper.audit import get_logger
from pulsekeeper.service import create_app_components


logger = get_logger("pulsekeeper.cron")


async def run() -> int:
    service, _ = create_app_components()
    report = await service.run_distribution()

    failed = [r for r in report.results if not r.success and r.outcomes]
    logger.info(
        "distribution_run_report",
        run_id=str(report.run_id),
        users_checked=report.users_checked,
        users_distributing=report.users_distributing,
        failed_redemptions=len(failed),
        errors=report.errors,
    )
    return 1 if report.errors or failed else 0


def main():
    sys.exit(asyncio.run(run()))


if __name__ == "__main__":
    main()
