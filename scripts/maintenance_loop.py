from __future__ import annotations

import asyncio

from tabula.core.logging import configure_logging
from tabula.services.maintenance import MaintenanceScheduler


async def _main() -> None:
    # Standalone maintenance loop for deployments that run without arq.
    configure_logging()
    scheduler = MaintenanceScheduler()
    scheduler.start()
    try:
        await asyncio.Event().wait()
    finally:
        await scheduler.stop()


if __name__ == "__main__":
    asyncio.run(_main())
