from __future__ import annotations

import asyncio

from tabula.core.logging import configure_logging
from tabula.persistence.db import SessionLocal
from tabula.services.permissions import sweep_expired_grants


async def sweep() -> None:
    configure_logging()
    async with SessionLocal() as session:
        counts = await sweep_expired_grants(session)
    print(" ".join(f"{key}={value}" for key, value in counts.items()))


if __name__ == "__main__":
    asyncio.run(sweep())
