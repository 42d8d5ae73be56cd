from __future__ import annotations

import asyncio

from caseflow.core.logging import configure_logging
from caseflow.persistence.db import create_schema


async def _main() -> None:
    # Create every table for local environments and first-time bootstraps.
    configure_logging()
    await create_schema()
    print("schema_created=true")


if __name__ == "__main__":
    asyncio.run(_main())
