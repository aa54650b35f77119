"""Run the CapsuleScan API server: ``python -m capsulescan``."""

from __future__ import annotations

import uvicorn

from capsulescan.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "capsulescan.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":
    main()
