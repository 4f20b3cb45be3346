"""Run the Memlane API with uvicorn: ``python -m memlane`` or ``memlane``."""

import uvicorn

from memlane.config import settings


def main() -> None:
    uvicorn.run(
        "memlane.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
