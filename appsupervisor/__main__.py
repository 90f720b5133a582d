"""
Entry point for running the supervisor via `python -m appsupervisor`.

Starts the FastAPI server with uvicorn.
"""

import uvicorn

from .config import config


def main():
    """Run the supervisor server."""
    uvicorn.run(
        "appsupervisor.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )


if __name__ == "__main__":
    main()
