"""Run the app supervisor service."""

import uvicorn

from appsupervisor.config import config

if __name__ == "__main__":
    uvicorn.run(
        "appsupervisor.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
