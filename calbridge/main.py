from __future__ import annotations

import logging
import os

import uvicorn

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def main() -> None:
    logging.basicConfig(
        level=os.getenv("CALBRIDGE_LOG_LEVEL", "INFO").upper(),
        format=LOG_FORMAT,
    )
    host = os.getenv("CALBRIDGE_HOST", "0.0.0.0")
    port = int(os.getenv("CALBRIDGE_PORT", "8080"))
    uvicorn.run("calbridge.web_admin:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
