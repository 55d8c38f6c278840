from __future__ import annotations

import logging
import os

import uvicorn


def main() -> None:
    logging.basicConfig(
        level=os.getenv("ICSBRIDGE_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.getenv("ICSBRIDGE_HOST", "0.0.0.0")
    port = int(os.getenv("ICSBRIDGE_PORT", "8080"))
    uvicorn.run("icsbridge.web_admin:create_app", factory=True, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
