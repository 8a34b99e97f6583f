"""python -m gpurelay.server"""

import logging
import os

import uvicorn

from gpurelay.protocol import DEFAULT_HOST, DEFAULT_PORT, ENV_HOST, ENV_PORT, ENV_REMOTE_URL

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)

host = os.environ.get(ENV_HOST, DEFAULT_HOST)
port = int(os.environ.get(ENV_PORT, DEFAULT_PORT))

logging.getLogger("gpurelay.server").info(
    "serving on http://%s:%d; on the client set %s=http://<this-machine>:%d",
    host, port, ENV_REMOTE_URL, port,
)

# SIGINT/SIGTERM: uvicorn stops accepting, then the lifespan exit disposes the engine
uvicorn.run(
    "gpurelay.server.app:build_app",
    factory=True,
    host=host,
    port=port,
    log_level="info",
)
