"""Run the bridge: python -m magicq_bridge"""

import logging

import uvicorn

from .config_loader import get_log_level, get_server_bind
from .server import app


def main() -> None:
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host, port = get_server_bind()
    logging.getLogger("mqb.server").info("WebSocket server listening on %s:%s", host, port)
    uvicorn.run(app, host=host, port=port, log_level=get_log_level().lower())


if __name__ == "__main__":
    main()
