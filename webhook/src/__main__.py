from __future__ import annotations

import logging
import os

import uvicorn

from injector.src.metrics import METRICS
from webhook.src.config import load_config
from webhook.src.main import APP_VERSION, configure_logging, create_app


def main() -> None:
    """Webhook entrypoint: configure logging, build the app and serve it over TLS."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", APP_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    app = create_app(config=config)

    logger = logging.getLogger(__name__)
    if not config.tls_cert_file:
        logger.warning("TLS_CERT_FILE not set; serving admission reviews over plain HTTP")

    logger.info("Mesh injector listening on :%d", config.port)
    uvicorn.run(
        app,
        host="0.0.0.0",  # noqa: S104
        port=config.port,
        ssl_certfile=config.tls_cert_file or None,
        ssl_keyfile=config.tls_key_file or None,
        log_config=None,
    )
    logger.info("Mesh injector stopped")


if __name__ == "__main__":
    main()
