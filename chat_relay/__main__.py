"""Process entry point: load .env, configure logging and serve with uvicorn."""

import logging

import uvicorn
from dotenv import load_dotenv

logger = logging.getLogger("chat_relay")


def main() -> None:
    """Run the relay on the configured host and port."""
    load_dotenv()

    # Imported after load_dotenv so RELAY_CONFIG from .env is honoured.
    from chat_relay.app import app, get_config
    from chat_relay.telemetry import setup_logging

    cfg = get_config()
    setup_logging(cfg.log_file)
    logger.info("Chat server listening on :%d", cfg.port)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level="info")


if __name__ == "__main__":
    main()
