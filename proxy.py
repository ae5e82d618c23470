"""Launch the chatrelay gateway with uvicorn.

Usage:
    python proxy.py
    CHATRELAY_CONFIG=configs/my_config.yaml CHATRELAY_PORT=8080 python proxy.py
"""

import uvicorn

from chatrelay.config_loader import get_log_level, get_server_settings, load_config


def main() -> None:
    config = load_config()
    server = get_server_settings(config)
    uvicorn.run(
        "chatrelay.main:app",
        host=server.host,
        port=server.port,
        log_level=get_log_level(config).lower(),
    )


if __name__ == "__main__":
    main()
