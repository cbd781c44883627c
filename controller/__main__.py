from __future__ import annotations

import argparse
import logging
import sys

from controller.config import load_config
from controller.errors import ConfigError


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(add_help=True, description="Regtest bitcoind block controller")
    parser.add_argument("--config", default=None, help="JSON config file (overrides CONTROLLER_CONFIG_PATH).")
    parser.add_argument("--host", default=None, help="Control API bind host.")
    parser.add_argument("--port", default=None, type=int, help="Control API bind port.")
    parser.add_argument("--rpc-host", default=None)
    parser.add_argument("--rpc-port", default=None, type=int)
    parser.add_argument("--rpc-username", default=None)
    parser.add_argument("--rpc-password", default=None)
    parser.add_argument("--miner-address", default=None, help="Address receiving coinbase outputs.")
    parser.add_argument("--block-time", default=None, type=float, help="Mine one block every N seconds (0 = off).")
    parser.add_argument("--bootstrap-height", default=None, type=int, help="Mine up to this height once ready.")
    parser.add_argument("--notify-url", default=None, help="Webhook receiving mined-block events.")
    args = parser.parse_args(argv)

    # Imported here so logging is configured before anything logs.
    from controller.main import create_app
    from controller.service import ControllerService

    logger = logging.getLogger("controller")

    try:
        config = load_config(
            args.config,
            overrides={
                "bind_host": args.host,
                "bind_port": args.port,
                "rpc_host": args.rpc_host,
                "rpc_port": args.rpc_port,
                "rpc_username": args.rpc_username,
                "rpc_password": args.rpc_password,
                "miner_address": args.miner_address,
                "block_time": args.block_time,
                "bootstrap_height": args.bootstrap_height,
                "notify_url": args.notify_url,
            },
        )
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    import uvicorn

    app = create_app(ControllerService(config))
    try:
        uvicorn.run(app, host=config.bind_host, port=int(config.bind_port), reload=False, access_log=False)
    except SystemExit as e:
        # uvicorn exits when it cannot bind the listen address.
        if e.code:
            logger.error("Control API failed to start on %s:%d", config.bind_host, config.bind_port)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
