import logging
import os
import sys

from dotenv import load_dotenv

from .agent import SweepAgent, SweepContext
from .chain import SubstrateChain, derive_keypair
from .config import TriggerMode, load_config
from .errors import SweeperError
from .triggers import BlockTrigger, IntervalTrigger


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - [%(levelname)s] - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def build_trigger(config, callback, stop_event):
    if config.trigger_mode is TriggerMode.BLOCK:
        # separate socket: the header subscription blocks its connection.
        # The read timeout turns a stalled feed into a reconnect.
        feed = SubstrateChain.connect(
            config.ws_endpoint,
            ss58_format=config.ss58_format,
            type_registry_preset=config.type_registry_preset,
            timeout=config.block_feed_timeout,
        )
        return BlockTrigger(feed, callback, stop_event=stop_event)
    return IntervalTrigger(config.interval_seconds, callback, stop_event=stop_event)


def main():
    load_dotenv()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    try:
        config = load_config(load_env_file=False)
    except SweeperError as e:
        logging.critical(f"Configuration Error: {e}")
        sys.exit(1)

    # Startup failures are fatal; everything after this is retried by trigger
    try:
        logging.info(f"Connecting to endpoint: {config.ws_endpoint}")
        chain = SubstrateChain.connect(
            config.ws_endpoint,
            ss58_format=config.ss58_format,
            type_registry_preset=config.type_registry_preset,
            timeout=config.status_timeout,
        )
        chain.check_runtime()
        keypair = derive_keypair(config.source_seed, ss58_format=config.ss58_format)
    except SweeperError as e:
        logging.critical(str(e))
        sys.exit(1)

    logging.info(f"Source account loaded: {keypair.ss58_address}")
    logging.info(
        f"Mode: {config.transfer_mode.value} | Fee policy: {config.fee_policy} | "
        f"Tip policy: {config.tip_policy} | Destination: {config.target_address}"
    )

    context = SweepContext(chain=chain, keypair=keypair, config=config)
    agent = SweepAgent(context)

    try:
        trigger = build_trigger(config, agent.on_trigger, context.stop_event)
    except SweeperError as e:
        logging.critical(str(e))
        sys.exit(1)

    logging.info(f"Monitoring balance of {keypair.ss58_address}...")
    trigger.start()

    try:
        while not context.stop_event.wait(1):
            pass
    except KeyboardInterrupt:
        logging.info("Shutting down sweeper...")
        context.stop_event.set()
    sys.exit(0)


if __name__ == "__main__":
    main()
