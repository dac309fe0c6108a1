import logging

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
    # provider SDKs and aiohttp are noisy below WARNING
    logging.getLogger("aiohttp").setLevel(max(logging.WARNING, logging.getLogger().level))


def get_logger(name="fleet_deployer"):
    if not name.startswith("fleet_deployer"):
        name = f"fleet_deployer.{name}"
    return logging.getLogger(name)
