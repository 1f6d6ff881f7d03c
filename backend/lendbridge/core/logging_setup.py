import logging

_QUIET = ("httpx", "httpcore", "web3", "urllib3", "aiosqlite")


def configure_logging(level: str = "INFO") -> None:
    lvl = getattr(logging, (level or "").strip().upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.INFO

    logging.basicConfig(format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    logging.getLogger().setLevel(lvl)
    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
