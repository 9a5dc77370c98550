import logging

FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def setup_logging(level="INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=FORMAT)
    # paramiko logs every transport it opens at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name=None):
    return logging.getLogger(f"fleet_rollout.{name}" if name else "fleet_rollout")
