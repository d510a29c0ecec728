import logging

ROOT_LOGGER = "fundedsim"


def setup_logger(name: str = ROOT_LOGGER, level: int | str | None = None) -> logging.Logger:
    """返回 fundedsim 下的子 logger（如 "fundedsim.monitor"）。

    控制台 handler 只挂在根 logger 上；子 logger 默认继承根的级别，
    所以 `setup_logger(level="DEBUG")` 会同时影响所有组件。
    """
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        ch = logging.StreamHandler()
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
        )
        ch.setFormatter(fmt)
        root.addHandler(ch)
        root.setLevel(logging.INFO)

    logger = root if name == ROOT_LOGGER else root.getChild(name)
    if level is not None:
        logger.setLevel(level)
    return logger
