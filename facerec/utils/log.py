"""日志配置

Level comes from FACEREC_LOG_LEVEL (default INFO); `set_debug` switches the
whole `facerec` logger tree at runtime (CLI `--debug`).
"""

import logging
import os

from contextlib import contextmanager

ROOT_LOGGER = "facerec"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logging.getLogger(ROOT_LOGGER).setLevel(os.getenv("FACEREC_LOG_LEVEL", "INFO").upper())


def get_logger(name):
    """获取日志记录器（模块外调用时挂到 facerec 下）"""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def set_debug(enabled: bool = True) -> None:
    """在 DEBUG 与 INFO 之间切换 facerec.* 日志级别"""
    logging.getLogger(ROOT_LOGGER).setLevel(logging.DEBUG if enabled else logging.INFO)


@contextmanager
def suppress_fds():
    """Silence FD 1/2 while native model loaders (onnxruntime, ultralytics) print banners."""
    devnull = os.open(os.devnull, os.O_RDWR)
    saved = (os.dup(1), os.dup(2))
    try:
        os.dup2(devnull, 1)
        os.dup2(devnull, 2)
        yield
    finally:
        for fd, old in zip((1, 2), saved):
            os.dup2(old, fd)
            os.close(old)
        os.close(devnull)
