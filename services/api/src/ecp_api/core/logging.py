"""日志初始化。"""

import logging


def setup_logging(level: str = "INFO") -> None:
    """初始化日志输出格式与级别。"""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
