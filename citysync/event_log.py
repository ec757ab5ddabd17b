import logging
from datetime import datetime
from typing import List
import config

logger = logging.getLogger("citysync")


class EventLog:
    # 給管理介面看的遊戲日誌，最新的在最前面
    def __init__(self, limit: int = config.LOG_LIMIT):
        self.limit = limit
        self.entries: List[str] = []

    def log(self, message: str):
        time_str = datetime.now().strftime("%H:%M:%S")
        self.entries.insert(0, f"[{time_str}] {message}")
        if len(self.entries) > self.limit:
            self.entries.pop()
        logger.info(message)

    def clear(self):
        self.entries = []
