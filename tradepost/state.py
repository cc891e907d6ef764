from dataclasses import dataclass, field
from typing import Dict, Any

from tradepost.constants import TRADE_DB_BUSY_TIMEOUT

@dataclass
class AppState:
    db_path: str
    busy_timeout: float = TRADE_DB_BUSY_TIMEOUT   # seconds sqlite waits on a locked db
    cfg: Dict[str, Any] = field(default_factory=dict)
