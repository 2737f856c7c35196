from dataclasses import dataclass
import os


@dataclass
class Members:
    MIN_INTERVAL: float = float(os.getenv("MEMBER_MIN_INTERVAL", "60"))
    MAX_ATTEMPTS: int = int(os.getenv("MEMBER_MAX_ATTEMPTS", "3"))
