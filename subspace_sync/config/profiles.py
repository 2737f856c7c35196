from dataclasses import dataclass
import os


@dataclass
class Profiles:
    TTL: float = float(os.getenv("PROFILE_TTL", "900"))
    MIN_INTERVAL: float = float(os.getenv("PROFILE_MIN_INTERVAL", "5"))
    BATCH_DELAY: float = float(os.getenv("PROFILE_BATCH_DELAY", "0.05"))
    BATCH_SIZE: int = int(os.getenv("PROFILE_BATCH_SIZE", "20"))
    NAME_BATCH_SIZE: int = int(os.getenv("PROFILE_NAME_BATCH_SIZE", "5"))
    NAME_BATCH_PAUSE: float = float(os.getenv("PROFILE_NAME_BATCH_PAUSE", "0.1"))
    CLEANUP_INTERVAL: float = float(os.getenv("PROFILE_CLEANUP_INTERVAL", "300"))
