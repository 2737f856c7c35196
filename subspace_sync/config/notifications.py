from dataclasses import dataclass
import os


@dataclass
class Notifications:
    TTL: float = float(os.getenv("NOTIFICATION_TTL", "10"))
    POLL_INTERVAL: float = float(os.getenv("NOTIFICATION_POLL_INTERVAL", "4"))
    MAX_STORED: int = int(os.getenv("NOTIFICATION_MAX_STORED", "200"))
    SEEN_LIMIT: int = int(os.getenv("NOTIFICATION_SEEN_LIMIT", "500"))
    # More than this many arrivals for one community in a poll collapse into a summary
    GROUP_THRESHOLD: int = int(os.getenv("NOTIFICATION_GROUP_THRESHOLD", "3"))
