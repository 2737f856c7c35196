from dataclasses import dataclass
import os


@dataclass
class Cache:
    STORE_BACKEND: str = os.getenv("SUBSPACE_STORE_BACKEND", "files")  # "memory", "files", "sqlite"
    STORE_PATH: str = os.getenv("SUBSPACE_STORE_PATH", "subspace_sync/store/data")

    AGGREGATE_TTL: float = float(os.getenv("AGGREGATE_TTL", "86400"))
    # Delay before the low-priority refresh that follows selecting a fresh community
    AGGREGATE_SELECT_REFRESH_DELAY: float = float(
        os.getenv("AGGREGATE_SELECT_REFRESH_DELAY", "1.0")
    )
    MEMBER_TTL: float = float(os.getenv("MEMBER_TTL", "600"))
    COMMUNITY_LIST_TTL: float = float(os.getenv("COMMUNITY_LIST_TTL", "900"))
