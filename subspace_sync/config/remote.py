from dataclasses import dataclass
import os


def _split_endpoints(raw: str) -> tuple[str, ...]:
    """Split a comma-separated string, trim whitespace, drop empties"""
    return tuple(url.strip().rstrip("/") for url in raw.split(",") if url.strip())


@dataclass
class Remote:
    # Equivalent compute-unit endpoints, tried in order with wrap-around failover
    ENDPOINTS: tuple[str, ...] = _split_endpoints(
        os.getenv("SUBSPACE_CU_ENDPOINTS", "https://cu.arnode.asia,https://cu.ardrive.io")
    )
    TIMEOUT: float = float(os.getenv("SUBSPACE_REMOTE_TIMEOUT", "10"))
    MAX_ATTEMPTS: int = int(os.getenv("SUBSPACE_REMOTE_MAX_ATTEMPTS", "5"))
    BASE_DELAY: float = float(os.getenv("SUBSPACE_REMOTE_BASE_DELAY", "1.0"))
    BACKOFF_FACTOR: float = float(os.getenv("SUBSPACE_REMOTE_BACKOFF_FACTOR", "1.5"))

    # Process ids of the shared profile registry and the name registry
    PROFILES_ID: str = os.getenv(
        "SUBSPACE_PROFILES_ID", "J-GI_SARbZ8O0km4JiE2lu2KJdZIWMo53X3HrqusXjY"
    )
    NAME_REGISTRY_ID: str = os.getenv("SUBSPACE_NAME_REGISTRY_ID", "ario-primary-names")
